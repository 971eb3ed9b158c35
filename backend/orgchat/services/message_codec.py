"""
Serialization of message parts and metadata to and from their stored text form.

Decoding is strict: anything that does not match the content model raises
``DecodeFailed`` carrying the message id, so a malformed row can never reach a
caller as an empty or partial message.
"""
from __future__ import annotations

import logging
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Union
from uuid import UUID

from pydantic import TypeAdapter, ValidationError

from orgchat.core.errors import DecodeFailed, EncodeFailed
from orgchat.models.chat import ChatMessage
from orgchat.schemas.chat import MessageMetadata, MessageOut, MessagePart, Role, TextPart

logger = logging.getLogger(__name__)

_parts_adapter: TypeAdapter[List[MessagePart]] = TypeAdapter(List[MessagePart])
_role_adapter: TypeAdapter[Role] = TypeAdapter(Role)

PartLike = Union[MessagePart, Mapping[str, Any]]


def decode_parts(raw: str, message_id: Optional[UUID] = None) -> List[MessagePart]:
    try:
        return _parts_adapter.validate_json(raw)
    except (ValidationError, ValueError, TypeError) as e:
        raise DecodeFailed(message_id, f"invalid parts: {e}") from e


def decode_metadata(raw: Optional[str], message_id: Optional[UUID] = None) -> Optional[MessageMetadata]:
    if raw is None or raw == "":
        return None
    try:
        return MessageMetadata.model_validate_json(raw)
    except (ValidationError, ValueError, TypeError) as e:
        raise DecodeFailed(message_id, f"invalid metadata: {e}") from e


def decode_message(row: ChatMessage) -> MessageOut:
    try:
        role = _role_adapter.validate_python(row.role)
    except ValidationError as e:
        raise DecodeFailed(row.id, f"invalid role {row.role!r}") from e

    return MessageOut(
        id=row.id,
        role=role,
        parts=decode_parts(row.parts, row.id),
        metadata=decode_metadata(row.meta, row.id),
        created_at=row.created_at,
    )


def decode_messages(rows: Iterable[ChatMessage]) -> List[MessageOut]:
    """Decode every row or fail the whole batch on the first bad one."""
    messages = []
    for row in rows:
        try:
            messages.append(decode_message(row))
        except DecodeFailed as e:
            logger.error("Message validation failed: message_id=%s reason=%s", e.message_id, e.reason)
            raise
    return messages


def encode_parts(parts: Sequence[PartLike]) -> str:
    try:
        validated = _parts_adapter.validate_python(list(parts))
    except ValidationError as e:
        raise EncodeFailed(f"Unsupported message part: {e}") from e
    return _parts_adapter.dump_json(validated).decode("utf-8")


def encode_metadata(metadata: Union[MessageMetadata, Mapping[str, Any], None]) -> Optional[str]:
    if metadata is None:
        return None
    if not isinstance(metadata, MessageMetadata):
        try:
            metadata = MessageMetadata.model_validate(metadata)
        except ValidationError as e:
            raise EncodeFailed(f"Unsupported message metadata: {e}") from e
    return metadata.model_dump_json(by_alias=True)


def extract_text(parts: Iterable[MessagePart]) -> str:
    """Display text: the text fragments in order, space-joined."""
    return " ".join(p.text or "" for p in parts if isinstance(p, TextPart))
