"""
Client-side conversation state: persisted history plus the turn in flight.

A turn moves ``idle -> awaiting-first-token -> streaming -> settled``. A failed
stream also ends in ``settled``: the user sees an assistant message with no
text and the input becomes usable again.
"""
from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from orgchat.schemas.chat import MessageMetadata, MessageOut, MessageSource, TextPart, UIMessage
from orgchat.services.message_codec import extract_text

logger = logging.getLogger(__name__)

THINKING_LABEL = "Thinking..."


class TurnState(str, enum.Enum):
    IDLE = "idle"
    AWAITING_FIRST_TOKEN = "awaiting-first-token"
    STREAMING = "streaming"
    SETTLED = "settled"


@dataclass(frozen=True)
class SourceView:
    title: str
    url: Optional[str]

    @property
    def is_link(self) -> bool:
        return bool(self.url)


@dataclass(frozen=True)
class MessageView:
    id: str
    role: str
    text: str
    is_streaming: bool
    show_thinking: bool
    show_actions: bool
    sources: Tuple[SourceView, ...] = ()

    @property
    def display_text(self) -> str:
        return THINKING_LABEL if self.show_thinking else self.text

    @property
    def sources_label(self) -> Optional[str]:
        if not self.sources:
            return None
        n = len(self.sources)
        return f"Used {n} {'sources' if n > 1 else 'source'}"


def _to_ui_message(message: Union[MessageOut, UIMessage]) -> UIMessage:
    if isinstance(message, UIMessage):
        return message
    return UIMessage(id=str(message.id), role=message.role, parts=list(message.parts), metadata=message.metadata)


class Conversation:
    def __init__(self, messages: Iterable[Union[MessageOut, UIMessage]] = ()):
        self.messages: List[UIMessage] = [_to_ui_message(m) for m in messages]
        self.state = TurnState.IDLE
        self._assistant: Optional[UIMessage] = None
        self._failed: List[UIMessage] = []

    @property
    def is_loading(self) -> bool:
        return self.state in (TurnState.AWAITING_FIRST_TOKEN, TurnState.STREAMING)

    @property
    def input_enabled(self) -> bool:
        return not self.is_loading

    def can_submit(self, text: str) -> bool:
        return self.input_enabled and bool((text or "").strip())

    def load(self, messages: Iterable[Union[MessageOut, UIMessage]]) -> None:
        if self.is_loading:
            raise RuntimeError("Cannot replace history while a turn is in flight")
        self.messages = [_to_ui_message(m) for m in messages]
        self._assistant = None
        self._failed = []

    def history(self) -> List[UIMessage]:
        """Messages to send with a turn request.

        Leaves out the answer in flight and the placeholders left by failed
        turns, which were never stored.
        """
        return [
            m for m in self.messages
            if m is not self._assistant and not any(m is f for f in self._failed)
        ]

    def begin_turn(self, text: str) -> UIMessage:
        if self.is_loading:
            raise RuntimeError("A turn is already in flight")
        message = UIMessage(id=str(uuid.uuid4()), role="user", parts=[TextPart(text=text)])
        self.messages.append(message)
        self._assistant = None
        self.state = TurnState.AWAITING_FIRST_TOKEN
        return message

    def _ensure_assistant(self, message_id: Optional[str] = None) -> UIMessage:
        if self._assistant is None:
            self._assistant = UIMessage(id=message_id or str(uuid.uuid4()), role="assistant", parts=[])
            self.messages.append(self._assistant)
        return self._assistant

    def apply(self, event: Dict[str, Any]) -> None:
        """Advance the turn with one stream event."""
        if not self.is_loading:
            logger.debug("Ignoring %s event outside of a turn", event.get("type"))
            return

        kind = event.get("type")
        if kind == "start":
            self._ensure_assistant(event.get("messageId"))
            self.state = TurnState.STREAMING
        elif kind == "text-delta":
            assistant = self._ensure_assistant()
            self.state = TurnState.STREAMING
            delta = event.get("delta") or ""
            if assistant.parts and isinstance(assistant.parts[-1], TextPart):
                assistant.parts[-1].text += delta
            else:
                assistant.parts.append(TextPart(text=delta))
        elif kind == "sources":
            assistant = self._ensure_assistant()
            sources = [MessageSource.model_validate(s) for s in event.get("sources") or []]
            if assistant.metadata is None:
                assistant.metadata = MessageMetadata(sources=sources)
            else:
                assistant.metadata.sources.extend(sources)
        elif kind == "finish":
            self._ensure_assistant(event.get("messageId"))
            self.state = TurnState.SETTLED
        elif kind == "error":
            logger.warning("Chat stream reported an error: %s", event.get("message"))
            self.fail_turn()
        else:
            logger.debug("Unknown stream event %r", kind)

    def fail_turn(self) -> None:
        """Settle a turn that did not finish; any partial answer is discarded."""
        if not self.is_loading:
            return
        assistant = self._ensure_assistant()
        assistant.parts = []
        assistant.metadata = None
        self._failed.append(assistant)
        self.state = TurnState.SETTLED

    def render(self) -> List[MessageView]:
        views = []
        last = len(self.messages) - 1
        for index, message in enumerate(self.messages):
            text = extract_text(message.parts)
            is_streaming = self.state == TurnState.STREAMING and index == last and message.role == "assistant"
            sources: Tuple[SourceView, ...] = ()
            if not is_streaming and message.metadata and message.metadata.sources:
                sources = tuple(SourceView(title=s.title, url=s.url) for s in message.metadata.sources)
            views.append(
                MessageView(
                    id=message.id or "",
                    role=message.role,
                    text=text,
                    is_streaming=is_streaming,
                    show_thinking=is_streaming and not text.strip(),
                    show_actions=not is_streaming and bool(text.strip()),
                    sources=sources,
                )
            )
        return views
