"""
Chat session and message persistence.

Every session read or write is filtered by (organization_id, user_id); a
session owned by someone else looks exactly like one that does not exist.
Message operations take a session id the caller has already authorized.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.orm import Session

from orgchat.core.config import settings
from orgchat.core.errors import NotFound, WriteFaulted
from orgchat.models.chat import ChatMessage, ChatSession, utcnow
from orgchat.schemas.chat import MessageOut, UIMessage
from orgchat.services.message_codec import decode_messages, encode_metadata, encode_parts
from orgchat.services.pagination import Page, offset_for, validate_window

logger = logging.getLogger(__name__)

_TICK = timedelta(microseconds=1)


class ChatService:
    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @staticmethod
    def _owned_by(organization_id: UUID, user_id: UUID):
        return (ChatSession.organization_id == organization_id, ChatSession.user_id == user_id)

    def _begin_snapshot(self) -> None:
        """Start the read transaction at the configured isolation level.

        Only possible before the session has opened a transaction; otherwise
        the reads simply share the transaction already in progress.
        """
        if self.db.in_transaction():
            return
        if self.db.get_bind().dialect.name != "postgresql":
            return
        self.db.connection(execution_options={"isolation_level": settings.PAGINATION_ISOLATION_LEVEL})

    def list_sessions(
        self,
        organization_id: UUID,
        user_id: UUID,
        page: int = 1,
        page_size: int = settings.DEFAULT_PAGE_SIZE,
    ) -> Page[ChatSession]:
        """Sessions ordered by most recent activity, with total and page count.

        The count and the window are read inside one transaction so the
        totals describe the same rows the slice was cut from.
        """
        validate_window(page, page_size)
        owned = self._owned_by(organization_id, user_id)

        self._begin_snapshot()
        total = self.db.scalar(select(func.count()).select_from(ChatSession).where(*owned)) or 0
        sessions = self.db.scalars(
            select(ChatSession)
            .where(*owned)
            .order_by(ChatSession.updated_at.desc(), ChatSession.id)
            .limit(page_size)
            .offset(offset_for(page, page_size))
        ).all()

        return Page.build(sessions, total=total, page=page, page_size=page_size)

    def get_session(self, chat_session_id: UUID, organization_id: UUID, user_id: UUID) -> Optional[ChatSession]:
        return self.db.scalars(
            select(ChatSession)
            .where(ChatSession.id == chat_session_id, *self._owned_by(organization_id, user_id))
            .limit(1)
        ).first()

    def create_session(self, organization_id: UUID, user_id: UUID, title: Optional[str] = None) -> ChatSession:
        now = utcnow()
        session = self.db.scalars(
            insert(ChatSession)
            .values(
                id=uuid.uuid4(),
                organization_id=organization_id,
                user_id=user_id,
                title=title or settings.DEFAULT_SESSION_TITLE,
                created_at=now,
                updated_at=now,
            )
            .returning(ChatSession)
        ).first()

        if session is None:
            self.db.rollback()
            logger.error("Insert of chat session returned no row (org=%s user=%s)", organization_id, user_id)
            raise WriteFaulted("Failed to create chat session")

        self.db.commit()
        logger.info("Created chat session %s", session.id)
        return session

    def update_session_title(
        self, chat_session_id: UUID, organization_id: UUID, user_id: UUID, title: str
    ) -> ChatSession:
        result = self.db.execute(
            update(ChatSession)
            .where(ChatSession.id == chat_session_id, *self._owned_by(organization_id, user_id))
            .values(title=title, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            raise NotFound()

        self.db.commit()
        session = self.get_session(chat_session_id, organization_id, user_id)
        if session is None:
            raise NotFound()
        return session

    def delete_session(self, chat_session_id: UUID, organization_id: UUID, user_id: UUID) -> None:
        """Delete the session and its messages in one transaction."""
        session = self.get_session(chat_session_id, organization_id, user_id)
        if session is None:
            raise NotFound()

        self.db.execute(
            delete(ChatMessage)
            .where(ChatMessage.chat_session_id == session.id)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(
            delete(ChatSession)
            .where(ChatSession.id == session.id, *self._owned_by(organization_id, user_id))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # deleted concurrently; leave the messages alone too
            self.db.rollback()
            raise NotFound()

        self.db.commit()
        self.db.expunge(session)
        logger.info("Deleted chat session %s", chat_session_id)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def get_messages(self, chat_session_id: UUID) -> List[ChatMessage]:
        return list(
            self.db.scalars(
                select(ChatMessage)
                .where(ChatMessage.chat_session_id == chat_session_id)
                .order_by(ChatMessage.created_at.asc(), ChatMessage.id)
            ).all()
        )

    def get_messages_count(self, chat_session_id: UUID) -> int:
        return self.db.scalar(
            select(func.count()).select_from(ChatMessage).where(ChatMessage.chat_session_id == chat_session_id)
        ) or 0

    def get_messages_for_display(
        self, chat_session_id: UUID, organization_id: UUID, user_id: UUID
    ) -> List[MessageOut]:
        if self.get_session(chat_session_id, organization_id, user_id) is None:
            raise NotFound()
        return decode_messages(self.get_messages(chat_session_id))

    def create_messages(self, messages: Sequence[Dict[str, Any]]) -> List[ChatMessage]:
        """Insert a batch of messages; an empty batch is a no-op."""
        if not messages:
            return []
        inserted = self._insert_messages(messages)
        self.db.commit()
        return inserted

    def update_session_timestamp(self, chat_session_id: UUID) -> None:
        self._touch_session(chat_session_id)
        self.db.commit()

    def save_turn(
        self, chat_session_id: UUID, history: Sequence[UIMessage], assistant: UIMessage
    ) -> List[ChatMessage]:
        """Persist a completed turn.

        ``history`` is the full conversation the client streamed against.
        Messages already stored are skipped by position, so resubmitting the
        same history after a failed save does not append duplicates. Only
        user messages can be new in the unsaved tail: an assistant entry
        there is an answer that never completed and is dropped.

        Raises NotFound when the session disappeared while the answer was
        being generated; nothing is written in that case.
        """
        # the row lock taken here holds off a concurrent delete until commit
        if self._touch_session(chat_session_id) != 1:
            self.db.rollback()
            logger.warning("Chat session %s is gone; turn not saved", chat_session_id)
            raise NotFound()

        existing = self.get_messages_count(chat_session_id)
        tail = list(history[existing:])
        new_messages = [m for m in tail if m.role == "user"]
        if len(new_messages) != len(tail):
            logger.warning(
                "Dropped %d unsaved assistant message(s) from history of session %s",
                len(tail) - len(new_messages), chat_session_id,
            )
        if not new_messages and history:
            logger.warning(
                "Client history shorter than stored messages for session %s (%d <= %d)",
                chat_session_id, len(history), existing,
            )
            # the prompt being answered is always the last message
            if history[-1].role == "user":
                new_messages = [history[-1]]
        new_messages.append(assistant)

        rows = []
        for message in new_messages:
            metadata = None
            if message.role == "assistant" and message.metadata and message.metadata.sources:
                metadata = message.metadata
            rows.append(
                {
                    "chat_session_id": chat_session_id,
                    "role": message.role,
                    "parts": encode_parts(message.parts),
                    "meta": encode_metadata(metadata),
                }
            )

        inserted = self._insert_messages(rows)
        self.db.commit()
        logger.info("Saved %d messages to chat session %s", len(inserted), chat_session_id)
        return inserted

    def _next_timestamps(self, chat_session_id: UUID, count: int) -> List[datetime]:
        """Strictly increasing timestamps that sort after every stored message."""
        start = utcnow()
        latest = self.db.scalar(
            select(func.max(ChatMessage.created_at)).where(ChatMessage.chat_session_id == chat_session_id)
        )
        if latest is not None:
            if latest.tzinfo is None:
                latest = latest.replace(tzinfo=start.tzinfo)
            if latest >= start:
                start = latest + _TICK
        return [start + _TICK * i for i in range(count)]

    def _insert_messages(self, messages: Sequence[Dict[str, Any]]) -> List[ChatMessage]:
        rows = []
        stamps: Dict[UUID, List[datetime]] = {}
        for message in messages:
            row = dict(message)
            row.setdefault("id", uuid.uuid4())
            row.setdefault("meta", None)
            if row.get("created_at") is None:
                session_id = row["chat_session_id"]
                if session_id not in stamps:
                    batch = sum(1 for m in messages if m["chat_session_id"] == session_id)
                    stamps[session_id] = self._next_timestamps(session_id, batch)
                row["created_at"] = stamps[session_id].pop(0)
            rows.append(row)

        inserted = list(
            self.db.scalars(insert(ChatMessage).returning(ChatMessage, sort_by_parameter_order=True), rows).all()
        )
        if len(inserted) != len(rows):
            self.db.rollback()
            logger.error("Message insert returned %d of %d rows", len(inserted), len(rows))
            raise WriteFaulted("Failed to save chat messages")
        return inserted

    def _touch_session(self, chat_session_id: UUID) -> int:
        result = self.db.execute(
            update(ChatSession)
            .where(ChatSession.id == chat_session_id)
            .values(updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
