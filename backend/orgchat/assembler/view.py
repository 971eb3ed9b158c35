"""
One open conversation: loads the session and its history, runs turns against
the chat API and sends a staged opening message exactly once.
"""
from __future__ import annotations

import enum
import logging
from typing import List, Optional
from uuid import UUID

from orgchat.assembler.client import ChatClient, ChatClientError, SessionNotFound
from orgchat.assembler.conversation import Conversation, MessageView
from orgchat.assembler.drafts import DraftStore, initial_message_key
from orgchat.schemas.chat import SessionOut

logger = logging.getLogger(__name__)

GENERIC_ERROR_TITLE = "Something went wrong"
GENERIC_ERROR_DETAIL = "Please try again later. If the problem persists, please contact support."


class ViewStatus(str, enum.Enum):
    LOADING = "loading"
    READY = "ready"
    NOT_FOUND = "not_found"
    ERROR = "error"


class ConversationView:
    def __init__(self, client: ChatClient, drafts: DraftStore, chat_session_id: UUID, organization_id: UUID):
        self.client = client
        self.drafts = drafts
        self.chat_session_id = chat_session_id
        self.organization_id = organization_id
        self.conversation = Conversation()
        self.session: Optional[SessionOut] = None
        self.status = ViewStatus.LOADING
        self.error_message: Optional[str] = None
        # one-shot latch for the staged opening message, per view instance
        self._initial_message_sent = False

    def load(self) -> ViewStatus:
        try:
            self.session = self.client.get_session(self.chat_session_id, self.organization_id)
            messages = self.client.get_messages(self.chat_session_id, self.organization_id)
        except SessionNotFound as e:
            self.session = None
            self.status = ViewStatus.NOT_FOUND
            self.error_message = e.message
        except ChatClientError as e:
            logger.warning("Failed to load chat session %s: %s", self.chat_session_id, e.message)
            self.session = None
            self.status = ViewStatus.ERROR
            self.error_message = GENERIC_ERROR_TITLE
        else:
            self.conversation.load(messages)
            self.status = ViewStatus.READY
        return self.status

    @property
    def error_detail(self) -> Optional[str]:
        return GENERIC_ERROR_DETAIL if self.status == ViewStatus.ERROR else None

    def maybe_send_initial_draft(self) -> bool:
        """Submit the staged opening message if this is its session's first view.

        Safe to call on every state change; at most one submission happens
        per view instance and the staged message is cleared before sending.
        """
        if (
            self._initial_message_sent
            or self.conversation.messages
            or self.conversation.is_loading
            or self.session is None
        ):
            return False

        key = initial_message_key(self.session.id)
        initial_message = self.drafts.get(key)
        if not initial_message:
            return False

        self._initial_message_sent = True
        self.drafts.remove(key)
        self.submit(initial_message)
        return True

    def submit(self, text: str) -> bool:
        if self.session is None or not self.conversation.can_submit(text):
            return False

        self.conversation.begin_turn(text.strip())
        try:
            for event in self.client.stream_turn(
                self.session.id, self.organization_id, self.conversation.history()
            ):
                self.conversation.apply(event)
        except ChatClientError as e:
            logger.warning("Chat turn failed for session %s: %s", self.session.id, e.message)
            self.conversation.fail_turn()

        # a stream that ends without finish/error is treated as failed
        self.conversation.fail_turn()
        return True

    def render(self) -> List[MessageView]:
        return self.conversation.render()

    def should_leave_after_delete(self, deleted_session_id: UUID) -> bool:
        """Whether deleting ``deleted_session_id`` removed the conversation on screen."""
        return str(deleted_session_id) == str(self.chat_session_id)
