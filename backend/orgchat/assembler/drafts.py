"""
Staging of a new conversation's opening message.

The prompt typed on the landing page is kept in an ephemeral slot keyed by the
freshly created session id, then picked up once by that session's view.
"""
from typing import Dict, Optional
from uuid import UUID

from orgchat.assembler.client import ChatClient
from orgchat.schemas.chat import SessionOut

TITLE_LIMIT = 50


def initial_message_key(chat_session_id) -> str:
    return f"chat-initial-{chat_session_id}"


def derive_title(message: str, limit: int = TITLE_LIMIT) -> str:
    message = message.strip()
    return message[:limit] + ("..." if len(message) > limit else "")


class DraftStore:
    """In-memory key/value slot, the runtime analogue of browser sessionStorage."""

    def __init__(self):
        self._items: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove(self, key: str) -> None:
        self._items.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._items

    def __len__(self) -> int:
        return len(self._items)


def start_conversation(client: ChatClient, drafts: DraftStore, organization_id: UUID, text: str) -> SessionOut:
    """Create a session titled after the prompt and stage the prompt for its view."""
    message = text.strip()
    if not message:
        raise ValueError("Cannot start a conversation with an empty message")
    session = client.create_session(organization_id, title=derive_title(message))
    drafts.set(initial_message_key(session.id), message)
    return session
