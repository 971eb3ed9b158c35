"""
Chat request/response schemas and the message content model
"""
from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from orgchat.core.config import settings

Role = Literal["user", "assistant", "system"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Message content: parts are a tagged union on "type"
# ---------------------------------------------------------------------------

class TextPart(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["text"] = "text"
    text: str


class ReasoningPart(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["reasoning"] = "reasoning"
    text: str


class StepStartPart(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["step-start"] = "step-start"


MessagePart = Annotated[Union[TextPart, ReasoningPart, StepStartPart], Field(discriminator="type")]


class MessageSource(CamelModel):
    """A cited document. Without a url it is shown but not clickable."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    document_id: str = Field(min_length=1)
    title: str
    url: Optional[str] = None


class MessageMetadata(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    sources: List[MessageSource] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

SessionTitle = Annotated[str, Field(min_length=1, max_length=255)]


class CreateSessionRequest(CamelModel):
    organization_id: UUID
    title: SessionTitle = settings.DEFAULT_SESSION_TITLE


class UpdateSessionRequest(CamelModel):
    organization_id: UUID
    title: SessionTitle


class SessionOut(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: UUID
    organization_id: UUID
    user_id: UUID
    title: str
    created_at: datetime
    updated_at: datetime


class SessionListOut(CamelModel):
    sessions: List[SessionOut]
    total: int
    page: int
    page_size: int
    total_pages: int


class SuccessOut(CamelModel):
    success: bool = True


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

class MessageOut(CamelModel):
    id: UUID
    role: Role
    parts: List[MessagePart]
    metadata: Optional[MessageMetadata] = None
    created_at: datetime


class MessagesOut(CamelModel):
    messages: List[MessageOut]


class UIMessage(CamelModel):
    """A message as held by the client; ``id`` is client-side only."""

    id: Optional[str] = None
    role: Role
    parts: List[MessagePart]
    metadata: Optional[MessageMetadata] = None


class StreamTurnRequest(CamelModel):
    organization_id: UUID
    messages: List[UIMessage] = Field(min_length=1)
