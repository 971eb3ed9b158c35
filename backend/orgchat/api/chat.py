"""
Chat API endpoints

Thin layer: validates input, scopes by the caller's identity and calls
ChatService. Store handlers are plain functions so FastAPI runs them in its
threadpool.
"""
import json
import logging
import uuid
from typing import Any, AsyncIterator, Dict, FrozenSet, List, NoReturn, Sequence
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import iterate_in_threadpool, run_in_threadpool

from orgchat.api.deps import ensure_member, get_current_user_id, get_member_org_ids
from orgchat.core.config import settings
from orgchat.core.errors import ChatError, DecodeFailed, NotFound, ValidationFailed
from orgchat.db.session import SessionLocal, get_db, get_engine
from orgchat.schemas.chat import (
    CreateSessionRequest,
    MessageMetadata,
    MessagesOut,
    SessionListOut,
    SessionOut,
    StreamTurnRequest,
    SuccessOut,
    TextPart,
    UIMessage,
    UpdateSessionRequest,
)
from orgchat.services.chat_service import ChatService
from orgchat.services.generators import ResponseGenerator, SourcesFound, TextDelta, get_generator

logger = logging.getLogger(__name__)

router = APIRouter()


def _raise_http(e: ChatError) -> NoReturn:
    if isinstance(e, NotFound):
        raise HTTPException(status_code=404, detail=e.message)
    if isinstance(e, ValidationFailed):
        raise HTTPException(status_code=422, detail=e.errors or e.message)
    if isinstance(e, DecodeFailed):
        raise HTTPException(status_code=500, detail="Failed to parse message data")
    raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/sessions", response_model=SessionListOut)
def list_sessions(
    organization_id: UUID = Query(..., alias="organizationId"),
    page: int = Query(1, ge=1),
    page_size: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE, alias="pageSize"),
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    member_org_ids: FrozenSet[UUID] = Depends(get_member_org_ids),
):
    """
    List the caller's chat sessions in an organization, most recent first
    """
    ensure_member(organization_id, member_org_ids)
    try:
        result = ChatService(db).list_sessions(organization_id, user_id, page=page, page_size=page_size)
    except ChatError as e:
        _raise_http(e)

    return SessionListOut(
        sessions=[SessionOut.model_validate(s) for s in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        total_pages=result.total_pages,
    )


@router.post("/sessions", response_model=SessionOut)
def create_session(
    payload: CreateSessionRequest,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    member_org_ids: FrozenSet[UUID] = Depends(get_member_org_ids),
):
    ensure_member(payload.organization_id, member_org_ids)
    try:
        session = ChatService(db).create_session(payload.organization_id, user_id, payload.title)
    except ChatError as e:
        _raise_http(e)
    return SessionOut.model_validate(session)


@router.get("/sessions/{chat_session_id}", response_model=SessionOut)
def get_session(
    chat_session_id: UUID,
    organization_id: UUID = Query(..., alias="organizationId"),
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    member_org_ids: FrozenSet[UUID] = Depends(get_member_org_ids),
):
    ensure_member(organization_id, member_org_ids)
    session = ChatService(db).get_session(chat_session_id, organization_id, user_id)
    if not session:
        raise HTTPException(status_code=404, detail="Chat session not found")
    return SessionOut.model_validate(session)


@router.get("/sessions/{chat_session_id}/messages", response_model=MessagesOut)
def get_messages(
    chat_session_id: UUID,
    organization_id: UUID = Query(..., alias="organizationId"),
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    member_org_ids: FrozenSet[UUID] = Depends(get_member_org_ids),
):
    """
    Get every message of a session, oldest first, with parts and sources decoded
    """
    ensure_member(organization_id, member_org_ids)
    try:
        messages = ChatService(db).get_messages_for_display(chat_session_id, organization_id, user_id)
    except ChatError as e:
        _raise_http(e)
    return MessagesOut(messages=messages)


@router.patch("/sessions/{chat_session_id}", response_model=SuccessOut)
def update_session(
    chat_session_id: UUID,
    payload: UpdateSessionRequest,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    member_org_ids: FrozenSet[UUID] = Depends(get_member_org_ids),
):
    ensure_member(payload.organization_id, member_org_ids)
    try:
        ChatService(db).update_session_title(chat_session_id, payload.organization_id, user_id, payload.title)
    except ChatError as e:
        _raise_http(e)
    return SuccessOut()


@router.delete("/sessions/{chat_session_id}", response_model=SuccessOut)
def delete_session(
    chat_session_id: UUID,
    organization_id: UUID = Query(..., alias="organizationId"),
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    member_org_ids: FrozenSet[UUID] = Depends(get_member_org_ids),
):
    """
    Delete a chat session and all of its messages
    """
    ensure_member(organization_id, member_org_ids)
    try:
        ChatService(db).delete_session(chat_session_id, organization_id, user_id)
    except ChatError as e:
        _raise_http(e)
    return SuccessOut()


def _event(payload: Dict[str, Any]) -> str:
    return json.dumps(payload) + "\n"


def _persist_turn(chat_session_id: UUID, history: Sequence[UIMessage], assistant: UIMessage) -> None:
    db = SessionLocal(bind=get_engine())
    try:
        ChatService(db).save_turn(chat_session_id, history, assistant)
    finally:
        db.close()


async def _turn_events(
    request: Request,
    chat_session_id: UUID,
    history: List[UIMessage],
    generator: ResponseGenerator,
) -> AsyncIterator[str]:
    message_id = str(uuid.uuid4())
    yield _event({"type": "start", "messageId": message_id})

    text: List[str] = []
    sources = []
    try:
        async for chunk in iterate_in_threadpool(generator.stream(history)):
            if await request.is_disconnected():
                logger.info("Client left chat session %s mid-stream; turn discarded", chat_session_id)
                return
            if isinstance(chunk, TextDelta):
                text.append(chunk.text)
                yield _event({"type": "text-delta", "delta": chunk.text})
            elif isinstance(chunk, SourcesFound):
                sources.extend(chunk.sources)
                yield _event(
                    {"type": "sources", "sources": [s.model_dump(mode="json", by_alias=True) for s in chunk.sources]}
                )
    except Exception:
        logger.exception("Response generation failed for chat session %s", chat_session_id)
        yield _event({"type": "error", "message": "Failed to generate a response"})
        return

    assistant = UIMessage(
        id=message_id,
        role="assistant",
        parts=[TextPart(text="".join(text))],
        metadata=MessageMetadata(sources=sources) if sources else None,
    )
    try:
        await run_in_threadpool(_persist_turn, chat_session_id, history, assistant)
    except (ChatError, SQLAlchemyError):
        logger.exception("Failed to save turn for chat session %s", chat_session_id)
        yield _event({"type": "error", "message": "Failed to save the conversation"})
        return

    yield _event({"type": "finish", "messageId": message_id})


@router.post("/sessions/{chat_session_id}/stream")
async def stream_turn(
    chat_session_id: UUID,
    payload: StreamTurnRequest,
    request: Request,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    member_org_ids: FrozenSet[UUID] = Depends(get_member_org_ids),
    generator: ResponseGenerator = Depends(get_generator),
):
    """
    Stream the assistant's answer to the last user message as NDJSON events.

    The turn (new user message + assistant answer) is stored in one batch
    once generation completes; an interrupted stream stores nothing.
    """
    ensure_member(payload.organization_id, member_org_ids)
    if payload.messages[-1].role != "user":
        raise HTTPException(status_code=422, detail="The last message must come from the user")

    service = ChatService(db)
    session = await run_in_threadpool(service.get_session, chat_session_id, payload.organization_id, user_id)
    if not session:
        raise HTTPException(status_code=404, detail="Chat session not found")

    return StreamingResponse(
        _turn_events(request, chat_session_id, payload.messages, generator),
        media_type="application/x-ndjson",
    )
