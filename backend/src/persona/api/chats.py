"""Chat API endpoints.

Private chats with characters, message history and the streamed reply.
"""

import json
from collections.abc import AsyncGenerator, Callable
from contextlib import aclosing
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.logging import get_logger
from ..core.response import PersonaResponse
from ..schemas.chat import (
    ChatResponse,
    CreatePrivateChatRequest,
    MessagePage,
    MessageResponse,
    SendMessageRequest,
)
from ..services.chat_service import ChatService
from ..services.conversation_orchestrator import ConversationOrchestrator
from .dependencies import get_chat_service, get_current_profile_id, get_orchestrator_builder, get_session_factory

logger = get_logger(__name__)
router = APIRouter(prefix="/chats", tags=["chats"])

SSE_DONE = "data: [DONE]\n\n"


def sse_event(payload: dict) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


async def stream_reply(
    session_factory: async_sessionmaker[AsyncSession],
    build_orchestrator: Callable[[AsyncSession], ConversationOrchestrator],
    chat_id: str,
    profile_id: str,
    content: list[dict],
) -> AsyncGenerator[str, None]:
    """SSE frames for one reply; the orchestrator is closed as soon as the client goes away."""
    async with session_factory() as session:
        orchestrator = build_orchestrator(session)
        async with aclosing(orchestrator.stream_message(chat_id, profile_id, content)) as increments:
            async for text in increments:
                yield sse_event({"type": "content", "content": text})
    yield SSE_DONE


@router.get("", summary="List chats")
async def list_chats(
    profile_id: str = Depends(get_current_profile_id),
    chat_service: ChatService = Depends(get_chat_service),
):
    chats = await chat_service.list_user_chats(profile_id)
    return PersonaResponse.success([ChatResponse.model_validate(c) for c in chats])


@router.post(
    "/private",
    summary="Open a private chat",
    description="Return the caller's one-on-one chat with a character, creating it on first use.",
)
async def create_private_chat(
    body: CreatePrivateChatRequest,
    profile_id: str = Depends(get_current_profile_id),
    chat_service: ChatService = Depends(get_chat_service),
):
    chat, created = await chat_service.get_or_create_private_chat(profile_id, body.character_id)
    payload = ChatResponse.model_validate(chat)
    if created:
        return PersonaResponse.created(payload)
    return PersonaResponse.success(payload)


@router.get("/{chat_id}/messages", summary="List messages")
async def list_messages(
    chat_id: str,
    limit: int = Query(20, ge=1, le=100, description="Number of messages to return"),
    before: datetime | None = Query(None, description="Only messages created before this instant"),
    profile_id: str = Depends(get_current_profile_id),
    chat_service: ChatService = Depends(get_chat_service),
):
    await chat_service.get_member_chat(chat_id, profile_id)
    messages, next_cursor = await chat_service.list_messages(chat_id, limit=limit, before=before)
    page = MessagePage(messages=[MessageResponse.from_message(m) for m in messages], next=next_cursor)
    return PersonaResponse.success(page)


@router.post(
    "/{chat_id}/messages/stream",
    summary="Send a message and stream the reply",
    description="Server-sent events: one `content` event per text increment, then `[DONE]`.",
    response_class=StreamingResponse,
)
async def send_message_stream(
    chat_id: str,
    body: SendMessageRequest,
    profile_id: str = Depends(get_current_profile_id),
    chat_service: ChatService = Depends(get_chat_service),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    build_orchestrator: Callable[[AsyncSession], ConversationOrchestrator] = Depends(get_orchestrator_builder),
):
    await chat_service.get_member_chat(chat_id, profile_id)
    logger.info("Streaming reply", extra={"chat_id": chat_id, "profile_id": profile_id})
    return StreamingResponse(
        stream_reply(session_factory, build_orchestrator, chat_id, profile_id, body.content_dicts()),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no", "Connection": "keep-alive"},
    )
