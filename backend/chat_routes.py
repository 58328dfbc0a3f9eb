from typing import List, Optional

from fastapi import APIRouter, Depends, Query

import config
from chat_service import ChatService
from dependencies import get_chat_service, get_current_user
from models import (
    ApiResponse,
    ChatMessage,
    ChatMessageRequest,
    ChatSession,
    ChatSessionDetails,
    UpdateSessionTitleRequest,
    User,
)
from rate_limiter import ensure_rate_limit

chat_router = APIRouter(prefix="/api/chat", tags=["Chat"])


@chat_router.post("/sessions", response_model=ApiResponse[ChatSession])
async def create_session(
    title: Optional[str] = Query(default=None),
    current_user: User = Depends(get_current_user),
    chat_service: ChatService = Depends(get_chat_service),
):
    session = await chat_service.create_session(title, current_user.id)
    return ApiResponse.ok(data=session, message="Chat session created successfully")


@chat_router.get("/sessions", response_model=ApiResponse[List[ChatSessionDetails]])
async def list_sessions(
    current_user: User = Depends(get_current_user),
    chat_service: ChatService = Depends(get_chat_service),
):
    sessions = await chat_service.get_active_sessions(current_user.id)
    return ApiResponse.ok(data=sessions)


@chat_router.get("/sessions/{session_id}", response_model=ApiResponse[ChatSessionDetails])
async def get_session(
    session_id: str,
    current_user: User = Depends(get_current_user),
    chat_service: ChatService = Depends(get_chat_service),
):
    details = await chat_service.get_session_with_details(session_id, current_user.id)
    return ApiResponse.ok(data=details)


@chat_router.get("/sessions/{session_id}/history", response_model=ApiResponse[List[ChatMessage]])
async def get_history(
    session_id: str,
    current_user: User = Depends(get_current_user),
    chat_service: ChatService = Depends(get_chat_service),
):
    history = await chat_service.get_chat_history(session_id, current_user.id)
    return ApiResponse.ok(data=history)


@chat_router.put("/sessions/{session_id}/title", response_model=ApiResponse[ChatSession])
async def update_title(
    session_id: str,
    payload: UpdateSessionTitleRequest,
    current_user: User = Depends(get_current_user),
    chat_service: ChatService = Depends(get_chat_service),
):
    session = await chat_service.update_session_title(session_id, payload.title, current_user.id)
    return ApiResponse.ok(data=session, message="Session title updated successfully")


@chat_router.delete("/sessions/{session_id}", response_model=ApiResponse[None])
async def deactivate_session(
    session_id: str,
    current_user: User = Depends(get_current_user),
    chat_service: ChatService = Depends(get_chat_service),
):
    await chat_service.deactivate_session(session_id, current_user.id)
    return ApiResponse.ok(message="Chat session deactivated successfully")


@chat_router.post("/message", response_model=ApiResponse[ChatMessage])
async def send_message(
    payload: ChatMessageRequest,
    current_user: User = Depends(get_current_user),
    chat_service: ChatService = Depends(get_chat_service),
):
    await ensure_rate_limit(current_user.id, "chat_message", config.CHAT_MESSAGE_PER_MIN_LIMIT)
    reply = await chat_service.get_chat_response(payload.chat_session_id, payload.message, current_user.id)
    return ApiResponse.ok(data=reply)
