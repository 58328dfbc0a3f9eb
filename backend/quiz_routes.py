import logging
from typing import AsyncIterator

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

import config
from chat_service import ChatService
from dependencies import get_chat_service, get_current_user, get_quiz_service
from errors import AppError
from models import (
    ApiResponse,
    Quiz,
    QuizAnswerRequest,
    QuizGenerateRequest,
    QuizSaveRequest,
    QuizState,
    UpdateIndexRequest,
    User,
)
from quiz_engine import QuizService
from rate_limiter import ensure_rate_limit

logger = logging.getLogger(__name__)

quiz_router = APIRouter(prefix="/api/quiz", tags=["Quiz"])


def format_sse_data(chunk: str) -> str:
    """One SSE event; a multi-line chunk becomes several ``data:`` lines."""
    return "".join(f"data: {line}\n" for line in chunk.split("\n")) + "\n"


async def sse_events(chunks: AsyncIterator[str], user_id: str) -> AsyncIterator[str]:
    try:
        async for chunk in chunks:
            yield format_sse_data(chunk)
    except AppError as exc:
        # Headers are already sent.
        logger.warning("quiz_stream_aborted user_id=%s error=%s", user_id, exc.message)


async def _authorized_state(
    quiz_state_id: str,
    user: User,
    quiz_service: QuizService,
    chat_service: ChatService,
) -> QuizState:
    state = await quiz_service.get_quiz_state(quiz_state_id)
    await chat_service.ensure_session_access(state.chat_session_id, user.id)
    return state


@quiz_router.post("/generate", response_model=ApiResponse[Quiz])
async def generate_quiz(
    payload: QuizGenerateRequest,
    current_user: User = Depends(get_current_user),
    quiz_service: QuizService = Depends(get_quiz_service),
    chat_service: ChatService = Depends(get_chat_service),
):
    await chat_service.ensure_session_access(payload.chat_session_id, current_user.id)
    await ensure_rate_limit(current_user.id, "quiz_generate", config.QUIZ_GENERATE_PER_MIN_LIMIT)
    quiz = await quiz_service.generate_quiz(payload.topic, payload.chat_session_id)
    return ApiResponse.ok(data=quiz, message="Quiz generated successfully")


@quiz_router.post("/stream")
async def stream_quiz(
    payload: QuizGenerateRequest,
    current_user: User = Depends(get_current_user),
    quiz_service: QuizService = Depends(get_quiz_service),
    chat_service: ChatService = Depends(get_chat_service),
):
    await chat_service.ensure_session_access(payload.chat_session_id, current_user.id)
    await ensure_rate_limit(current_user.id, "quiz_generate", config.QUIZ_GENERATE_PER_MIN_LIMIT)
    chunks = await quiz_service.stream_quiz(payload.topic)
    return StreamingResponse(
        sse_events(chunks, current_user.id),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@quiz_router.post("/save", response_model=ApiResponse[Quiz])
async def save_quiz(
    payload: QuizSaveRequest,
    current_user: User = Depends(get_current_user),
    quiz_service: QuizService = Depends(get_quiz_service),
    chat_service: ChatService = Depends(get_chat_service),
):
    await chat_service.ensure_session_access(payload.chat_session_id, current_user.id)
    quiz = await quiz_service.save_streamed_quiz(payload.topic, payload.chat_session_id, payload.quiz_json)
    return ApiResponse.ok(data=quiz, message="Quiz saved successfully")


@quiz_router.post("/answer", response_model=ApiResponse[QuizState])
async def submit_answer(
    payload: QuizAnswerRequest,
    current_user: User = Depends(get_current_user),
    quiz_service: QuizService = Depends(get_quiz_service),
    chat_service: ChatService = Depends(get_chat_service),
):
    await _authorized_state(payload.quiz_state_id, current_user, quiz_service, chat_service)
    state = await quiz_service.submit_answer(payload.quiz_state_id, payload.question_index, payload.answer)
    return ApiResponse.ok(data=state, message="Answer submitted successfully")


@quiz_router.get("/sessions/{session_id}", response_model=ApiResponse[Quiz])
async def get_quiz_by_session(
    session_id: str,
    current_user: User = Depends(get_current_user),
    quiz_service: QuizService = Depends(get_quiz_service),
    chat_service: ChatService = Depends(get_chat_service),
):
    await chat_service.ensure_session_access(session_id, current_user.id)
    quiz = await quiz_service.get_quiz_by_session_id(session_id)
    return ApiResponse.ok(data=quiz)


@quiz_router.get("/sessions/{session_id}/state", response_model=ApiResponse[QuizState])
async def get_quiz_state_by_session(
    session_id: str,
    current_user: User = Depends(get_current_user),
    quiz_service: QuizService = Depends(get_quiz_service),
    chat_service: ChatService = Depends(get_chat_service),
):
    await chat_service.ensure_session_access(session_id, current_user.id)
    state = await quiz_service.get_quiz_state_by_session_id(session_id)
    return ApiResponse.ok(data=state)


@quiz_router.get("/state/{quiz_state_id}", response_model=ApiResponse[QuizState])
async def get_quiz_state(
    quiz_state_id: str,
    current_user: User = Depends(get_current_user),
    quiz_service: QuizService = Depends(get_quiz_service),
    chat_service: ChatService = Depends(get_chat_service),
):
    state = await _authorized_state(quiz_state_id, current_user, quiz_service, chat_service)
    return ApiResponse.ok(data=state)


@quiz_router.put("/state/{quiz_state_id}/index", response_model=ApiResponse[QuizState])
async def update_current_question_index(
    quiz_state_id: str,
    payload: UpdateIndexRequest,
    current_user: User = Depends(get_current_user),
    quiz_service: QuizService = Depends(get_quiz_service),
    chat_service: ChatService = Depends(get_chat_service),
):
    await _authorized_state(quiz_state_id, current_user, quiz_service, chat_service)
    state = await quiz_service.update_current_question_index(quiz_state_id, payload.index)
    return ApiResponse.ok(data=state)


@quiz_router.post("/{quiz_id}/start", response_model=ApiResponse[QuizState])
async def start_quiz(
    quiz_id: str,
    chat_session_id: str = Query(..., alias="chatSessionId"),
    current_user: User = Depends(get_current_user),
    quiz_service: QuizService = Depends(get_quiz_service),
    chat_service: ChatService = Depends(get_chat_service),
):
    quiz = await quiz_service.get_quiz(quiz_id)
    await chat_service.ensure_session_access(quiz.chat_session_id, current_user.id)
    await chat_service.ensure_session_access(chat_session_id, current_user.id)
    state = await quiz_service.start_quiz(quiz_id, chat_session_id)
    return ApiResponse.ok(data=state, message="Quiz started successfully")


@quiz_router.post("/{quiz_state_id}/finish", response_model=ApiResponse[QuizState])
async def finish_quiz(
    quiz_state_id: str,
    current_user: User = Depends(get_current_user),
    quiz_service: QuizService = Depends(get_quiz_service),
    chat_service: ChatService = Depends(get_chat_service),
):
    await _authorized_state(quiz_state_id, current_user, quiz_service, chat_service)
    state = await quiz_service.finish_quiz(quiz_state_id)
    return ApiResponse.ok(data=state, message="Quiz finished successfully")
