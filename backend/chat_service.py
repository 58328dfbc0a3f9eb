import logging
from typing import List, Optional

from errors import AccessDeniedError, ChatError, ChatSessionNotFoundError, QuizNotFoundError
from models import ChatMessage, ChatSession, ChatSessionDetails, MessageRole
from openai_helper import ChatClient, assistant_message, system_message, user_message
from quiz_engine import QuizService
from repositories import ChatMessageRepository, ChatSessionRepository

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TITLE = "New Chat Session"

SYSTEM_PROMPT = """IDENTITY & CHARACTER ROLE:
You are **Fined Mentor**, a specialized AI financial advisor and expert in finance, investment, real estate, and immobilien (property/real estate).
When asked about your name or who you are, always respond that you are "Fined Mentor".

TOPIC RESTRICTIONS (STRICTLY ENFORCE):
You ONLY answer questions related to:
- Finance (personal finance, corporate finance, financial planning)
- Investment (stocks, bonds, ETFs, mutual funds, portfolio management)
- Real Estate (property investment, real estate markets, rental properties)
- Immobilien (German real estate, property management, German market specifics)

If a user asks about ANY other topic, politely decline and redirect them to your expertise areas, for example:
- English: "I'm Fined Mentor, specialized in finance, investment, and real estate. I can't help with that topic, but I'd be happy to answer questions about financial planning, investing, or property markets!"
- French: "Je suis Fined Mentor, spécialisé en finance, investissement et immobilier. Je ne peux pas vous aider sur ce sujet, mais je serais ravi de répondre à vos questions sur la planification financière, l'investissement ou les marchés immobiliers !"
- German: "Ich bin Fined Mentor, spezialisiert auf Finanzen, Investitionen und Immobilien. Ich kann bei diesem Thema nicht helfen, aber ich beantworte gerne Fragen zur Finanzplanung, zu Investitionen oder zu Immobilienmärkten!"

MULTILINGUAL RESPONSE RULE (CRITICAL):
ALWAYS respond in the SAME language the user writes in (English, French or German).

SOURCES:
When you rely on specific facts or current data, include up to 5 relevant sources in markdown format:
- [Source Title](url)

REASONING APPROACH:
1. Verify the question is about finance/investment/real estate/immobilien
2. Detect the user's language
3. Gauge the user's knowledge level
4. Explain the core concept in plain terms, then give a practical example
5. Mention risks where relevant; never promise returns
"""


def to_llm_messages(history: List[ChatMessage]) -> List[dict]:
    messages = [system_message(SYSTEM_PROMPT)]
    for message in history:
        if message.role == MessageRole.MODEL:
            messages.append(assistant_message(message.text))
        else:
            messages.append(user_message(message.text))
    return messages


class ChatService:
    def __init__(
        self,
        sessions: ChatSessionRepository,
        messages: ChatMessageRepository,
        chat_client: ChatClient,
        quiz_service: QuizService,
    ):
        self.sessions = sessions
        self.messages = messages
        self.chat_client = chat_client
        self.quiz_service = quiz_service

    async def create_session(self, title: Optional[str], user_id: str) -> ChatSession:
        session = ChatSession(title=(title or "").strip() or DEFAULT_SESSION_TITLE, user_id=user_id)
        await self.sessions.insert(session)
        logger.info("chat_session_created session_id=%s user_id=%s", session.id, user_id)
        return session

    async def get_session(self, session_id: str, user_id: Optional[str] = None) -> ChatSession:
        session = await self.sessions.find_active_by_id(session_id)
        if session is None:
            raise ChatSessionNotFoundError(f"Chat session not found with id: {session_id}")
        if user_id is not None and session.user_id != user_id:
            raise AccessDeniedError("You do not have access to this chat session")
        return session

    async def ensure_session_access(self, session_id: Optional[str], user_id: str) -> None:
        """Reject quiz access through a chat session owned by someone else.

        Quizzes without a live session are not restricted.
        """
        if not session_id:
            return
        session = await self.sessions.find_active_by_id(session_id)
        if session is not None and session.user_id != user_id:
            logger.warning("quiz_access_denied session_id=%s user_id=%s", session_id, user_id)
            raise AccessDeniedError("You do not have access to this chat session")

    async def get_session_with_details(self, session_id: str, user_id: Optional[str] = None) -> ChatSessionDetails:
        session = await self.get_session(session_id, user_id)
        details = await self._with_quiz(session)
        details.messages = await self.messages.find_by_session(session_id)
        return details

    async def get_active_sessions(self, user_id: str) -> List[ChatSessionDetails]:
        sessions = await self.sessions.find_active_by_user(user_id)
        return [await self._with_quiz(session) for session in sessions]

    async def update_session_title(self, session_id: str, title: str, user_id: Optional[str] = None) -> ChatSession:
        await self.get_session(session_id, user_id)
        updated = await self.sessions.update_fields(session_id, {"title": title.strip()})
        if updated is None:
            raise ChatSessionNotFoundError(f"Chat session not found with id: {session_id}")
        return updated

    async def deactivate_session(self, session_id: str, user_id: Optional[str] = None) -> None:
        await self.get_session(session_id, user_id)
        await self.sessions.update_fields(session_id, {"active": False})
        logger.info("chat_session_deactivated session_id=%s", session_id)

    async def get_chat_history(self, session_id: str, user_id: Optional[str] = None) -> List[ChatMessage]:
        await self.get_session(session_id, user_id)
        return await self.messages.find_by_session(session_id)

    async def get_chat_response(self, session_id: str, text: str, user_id: Optional[str] = None) -> ChatMessage:
        await self.get_session(session_id, user_id)
        await self.messages.insert(
            ChatMessage(chat_session_id=session_id, role=MessageRole.USER, text=text)
        )
        history = await self.messages.find_by_session(session_id)
        try:
            reply = await self.chat_client.complete(to_llm_messages(history))
        except Exception as exc:
            logger.error("chat_response_failed session_id=%s error=%s", session_id, exc)
            raise ChatError() from exc

        answer = await self.messages.insert(
            ChatMessage(chat_session_id=session_id, role=MessageRole.MODEL, text=reply)
        )
        logger.info("chat_response_saved session_id=%s history=%s", session_id, len(history))
        return answer

    async def _with_quiz(self, session: ChatSession) -> ChatSessionDetails:
        details = ChatSessionDetails(**session.model_dump())
        try:
            quiz = await self.quiz_service.get_quiz_by_session_id(session.id)
        except QuizNotFoundError:
            return details
        details.quiz = quiz
        details.quiz_state = await self.quiz_service.find_latest_state_for_quiz(quiz.id)
        return details
