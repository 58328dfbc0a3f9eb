"""Service singletons and request dependencies shared by the routers.

Every provider is a plain function so tests can swap it through
``app.dependency_overrides``.
"""

from functools import lru_cache
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

import config
from auth_service import AuthService, decode_access_token
from chat_service import ChatService
from database import db
from errors import NotAuthenticatedError
from mail_service import MailgunMailer, MailService
from models import TokenType, User
from openai_helper import ChatClient, build_chat_client
from quiz_engine import QuizService
from quiz_generator import QuizGenerator
from repositories import (
    ChatMessageRepository,
    ChatSessionRepository,
    QuizRepository,
    QuizStateRepository,
    TokenRepository,
    UserRepository,
)
from tavily_client import TavilySearchClient
from token_service import TokenService
from topic_validator import TopicValidator

security = HTTPBearer(auto_error=False)


@lru_cache(maxsize=1)
def get_chat_client() -> ChatClient:
    return build_chat_client(
        api_key=config.LLM_API_KEY,
        model=config.LLM_CHAT_MODEL,
        base_url=config.LLM_BASE_URL,
        timeout_seconds=config.LLM_TIMEOUT_SECONDS,
        max_attempts=config.LLM_MAX_ATTEMPTS,
        temperature=config.LLM_TEMPERATURE,
        max_tokens=config.LLM_MAX_TOKENS,
    )


@lru_cache(maxsize=1)
def get_quiz_service() -> QuizService:
    chat_client = get_chat_client()
    generator = QuizGenerator(
        chat_client=chat_client,
        topic_validator=TopicValidator(chat_client),
        search_client=TavilySearchClient(
            api_key=config.TAVILY_API_KEY,
            base_url=config.TAVILY_BASE_URL,
            timeout_seconds=config.TAVILY_TIMEOUT_SECONDS,
            max_results=config.TAVILY_MAX_RESULTS,
        ),
    )
    return QuizService(
        quiz_repository=QuizRepository(db),
        state_repository=QuizStateRepository(db),
        generator=generator,
        write_retries=config.QUIZ_STATE_WRITE_RETRIES,
    )


@lru_cache(maxsize=1)
def get_chat_service() -> ChatService:
    return ChatService(
        sessions=ChatSessionRepository(db),
        messages=ChatMessageRepository(db),
        chat_client=get_chat_client(),
        quiz_service=get_quiz_service(),
    )


@lru_cache(maxsize=1)
def get_auth_service() -> AuthService:
    token_service = TokenService(
        repository=TokenRepository(db),
        pepper=config.OTP_PEPPER,
        ttl_minutes={
            TokenType.ACTIVATION: config.ACTIVATION_TOKEN_TTL_MINUTES,
            TokenType.PASSWORD_RESET: config.PASSWORD_RESET_TOKEN_TTL_MINUTES,
            TokenType.EMAIL_CHANGE: config.OTP_TTL_MINUTES,
        },
    )
    mail_service = MailService(
        mailer=MailgunMailer(
            api_key=config.MAILGUN_API_KEY,
            domain=config.MAILGUN_DOMAIN,
            from_email=config.MAILGUN_FROM_EMAIL,
            base_url=config.MAILGUN_BASE_URL,
            timeout_seconds=config.MAIL_TIMEOUT_SECONDS,
        ),
        dispatch_mode=config.EMAIL_DISPATCH_MODE,
        activation_ttl_minutes=config.ACTIVATION_TOKEN_TTL_MINUTES,
        password_reset_ttl_minutes=config.PASSWORD_RESET_TOKEN_TTL_MINUTES,
    )
    return AuthService(users=UserRepository(db), token_service=token_service, mail_service=mail_service)


def read_access_token(request: Request, credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    if credentials is not None and credentials.credentials:
        return credentials.credentials
    return request.cookies.get(config.JWT_COOKIE_NAME)


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    auth_service: AuthService = Depends(get_auth_service),
) -> User:
    token = read_access_token(request, credentials)
    if not token:
        raise NotAuthenticatedError()
    payload = decode_access_token(token, config.JWT_SECRET)
    user = await auth_service.users.find_by_id(payload["user_id"])
    if user is None or not user.enabled:
        raise NotAuthenticatedError("User not found")
    return user
