import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Tuple

import bcrypt
import jwt

from errors import (
    AccountDisabledError,
    AccountNotActivatedError,
    BadCredentialsError,
    InvalidTokenError,
    NotAuthenticatedError,
    UserAlreadyActivatedError,
    UserAlreadyExistsError,
    UserNotFoundError,
)
from mail_service import MailService
from models import TokenType, User
from repositories import UserRepository
from token_service import TokenService

logger = logging.getLogger(__name__)

DEFAULT_ROLE = "ROLE_USER"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def create_access_token(user: User, secret: str, expires_minutes: int) -> Tuple[str, datetime]:
    expires_at = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    payload = {
        "user_id": user.id,
        "username": user.username,
        "roles": list(user.roles),
        "type": "access",
        "jti": str(uuid.uuid4()),
        "exp": expires_at,
    }
    return jwt.encode(payload, secret, algorithm="HS256"), expires_at


def decode_access_token(token: str, secret: str) -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise NotAuthenticatedError("Token expired")
    except jwt.PyJWTError:
        raise NotAuthenticatedError("Invalid token")
    if payload.get("type") != "access" or not payload.get("user_id"):
        raise NotAuthenticatedError("Invalid token")
    return payload


class AuthService:
    def __init__(
        self,
        users: UserRepository,
        token_service: TokenService,
        mail_service: MailService,
    ):
        self.users = users
        self.token_service = token_service
        self.mail_service = mail_service

    async def register_user(self, username: str, email: str, password: str) -> User:
        username = username.strip()
        email = email.strip().lower()
        if await self.users.exists_by_username(username):
            raise UserAlreadyExistsError("Username is already taken")
        if await self.users.exists_by_email(email):
            raise UserAlreadyExistsError("Email is already registered")

        user = User(
            username=username,
            email=email,
            password_hash=hash_password(password),
            activated=False,
            enabled=True,
            roles=[DEFAULT_ROLE],
        )
        await self.users.insert(user)
        logger.info("user_registered user_id=%s", user.id)

        token = await self.token_service.create_activation_token(user)
        self.mail_service.send_activation_email(user.email, user.username, token.value)
        return user

    async def activate_user(self, token_value: str) -> User:
        token = await self.token_service.validate_token(token_value, TokenType.ACTIVATION)
        if token is None:
            raise InvalidTokenError("Invalid or expired activation token")

        await self.token_service.mark_token_as_used(token)
        try:
            user = await self.users.update_fields(token.user_id, {"activated": True})
        except Exception:
            await self.token_service.release_token(token)
            logger.exception("user_activation_failed user_id=%s", token.user_id)
            raise
        if user is None:
            raise UserNotFoundError()
        logger.info("user_activated user_id=%s", user.id)
        return user

    async def resend_activation_token(self, email: str) -> None:
        user = await self.users.find_by_email(email)
        if user is None:
            raise UserNotFoundError(f"User not found with email: {email}")
        if user.activated:
            raise UserAlreadyActivatedError("User account is already activated")
        token = await self.token_service.create_activation_token(user)
        self.mail_service.send_activation_email(user.email, user.username, token.value)
        logger.info("activation_token_resent user_id=%s", user.id)

    async def initiate_password_reset(self, email: str) -> None:
        user = await self.users.find_by_email(email)
        if user is None:
            raise UserNotFoundError(f"User not found with email: {email}")
        token = await self.token_service.create_password_reset_token(user)
        self.mail_service.send_password_reset_email(user.email, user.username, token.value)
        logger.info("password_reset_requested user_id=%s", user.id)

    async def reset_password(self, token_value: str, new_password: str) -> None:
        token = await self.token_service.validate_token(token_value, TokenType.PASSWORD_RESET)
        if token is None:
            raise InvalidTokenError("Invalid or expired password reset token")

        user = await self.users.find_by_id(token.user_id)
        if user is None:
            raise UserNotFoundError()
        password_hash = hash_password(new_password)
        await self.token_service.mark_token_as_used(token)
        try:
            await self.users.update_fields(user.id, {"password_hash": password_hash})
        except Exception:
            await self.token_service.release_token(token)
            logger.exception("password_reset_failed user_id=%s", user.id)
            raise
        logger.info("password_reset_completed user_id=%s", user.id)

    async def authenticate(self, username_or_email: str, password: str) -> User:
        identity = username_or_email.strip()
        if "@" in identity:
            user = await self.users.find_by_email(identity)
        else:
            user = await self.users.find_by_username(identity)
        if user is None or not verify_password(password, user.password_hash):
            logger.info("login_failed identity=%s", identity)
            raise BadCredentialsError()
        if not user.enabled:
            raise AccountDisabledError()
        if not user.activated:
            raise AccountNotActivatedError()
        logger.info("login_succeeded user_id=%s", user.id)
        return user

    async def get_user(self, user_id: str) -> User:
        user = await self.users.find_by_id(user_id)
        if user is None:
            raise UserNotFoundError()
        return user
