import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from errors import InvalidTokenError
from models import Token, TokenType, User
from repositories import TokenRepository

logger = logging.getLogger(__name__)

OTP_SPACE = 1_000_000
OTP_DIGITS = 6
_MAX_GENERATION_ATTEMPTS = 5


def generate_otp() -> str:
    return str(secrets.randbelow(OTP_SPACE)).zfill(OTP_DIGITS)


def hash_otp(value: str, pepper: str) -> str:
    material = f"{value.strip()}{pepper}".encode("utf-8")
    return hashlib.sha256(material).hexdigest()


class TokenService:
    """Issues and consumes one-time OTP tokens for account flows."""

    def __init__(
        self,
        repository: TokenRepository,
        pepper: str,
        ttl_minutes: Dict[TokenType, int],
    ):
        self.repository = repository
        self.pepper = pepper
        self.ttl_minutes = ttl_minutes

    async def create_activation_token(self, user: User) -> Token:
        return await self._create_token(user, TokenType.ACTIVATION)

    async def create_password_reset_token(self, user: User) -> Token:
        return await self._create_token(user, TokenType.PASSWORD_RESET)

    async def validate_token(self, value: str, token_type: TokenType) -> Optional[Token]:
        if not value or not value.strip():
            return None
        token = await self.repository.find_latest_by_hash(hash_otp(value, self.pepper), token_type)
        if token is None:
            logger.info("token_lookup_miss type=%s", token_type.value)
            return None
        if not token.is_valid():
            logger.info(
                "token_rejected id=%s type=%s used=%s expired=%s",
                token.id,
                token_type.value,
                token.is_used(),
                token.is_expired(),
            )
            return None
        return token

    async def mark_token_as_used(self, token: Token) -> Token:
        used_at = datetime.now(timezone.utc)
        if not await self.repository.mark_used(token.id, used_at):
            logger.info("token_reuse_rejected id=%s type=%s", token.id, token.type.value)
            raise InvalidTokenError("Token has already been used")
        token.used_at = used_at
        logger.info("token_consumed id=%s type=%s", token.id, token.type.value)
        return token

    async def release_token(self, token: Token) -> None:
        """Give back a claim from ``mark_token_as_used`` after the guarded write failed."""
        if token.used_at is None:
            return
        if await self.repository.release_used(token.id, token.used_at):
            logger.info("token_released id=%s type=%s", token.id, token.type.value)
        token.used_at = None

    async def _create_token(self, user: User, token_type: TokenType) -> Token:
        removed = await self.repository.delete_by_user_and_type(user.id, token_type)
        if removed:
            logger.info("token_superseded user_id=%s type=%s count=%s", user.id, token_type.value, removed)

        value = generate_otp()
        token_hash = hash_otp(value, self.pepper)
        # Six digits collide across users; avoid handing out a value that is live elsewhere.
        for _ in range(_MAX_GENERATION_ATTEMPTS - 1):
            if not await self.repository.exists_unused_hash(token_hash, token_type):
                break
            value = generate_otp()
            token_hash = hash_otp(value, self.pepper)

        now = datetime.now(timezone.utc)
        token = Token(
            token_hash=token_hash,
            user_id=user.id,
            type=token_type,
            created_at=now,
            expires_at=now + timedelta(minutes=self.ttl_minutes[token_type]),
            value=value,
        )
        await self.repository.insert(token)
        logger.info("token_issued user_id=%s type=%s expires_at=%s", user.id, token_type.value, token.expires_at.isoformat())
        return token
