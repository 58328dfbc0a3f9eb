from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from errors import UserAlreadyExistsError
from models import ChatMessage, ChatSession, Quiz, QuizState, Token, TokenType, User


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def to_document(value: Any) -> Any:
    """Convert a dumped model into a Mongo-safe document.

    Datetimes become fixed-width ISO strings so string ordering matches time
    ordering, and integer map keys become strings.
    """
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): to_document(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_document(v) for v in value]
    return value


class QuizRepository:
    def __init__(self, db):
        self.collection = db.quizzes

    async def insert(self, quiz: Quiz) -> Quiz:
        await self.collection.insert_one(to_document(quiz.model_dump()))
        return quiz

    async def find_by_id(self, quiz_id: str) -> Optional[Quiz]:
        doc = await self.collection.find_one({"id": quiz_id}, {"_id": 0})
        return Quiz.model_validate(doc) if doc else None

    async def find_latest_by_session(self, chat_session_id: str) -> Optional[Quiz]:
        doc = await self.collection.find_one(
            {"chat_session_id": chat_session_id},
            {"_id": 0},
            sort=[("created_at", DESCENDING)],
        )
        return Quiz.model_validate(doc) if doc else None


class QuizStateRepository:
    def __init__(self, db):
        self.collection = db.quiz_states

    async def insert(self, state: QuizState) -> QuizState:
        await self.collection.insert_one(to_document(state.model_dump()))
        return state

    async def find_by_id(self, state_id: str) -> Optional[QuizState]:
        doc = await self.collection.find_one({"id": state_id}, {"_id": 0})
        return QuizState.model_validate(doc) if doc else None

    async def find_latest_by_session(self, chat_session_id: str) -> Optional[QuizState]:
        doc = await self.collection.find_one(
            {"chat_session_id": chat_session_id},
            {"_id": 0},
            sort=[("created_at", DESCENDING)],
        )
        return QuizState.model_validate(doc) if doc else None

    async def find_latest_by_quiz(self, quiz_id: str) -> Optional[QuizState]:
        doc = await self.collection.find_one(
            {"quiz_id": quiz_id},
            {"_id": 0},
            sort=[("created_at", DESCENDING)],
        )
        return QuizState.model_validate(doc) if doc else None

    async def save_if_version(self, state: QuizState) -> bool:
        """Persist `state` only if nobody else wrote since it was loaded."""
        expected_version = state.version
        state.updated_at = datetime.now(timezone.utc)
        fields = to_document(state.model_dump(exclude={"id", "version"}))
        result = await self.collection.update_one(
            {"id": state.id, "version": expected_version},
            {"$set": fields, "$inc": {"version": 1}},
        )
        if result.matched_count != 1:
            return False
        state.version = expected_version + 1
        return True


class TokenRepository:
    def __init__(self, db):
        self.collection = db.tokens

    async def insert(self, token: Token) -> Token:
        await self.collection.insert_one(to_document(token.model_dump()))
        return token

    async def delete_by_user_and_type(self, user_id: str, token_type: TokenType) -> int:
        result = await self.collection.delete_many({"user_id": user_id, "type": token_type.value})
        return result.deleted_count

    async def find_latest_by_hash(self, token_hash: str, token_type: TokenType) -> Optional[Token]:
        doc = await self.collection.find_one(
            {"token_hash": token_hash, "type": token_type.value},
            {"_id": 0},
            sort=[("created_at", DESCENDING)],
        )
        return Token.model_validate(doc) if doc else None

    async def exists_unused_hash(self, token_hash: str, token_type: TokenType) -> bool:
        doc = await self.collection.find_one(
            {"token_hash": token_hash, "type": token_type.value, "used_at": None},
            {"_id": 0, "id": 1},
        )
        return doc is not None

    async def mark_used(self, token_id: str, used_at: datetime) -> bool:
        result = await self.collection.update_one(
            {"id": token_id, "used_at": None},
            {"$set": {"used_at": to_iso(used_at)}},
        )
        return result.modified_count == 1

    async def release_used(self, token_id: str, used_at: datetime) -> bool:
        result = await self.collection.update_one(
            {"id": token_id, "used_at": to_iso(used_at)},
            {"$set": {"used_at": None}},
        )
        return result.modified_count == 1


class UserRepository:
    def __init__(self, db):
        self.collection = db.users

    async def insert(self, user: User) -> User:
        try:
            await self.collection.insert_one(to_document(user.model_dump()))
        except DuplicateKeyError:
            raise UserAlreadyExistsError("Username or email is already registered")
        return user

    async def find_by_id(self, user_id: str) -> Optional[User]:
        doc = await self.collection.find_one({"id": user_id}, {"_id": 0})
        return User.model_validate(doc) if doc else None

    async def find_by_username(self, username: str) -> Optional[User]:
        doc = await self.collection.find_one({"username": username}, {"_id": 0})
        return User.model_validate(doc) if doc else None

    async def find_by_email(self, email: str) -> Optional[User]:
        doc = await self.collection.find_one({"email": email.strip().lower()}, {"_id": 0})
        return User.model_validate(doc) if doc else None

    async def exists_by_username(self, username: str) -> bool:
        return await self.collection.count_documents({"username": username}, limit=1) > 0

    async def exists_by_email(self, email: str) -> bool:
        return await self.collection.count_documents({"email": email.strip().lower()}, limit=1) > 0

    async def update_fields(self, user_id: str, fields: Dict[str, Any]) -> Optional[User]:
        payload = to_document(dict(fields))
        payload["updated_at"] = to_iso(datetime.now(timezone.utc))
        doc = await self.collection.find_one_and_update(
            {"id": user_id},
            {"$set": payload},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        return User.model_validate(doc) if doc else None


class ChatSessionRepository:
    def __init__(self, db):
        self.collection = db.chat_sessions

    async def insert(self, session: ChatSession) -> ChatSession:
        await self.collection.insert_one(to_document(session.model_dump()))
        return session

    async def find_active_by_id(self, session_id: str) -> Optional[ChatSession]:
        doc = await self.collection.find_one({"id": session_id, "active": True}, {"_id": 0})
        return ChatSession.model_validate(doc) if doc else None

    async def find_active_by_user(self, user_id: str) -> List[ChatSession]:
        cursor = self.collection.find(
            {"user_id": user_id, "active": True},
            {"_id": 0},
        ).sort("created_at", DESCENDING)
        docs = await cursor.to_list(length=None)
        return [ChatSession.model_validate(doc) for doc in docs]

    async def update_fields(self, session_id: str, fields: Dict[str, Any]) -> Optional[ChatSession]:
        doc = await self.collection.find_one_and_update(
            {"id": session_id},
            {"$set": to_document(dict(fields))},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        return ChatSession.model_validate(doc) if doc else None


class ChatMessageRepository:
    def __init__(self, db):
        self.collection = db.chat_messages

    async def insert(self, message: ChatMessage) -> ChatMessage:
        await self.collection.insert_one(to_document(message.model_dump()))
        return message

    async def find_by_session(self, chat_session_id: str) -> List[ChatMessage]:
        cursor = self.collection.find(
            {"chat_session_id": chat_session_id},
            {"_id": 0},
        ).sort("timestamp", 1)
        docs = await cursor.to_list(length=None)
        return [ChatMessage.model_validate(doc) for doc in docs]
