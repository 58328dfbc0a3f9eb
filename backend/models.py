import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

T = TypeVar("T")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _require_text(value: Optional[str], message: str) -> str:
    if value is None or not str(value).strip():
        raise ValueError(message)
    return value


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ApiResponse(CamelModel, Generic[T]):
    success: bool
    message: Optional[str] = None
    data: Optional[T] = None

    @classmethod
    def ok(cls, data: Optional[T] = None, message: Optional[str] = None) -> "ApiResponse[T]":
        return cls(success=True, message=message, data=data)


# Quiz
class QuestionType(str, Enum):
    MULTIPLE_CHOICE = "MULTIPLE_CHOICE"
    TRUE_FALSE = "TRUE_FALSE"


class QuizQuestion(CamelModel):
    question: str = ""
    type: QuestionType
    options: List[str] = Field(default_factory=list)
    correct_answer: str = ""
    explanation: str = ""


class GeneratedQuiz(CamelModel):
    topic: Optional[str] = None
    questions: List[QuizQuestion]


class Quiz(CamelModel):
    id: str = Field(default_factory=new_id)
    topic: str
    questions: List[QuizQuestion]
    chat_session_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class QuizState(CamelModel):
    id: str = Field(default_factory=new_id)
    quiz_id: str
    chat_session_id: Optional[str] = None
    current_question_index: int = 0
    user_answers: Dict[int, str] = Field(default_factory=dict)
    is_submitted: Dict[int, bool] = Field(default_factory=dict)
    score: int = 0
    is_finished: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = 0


class QuizGenerateRequest(CamelModel):
    topic: str
    chat_session_id: str

    @field_validator("topic")
    @classmethod
    def _topic_not_blank(cls, value: str) -> str:
        return _require_text(value, "Topic cannot be blank")

    @field_validator("chat_session_id")
    @classmethod
    def _session_not_blank(cls, value: str) -> str:
        return _require_text(value, "Chat session ID cannot be blank")


class QuizSaveRequest(CamelModel):
    topic: str
    chat_session_id: str
    quiz_json: str

    @field_validator("topic")
    @classmethod
    def _topic_not_blank(cls, value: str) -> str:
        return _require_text(value, "Topic is required")

    @field_validator("chat_session_id")
    @classmethod
    def _session_not_blank(cls, value: str) -> str:
        return _require_text(value, "Chat session ID is required")

    @field_validator("quiz_json")
    @classmethod
    def _json_not_blank(cls, value: str) -> str:
        return _require_text(value, "Quiz JSON is required")


class QuizAnswerRequest(CamelModel):
    quiz_state_id: str
    question_index: int
    answer: str

    @field_validator("quiz_state_id")
    @classmethod
    def _state_not_blank(cls, value: str) -> str:
        return _require_text(value, "Quiz state ID cannot be blank")

    @field_validator("answer")
    @classmethod
    def _answer_not_blank(cls, value: str) -> str:
        return _require_text(value, "Answer cannot be blank")


class UpdateIndexRequest(CamelModel):
    index: int


# Tokens and accounts
class TokenType(str, Enum):
    ACTIVATION = "ACTIVATION"
    PASSWORD_RESET = "PASSWORD_RESET"
    EMAIL_CHANGE = "EMAIL_CHANGE"


class Token(BaseModel):
    id: str = Field(default_factory=new_id)
    token_hash: str
    user_id: str
    type: TokenType
    created_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime
    used_at: Optional[datetime] = None
    # Plain OTP, only known right after creation.
    value: Optional[str] = Field(default=None, exclude=True)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utc_now()) >= self.expires_at

    def is_used(self) -> bool:
        return self.used_at is not None

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return not self.is_used() and not self.is_expired(now)


class User(BaseModel):
    id: str = Field(default_factory=new_id)
    username: str
    email: str
    password_hash: str
    activated: bool = False
    enabled: bool = True
    roles: List[str] = Field(default_factory=lambda: ["ROLE_USER"])
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class UserOut(CamelModel):
    id: str
    username: str
    email: str
    roles: List[str]
    activated: bool

    @classmethod
    def from_user(cls, user: User) -> "UserOut":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            roles=list(user.roles),
            activated=user.activated,
        )


class RegisterRequest(CamelModel):
    username: str = Field(min_length=3, max_length=50, pattern=r"^[A-Za-z0-9_.-]+$")
    email: EmailStr
    password: str = Field(min_length=6, max_length=100)

    @field_validator("username")
    @classmethod
    def _username_not_blank(cls, value: str) -> str:
        return _require_text(value, "Username is required").strip()


class LoginRequest(CamelModel):
    username_or_email: str
    password: str

    @field_validator("username_or_email")
    @classmethod
    def _identity_not_blank(cls, value: str) -> str:
        return _require_text(value, "Username or email is required")

    @field_validator("password")
    @classmethod
    def _password_not_blank(cls, value: str) -> str:
        return _require_text(value, "Password is required")


class ActivationRequest(CamelModel):
    token: str

    @field_validator("token")
    @classmethod
    def _token_not_blank(cls, value: str) -> str:
        return _require_text(value, "OTP token is required").strip()


class ForgotPasswordRequest(CamelModel):
    email: EmailStr


class ResetPasswordRequest(CamelModel):
    token: str
    new_password: str = Field(min_length=6, max_length=100)

    @field_validator("token")
    @classmethod
    def _token_not_blank(cls, value: str) -> str:
        return _require_text(value, "OTP token is required").strip()


# Chat
class MessageRole(str, Enum):
    USER = "USER"
    MODEL = "MODEL"


class ChatSession(CamelModel):
    id: str = Field(default_factory=new_id)
    title: str = "New Chat Session"
    created_at: datetime = Field(default_factory=utc_now)
    active: bool = True
    user_id: str


class ChatMessage(CamelModel):
    id: str = Field(default_factory=new_id)
    chat_session_id: str
    role: MessageRole
    text: str
    timestamp: datetime = Field(default_factory=utc_now)


class ChatSessionDetails(ChatSession):
    messages: List[ChatMessage] = Field(default_factory=list)
    quiz: Optional[Quiz] = None
    quiz_state: Optional[QuizState] = None


class ChatMessageRequest(CamelModel):
    message: str
    chat_session_id: str

    @field_validator("message")
    @classmethod
    def _message_not_blank(cls, value: str) -> str:
        return _require_text(value, "Message cannot be blank")

    @field_validator("chat_session_id")
    @classmethod
    def _session_not_blank(cls, value: str) -> str:
        return _require_text(value, "Chat session ID cannot be blank")


class UpdateSessionTitleRequest(CamelModel):
    title: str

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, value: str) -> str:
        return _require_text(value, "Title cannot be blank").strip()
