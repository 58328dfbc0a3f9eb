import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / ".env")

MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "fined_mentor")

JWT_SECRET = os.environ.get("JWT_SECRET", "")
JWT_COOKIE_NAME = os.environ.get("JWT_COOKIE_NAME", "fined_mentor_token").strip() or "fined_mentor_token"
JWT_COOKIE_SECURE = os.environ.get("JWT_COOKIE_SECURE", "false").lower() == "true"
ACCESS_TOKEN_MINUTES = int(os.environ.get("ACCESS_TOKEN_MINUTES", "1440"))

OTP_TTL_MINUTES = int(os.environ.get("OTP_TTL_MINUTES", "15"))
ACTIVATION_TOKEN_TTL_MINUTES = int(os.environ.get("ACTIVATION_TOKEN_TTL_MINUTES", str(OTP_TTL_MINUTES)))
PASSWORD_RESET_TOKEN_TTL_MINUTES = int(
    os.environ.get("PASSWORD_RESET_TOKEN_TTL_MINUTES", str(OTP_TTL_MINUTES))
)
OTP_PEPPER = os.environ.get("OTP_PEPPER", JWT_SECRET)

LLM_API_KEY = os.environ.get("LLM_API_KEY") or os.environ.get("OPENAI_API_KEY", "")
LLM_BASE_URL = os.environ.get("LLM_BASE_URL", "https://api.openai.com/v1").rstrip("/")
LLM_CHAT_MODEL = os.environ.get("LLM_CHAT_MODEL", "gpt-4o-mini")
LLM_TEMPERATURE = float(os.environ.get("LLM_TEMPERATURE", "0.2"))
LLM_TIMEOUT_SECONDS = float(os.environ.get("LLM_TIMEOUT_SECONDS", "60"))
LLM_MAX_ATTEMPTS = int(os.environ.get("LLM_MAX_ATTEMPTS", "3"))
LLM_MAX_TOKENS = int(os.environ.get("LLM_MAX_TOKENS", "2000"))

TAVILY_API_KEY = os.environ.get("TAVILY_API_KEY", "").strip()
TAVILY_BASE_URL = os.environ.get("TAVILY_BASE_URL", "https://api.tavily.com").rstrip("/")
TAVILY_TIMEOUT_SECONDS = float(os.environ.get("TAVILY_TIMEOUT_SECONDS", "15"))
TAVILY_MAX_RESULTS = int(os.environ.get("TAVILY_MAX_RESULTS", "5"))

MAILGUN_API_KEY = os.environ.get("MAILGUN_API_KEY", "").strip()
MAILGUN_DOMAIN = os.environ.get("MAILGUN_DOMAIN", "").strip()
MAILGUN_BASE_URL = os.environ.get("MAILGUN_BASE_URL", "https://api.mailgun.net").rstrip("/")
MAILGUN_FROM_EMAIL = os.environ.get("MAILGUN_FROM_EMAIL", "FinEd Mentor <no-reply@fined-mentor.app>")
MAIL_TIMEOUT_SECONDS = float(os.environ.get("MAIL_TIMEOUT_SECONDS", "10"))
EMAIL_DISPATCH_MODE = os.environ.get("EMAIL_DISPATCH_MODE", "inline").strip().lower()

REDIS_URL = os.environ.get("REDIS_URL", "").strip() or "redis://localhost:6379/0"
CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL", "").strip() or REDIS_URL
CELERY_EMAIL_QUEUE = os.environ.get("CELERY_EMAIL_QUEUE", "email").strip() or "email"
EMAIL_TASK_MAX_RETRIES = int(os.environ.get("EMAIL_TASK_MAX_RETRIES", "3"))

AUTH_PER_MIN_LIMIT = int(os.environ.get("AUTH_PER_MIN_LIMIT", "20"))
QUIZ_GENERATE_PER_MIN_LIMIT = int(os.environ.get("QUIZ_GENERATE_PER_MIN_LIMIT", "10"))
CHAT_MESSAGE_PER_MIN_LIMIT = int(os.environ.get("CHAT_MESSAGE_PER_MIN_LIMIT", "30"))
QUIZ_STATE_WRITE_RETRIES = int(os.environ.get("QUIZ_STATE_WRITE_RETRIES", "3"))

CORS_ORIGINS: List[str] = [
    origin.strip()
    for origin in os.environ.get("CORS_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]

DEFAULT_ROLES = ["ROLE_USER", "ROLE_ADMIN"]


def validate_settings() -> List[str]:
    """Return human readable problems with the loaded configuration."""
    problems: List[str] = []
    if not JWT_SECRET:
        problems.append("JWT_SECRET is required")
    if EMAIL_DISPATCH_MODE not in {"inline", "celery"}:
        problems.append("EMAIL_DISPATCH_MODE must be 'inline' or 'celery'")
    if ACTIVATION_TOKEN_TTL_MINUTES <= 0 or PASSWORD_RESET_TOKEN_TTL_MINUTES <= 0:
        problems.append("Token TTL minutes must be positive")
    if QUIZ_STATE_WRITE_RETRIES < 1:
        problems.append("QUIZ_STATE_WRITE_RETRIES must be at least 1")
    for name, value in (
        ("AUTH_PER_MIN_LIMIT", AUTH_PER_MIN_LIMIT),
        ("QUIZ_GENERATE_PER_MIN_LIMIT", QUIZ_GENERATE_PER_MIN_LIMIT),
        ("CHAT_MESSAGE_PER_MIN_LIMIT", CHAT_MESSAGE_PER_MIN_LIMIT),
    ):
        if value <= 0:
            problems.append(f"{name} must be positive")
    return problems
