import logging

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING

from config import DB_NAME, DEFAULT_ROLES, MONGO_URL

logger = logging.getLogger(__name__)

client = AsyncIOMotorClient(MONGO_URL)
db = client[DB_NAME]


async def ensure_indexes() -> None:
    await db.users.create_index("id", unique=True)
    await db.users.create_index("username", unique=True)
    await db.users.create_index("email", unique=True)
    await db.roles.create_index("name", unique=True)
    await db.tokens.create_index("id", unique=True)
    await db.tokens.create_index([("user_id", ASCENDING), ("type", ASCENDING)])
    await db.tokens.create_index([("token_hash", ASCENDING), ("type", ASCENDING), ("created_at", DESCENDING)])
    await db.quizzes.create_index("id", unique=True)
    await db.quizzes.create_index([("chat_session_id", ASCENDING), ("created_at", DESCENDING)])
    await db.quiz_states.create_index("id", unique=True)
    await db.quiz_states.create_index([("chat_session_id", ASCENDING), ("created_at", DESCENDING)])
    await db.quiz_states.create_index([("quiz_id", ASCENDING), ("created_at", DESCENDING)])
    await db.chat_sessions.create_index("id", unique=True)
    await db.chat_sessions.create_index([("user_id", ASCENDING), ("active", ASCENDING), ("created_at", DESCENDING)])
    await db.chat_messages.create_index("id", unique=True)
    await db.chat_messages.create_index([("chat_session_id", ASCENDING), ("timestamp", ASCENDING)])
    logger.info("mongo_indexes_ready db=%s", DB_NAME)


async def seed_roles() -> None:
    for role in DEFAULT_ROLES:
        await db.roles.update_one({"name": role}, {"$setOnInsert": {"name": role}}, upsert=True)
    logger.info("roles_seeded roles=%s", ",".join(DEFAULT_ROLES))


def close_client() -> None:
    client.close()
