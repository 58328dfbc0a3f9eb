import argparse
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path

import bcrypt
from dotenv import load_dotenv
from pymongo import MongoClient

ROLES = ["ROLE_USER", "ROLE_ADMIN"]


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def main() -> None:
    env_path = Path(__file__).resolve().parents[1] / ".env"
    load_dotenv(env_path)

    parser = argparse.ArgumentParser(description="Seed roles and an activated admin account.")
    parser.add_argument("--username", required=True, help="Admin username")
    parser.add_argument("--email", required=True, help="Admin email")
    parser.add_argument("--password", required=True, help="Admin password")
    parser.add_argument("--roles-only", action="store_true", help="Only make sure the roles exist")
    args = parser.parse_args()

    mongo_url = os.getenv("MONGO_URL", "mongodb://localhost:27017")
    db_name = os.getenv("DB_NAME", "fined_mentor")

    client = MongoClient(mongo_url)
    db = client[db_name]
    for role in ROLES:
        db.roles.update_one({"name": role}, {"$setOnInsert": {"name": role}}, upsert=True)
    print(f"Roles ready: {', '.join(ROLES)}")
    if args.roles_only:
        return

    username = args.username.strip()
    email = args.email.strip().lower()
    if len(args.password) < 8:
        raise ValueError("Password must be at least 8 characters")

    now_iso = datetime.now(timezone.utc).isoformat(timespec="microseconds")
    existing = db.users.find_one({"$or": [{"email": email}, {"username": username}]}, {"_id": 0, "id": 1})
    if existing:
        db.users.update_one(
            {"id": existing["id"]},
            {
                "$set": {
                    "username": username,
                    "email": email,
                    "roles": ROLES,
                    "activated": True,
                    "enabled": True,
                    "password_hash": hash_password(args.password),
                    "updated_at": now_iso,
                }
            },
        )
        print(f"Updated existing admin user: {username} <{email}>")
    else:
        db.users.insert_one(
            {
                "id": str(uuid.uuid4()),
                "username": username,
                "email": email,
                "password_hash": hash_password(args.password),
                "activated": True,
                "enabled": True,
                "roles": ROLES,
                "created_at": now_iso,
                "updated_at": now_iso,
            }
        )
        print(f"Created new admin user: {username} <{email}>")
    client.close()


if __name__ == "__main__":
    main()
