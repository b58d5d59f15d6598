"""
MongoDB access for Farm2Market.

`db` is None when DATABASE_URL / DATABASE_NAME are not set; callers check it
before use. Documents use string ids (uuid4) in `_id`.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

import config

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None
db: Optional[Database] = None

if config.DATABASE_URL and config.DATABASE_NAME:
    _client = MongoClient(config.DATABASE_URL, tz_aware=True)
    db = _client[config.DATABASE_NAME]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def ensure_indexes(database: Database) -> None:
    """Uniqueness the check-then-insert paths rely on."""
    database["profiles"].create_index(
        [("phone", ASCENDING)],
        unique=True,
        partialFilterExpression={"phone": {"$type": "string"}},
        name="profiles_phone_unique",
    )
    database["chats"].create_index(
        [("buyer_id", ASCENDING), ("farmer_id", ASCENDING), ("crop_id", ASCENDING)],
        unique=True,
        name="chats_triple_unique",
    )
    database["chats"].create_index([("updated_at", DESCENDING)])
    database["messages"].create_index([("chat_id", ASCENDING), ("created_at", ASCENDING), ("seq", ASCENDING)])
    database["orders"].create_index([("buyer_id", ASCENDING), ("created_at", DESCENDING)])
    database["orders"].create_index([("farmer_id", ASCENDING), ("created_at", DESCENDING)])
    database["otp_challenges"].create_index([("phone", ASCENDING)], unique=True)
    logger.info("indexes_ensured database=%s", database.name)
