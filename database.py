"""
Database helpers

A single MongoDB client is shared by the whole process. Routes receive the
database handle through the ``get_db`` dependency so tests can swap it for
an in-memory one.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson.errors import InvalidId
from bson.objectid import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import DATABASE_NAME, DATABASE_URL

logger = logging.getLogger(__name__)

# MongoClient connects lazily, so importing this module never blocks
client = MongoClient(DATABASE_URL, tz_aware=True, serverSelectionTimeoutMS=5000)
db = client[DATABASE_NAME]


def get_db() -> Database:
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored datetimes may come back naive depending on the client settings."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def as_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document, stamping created_at/updated_at, and return its id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    offset: int = 0,
    sort_field: str = "created_at",
) -> List[dict]:
    cursor = database[collection_name].find(filter_dict or {}).sort(sort_field, DESCENDING)
    if offset:
        cursor = cursor.skip(offset)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def serialize(doc: Optional[dict]) -> Optional[dict]:
    """Make a stored document JSON friendly."""
    if doc is None:
        return None
    out = dict(doc)
    out.pop("password_hash", None)
    if "_id" in out:
        out["id"] = str(out.pop("_id"))
    for key, value in out.items():
        if isinstance(value, ObjectId):
            out[key] = str(value)
    return out


def ensure_indexes(database: Database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["user"].create_index([("referral_code", ASCENDING)], unique=True)
    database["scan"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    database["mpesa_transaction"].create_index([("checkout_request_id", ASCENDING)], unique=True)
    database["referral"].create_index([("referred_id", ASCENDING)], unique=True)
    database["subscription"].create_index([("user_id", ASCENDING)], unique=True)
    database["user"].create_index([("api_key", ASCENDING)], sparse=True)
    logger.info("Database indexes ensured")
