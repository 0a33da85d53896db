"""
Advisory notifications (ban status, premium status, admin actions).

Delivery is best effort: a failed write is logged and the caller carries on.
"""

import logging

from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import create_document, get_documents, serialize
from schemas import Notification

logger = logging.getLogger(__name__)


def notify(db: Database, user_id: str, kind: str, title: str, message: str) -> None:
    try:
        create_document(db, "notification", Notification(user_id=user_id, kind=kind, title=title, message=message))
    except PyMongoError as e:
        logger.warning("Dropped %s notification for user %s: %s", kind, user_id, e)


def list_notifications(db: Database, user_id: str, unread_only: bool = False, limit: int = 50):
    query = {"user_id": user_id}
    if unread_only:
        query["read"] = False
    return [serialize(n) for n in get_documents(db, "notification", query, limit=limit)]


def mark_all_read(db: Database, user_id: str) -> int:
    result = db["notification"].update_many({"user_id": user_id, "read": False}, {"$set": {"read": True}})
    return result.modified_count
