"""
Daily scan allowance for free-tier users.

The counter is reset lazily: the first check after local midnight zeroes
``scans_today`` and records the date in ``last_reset_on``. Consumption is a
single conditional ``$inc`` so two concurrent requests cannot both take the
last scan.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import NamedTuple, Optional

from pymongo import ReturnDocument
from pymongo.database import Database

from config import QUOTA_UTC_OFFSET_HOURS
from database import as_object_id, utcnow
from schemas import UNLIMITED
from subscriptions import expire_if_due

logger = logging.getLogger(__name__)

QUOTA_TZ = timezone(timedelta(hours=QUOTA_UTC_OFFSET_HOURS))


class ProfileNotFound(Exception):
    pass


class QuotaDecision(NamedTuple):
    allowed: bool
    remaining: int


def local_date(now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(QUOTA_TZ).date().isoformat()


def _load_user(db: Database, user_id: str) -> dict:
    oid = as_object_id(user_id)
    user = db["user"].find_one({"_id": oid}) if oid else None
    if user is None:
        raise ProfileNotFound("Profile not found")
    return user


def _reset_if_new_day(db: Database, user: dict, today: str) -> dict:
    if user.get("last_reset_on") == today:
        return user
    # Conditional on the stored date so repeated resets on the same day are no-ops
    db["user"].update_one(
        {"_id": user["_id"], "last_reset_on": {"$ne": today}},
        {"$set": {"scans_today": 0, "last_reset_on": today}},
    )
    return db["user"].find_one({"_id": user["_id"]})


def _current(db: Database, user_id: str, now: datetime) -> dict:
    user = _load_user(db, user_id)
    user = expire_if_due(db, user, now)
    if user.get("subscription_tier", "free") == "free":
        user = _reset_if_new_day(db, user, local_date(now))
    return user


def quota_status(db: Database, user_id: str, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    user = _current(db, user_id, now)
    tier = user.get("subscription_tier", "free")
    if tier != "free":
        remaining = UNLIMITED
    else:
        remaining = max(user.get("scan_limit", 0) - user.get("scans_today", 0), 0)
    return {
        "can_scan": remaining != 0 or user.get("bonus_scans", 0) > 0,
        "subscription_tier": tier,
        "scans_remaining": remaining,
        "scans_today": user.get("scans_today", 0),
        "scan_limit": user.get("scan_limit", 0),
        "bonus_scans": user.get("bonus_scans", 0),
        "premium_expires_at": user.get("premium_expires_at"),
    }


def check_and_consume(db: Database, user_id: str, now: Optional[datetime] = None) -> QuotaDecision:
    now = now or utcnow()
    user = _current(db, user_id, now)
    if user.get("subscription_tier", "free") != "free":
        return QuotaDecision(True, UNLIMITED)

    limit = user.get("scan_limit", 0)
    updated = db["user"].find_one_and_update(
        {
            "_id": user["_id"],
            "subscription_tier": "free",
            "scan_limit": limit,
            "scans_today": {"$lt": limit},
        },
        {"$inc": {"scans_today": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is not None:
        return QuotaDecision(True, max(limit - updated["scans_today"], 0))

    # Daily allowance is gone; fall back to referral bonus scans
    updated = db["user"].find_one_and_update(
        {"_id": user["_id"], "bonus_scans": {"$gt": 0}},
        {"$inc": {"bonus_scans": -1}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is not None:
        logger.info("User %s used a bonus scan, %d left", user_id, updated["bonus_scans"])
        return QuotaDecision(True, 0)

    return QuotaDecision(False, 0)
