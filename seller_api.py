"""
Seller API: programmatic access for Premium Seller accounts.

Callers authenticate with the ``x-api-key`` issued on activation. Each
account gets ``API_DAILY_LIMIT`` calls per local day, counted the same lazy
way as the scan quota.
"""

import logging
from datetime import datetime
from typing import Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from capabilities import Capability, has_capability
from quota import local_date
from subscriptions import expire_if_due

logger = logging.getLogger(__name__)

API_DAILY_LIMIT = 100
STATS_SAMPLE = 100


class InvalidApiKey(Exception):
    pass


class ApiAccessDenied(Exception):
    pass


class ApiLimitReached(Exception):
    pass


def authenticate(db: Database, api_key: Optional[str], now: Optional[datetime] = None) -> dict:
    if not api_key:
        raise InvalidApiKey("API key required. Include x-api-key header.")
    if not isinstance(api_key, str):
        raise InvalidApiKey("Invalid API key")
    user = db["user"].find_one({"api_key": api_key})
    if user is None:
        raise InvalidApiKey("Invalid API key")
    if user.get("is_banned"):
        raise ApiAccessDenied("Account suspended")
    user = expire_if_due(db, user, now)
    if not has_capability(user, Capability.API_ACCESS):
        raise ApiAccessDenied("API access requires Premium Seller subscription")
    return user


def consume_call(db: Database, user: dict, now: Optional[datetime] = None) -> int:
    """Count one call against today's allowance and return the calls used so far."""
    today = local_date(now)
    db["user"].update_one(
        {"_id": user["_id"], "api_calls_reset_on": {"$ne": today}},
        {"$set": {"api_calls_today": 0, "api_calls_reset_on": today}},
    )
    updated = db["user"].find_one_and_update(
        {"_id": user["_id"], "api_calls_today": {"$lt": API_DAILY_LIMIT}},
        {"$inc": {"api_calls_today": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise ApiLimitReached(f"Daily API limit reached ({API_DAILY_LIMIT} calls/day)")
    return updated["api_calls_today"]


def usage(calls_today: int) -> dict:
    return {
        "calls_today": calls_today,
        "daily_limit": API_DAILY_LIMIT,
        "remaining": max(API_DAILY_LIMIT - calls_today, 0),
    }


def scan_stats(db: Database, user_id: str) -> dict:
    """Verdict counts over all scans, average score over the most recent ones."""
    scans = db["scan"]
    recent = list(
        scans.find({"user_id": user_id}, {"overall_score": 1})
        .sort("created_at", DESCENDING)
        .limit(STATS_SAMPLE)
    )
    average = round(sum(s["overall_score"] for s in recent) / len(recent)) if recent else 0
    return {
        "total_scans": scans.count_documents({"user_id": user_id}),
        "average_score": average,
        "safe_count": scans.count_documents({"user_id": user_id, "verdict": "SAFE"}),
        "caution_count": scans.count_documents({"user_id": user_id, "verdict": "CAUTION"}),
        "danger_count": scans.count_documents({"user_id": user_id, "verdict": "DANGER"}),
        "bulk_scans": scans.count_documents({"user_id": user_id, "bulk": True}),
    }
