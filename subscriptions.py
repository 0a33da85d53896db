"""
Subscription plans and tier transitions.

Every change to a user's tier goes through this module; it is also the only
place that writes ``scan_limit``.
"""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from config import FREE_SCANS_DEFAULT
from database import as_object_id, as_utc, utcnow
from notifications import notify
from schemas import UNLIMITED

logger = logging.getLogger(__name__)

PLANS = {
    "premium": {
        "name": "Premium",
        "amount": 200,
        "currency": "KES",
        "days": 28,
        "features": ["Unlimited scans", "Full risk breakdown", "Scan history", "Voice readout"],
    },
    "premium_seller": {
        "name": "Premium Seller",
        "amount": 500,
        "currency": "KES",
        "days": 28,
        "features": ["Everything in Premium", "Verified seller badge", "Bulk scanning", "API access",
                     "Analytics dashboard"],
    },
}


class UnknownPlan(ValueError):
    pass


class NoActiveSubscription(Exception):
    pass


def plan_details(plan: str) -> dict:
    if plan not in PLANS:
        raise UnknownPlan(f"Unknown plan: {plan}")
    return PLANS[plan]


def get_subscription(db: Database, user_id: str) -> Optional[dict]:
    return db["subscription"].find_one({"user_id": user_id})


def activate_plan(db: Database, user_id: str, plan: str, transaction_id: Optional[str] = None,
                  payment_method: str = "mpesa", days: Optional[int] = None,
                  now: Optional[datetime] = None) -> dict:
    """Start or renew a paid plan and move the user onto its tier.

    With a ``transaction_id`` this is safe to repeat: a payment that was
    already applied returns the current subscription without extending it.
    """
    details = plan_details(plan)
    now = now or utcnow()
    period = timedelta(days=days if days is not None else details["days"])

    current = get_subscription(db, user_id)
    if transaction_id and current and current.get("transaction_id") == transaction_id:
        logger.info("Payment %s already applied for user %s", transaction_id, user_id)
        return current

    starts_at = now
    if current and current.get("status") == "active" and current.get("plan") == plan:
        current_expiry = as_utc(current.get("expires_at"))
        if current_expiry and current_expiry > now:
            # Renewal before expiry keeps the remaining days
            starts_at = as_utc(current["starts_at"])
            period = (current_expiry - starts_at) + period
    expires_at = starts_at + period

    # The user is moved first so a failure here leaves the subscription
    # untouched and the whole activation can be retried.
    updates = {
        "subscription_tier": plan,
        "scan_limit": UNLIMITED,
        "premium_expires_at": expires_at,
        "updated_at": now,
    }
    user_oid = as_object_id(user_id)
    if plan == "premium_seller":
        user = db["user"].find_one({"_id": user_oid}, {"api_key": 1})
        if user is not None and not user.get("api_key"):
            updates["api_key"] = "sb_" + secrets.token_hex(24)
        updates["seller_verified"] = True
    db["user"].update_one({"_id": user_oid}, {"$set": updates})

    query = {"user_id": user_id}
    if transaction_id:
        query["transaction_id"] = {"$ne": transaction_id}
    try:
        db["subscription"].update_one(
            query,
            {
                "$set": {
                    "plan": plan,
                    "status": "active",
                    "payment_method": payment_method,
                    "transaction_id": transaction_id,
                    "starts_at": starts_at,
                    "expires_at": expires_at,
                    "cancelled_at": None,
                    "updated_at": now,
                },
                "$setOnInsert": {"user_id": user_id, "created_at": now},
            },
            upsert=True,
        )
    except DuplicateKeyError:
        # A concurrent delivery of the same payment got there first
        logger.info("Payment %s already applied for user %s", transaction_id, user_id)
        return get_subscription(db, user_id)

    logger.info("Activated %s for user %s until %s", plan, user_id, expires_at.isoformat())
    notify(db, user_id, "premium", f"Welcome to {details['name']}",
           f"Your {details['name']} plan is active until {expires_at.date().isoformat()}.")
    return get_subscription(db, user_id)


def _downgrade(db: Database, user_id: str, now: datetime) -> None:
    db["user"].update_one(
        {"_id": as_object_id(user_id)},
        {"$set": {
            "subscription_tier": "free",
            "scan_limit": FREE_SCANS_DEFAULT,
            "premium_expires_at": None,
            "updated_at": now,
        }},
    )


def expire_if_due(db: Database, user: dict, now: Optional[datetime] = None) -> dict:
    """Downgrade a user whose paid period has lapsed; returns the current user document."""
    if user.get("subscription_tier", "free") == "free":
        return user
    now = now or utcnow()
    expires_at = as_utc(user.get("premium_expires_at"))
    if expires_at is None or expires_at >= now:
        return user

    user_id = str(user["_id"])
    db["subscription"].update_one(
        {"user_id": user_id, "status": "active"},
        {"$set": {"status": "expired", "updated_at": now}},
    )
    _downgrade(db, user_id, now)
    logger.info("Subscription for user %s expired at %s", user_id, expires_at.isoformat())
    return db["user"].find_one({"_id": user["_id"]})


def cancel(db: Database, user_id: str, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    result = db["subscription"].find_one_and_update(
        {"user_id": user_id, "status": "active"},
        {"$set": {"status": "cancelled", "cancelled_at": now, "updated_at": now}},
    )
    if result is None:
        raise NoActiveSubscription("No active subscription found")
    _downgrade(db, user_id, now)
    logger.info("User %s cancelled their %s subscription", user_id, result.get("plan"))
    return get_subscription(db, user_id)


def set_tier(db: Database, user_id: str, tier: str, days: Optional[int] = None,
             now: Optional[datetime] = None) -> dict:
    """Admin override of a user's tier."""
    now = now or utcnow()
    if tier == "free":
        db["subscription"].update_one(
            {"user_id": user_id, "status": "active"},
            {"$set": {"status": "cancelled", "cancelled_at": now, "updated_at": now}},
        )
        _downgrade(db, user_id, now)
        return db["user"].find_one({"_id": as_object_id(user_id)})
    activate_plan(db, user_id, tier, payment_method="admin", days=days, now=now)
    return db["user"].find_one({"_id": as_object_id(user_id)})
