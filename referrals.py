import logging
import secrets
from typing import Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import as_object_id, create_document, utcnow
from notifications import notify
from schemas import Referral

logger = logging.getLogger(__name__)

REFERRAL_BONUS_SCANS = 2
MILESTONE_BONUSES = {5: 5, 10: 10, 25: 25}
# No 0/O or 1/I so codes survive being read out over the phone
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 8


class ReferralError(Exception):
    pass


class SelfReferral(ReferralError):
    pass


def generate_referral_code() -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def find_referrer(db: Database, referral_code: Optional[str]) -> Optional[dict]:
    if not referral_code:
        return None
    return db["user"].find_one({"referral_code": referral_code.strip().upper()})


def process_referral(db: Database, referred_user_id: str, referral_code: Optional[str] = None) -> dict:
    """Credit the referrer of a newly joined user. Safe to call more than once."""
    referred = db["user"].find_one({"_id": as_object_id(referred_user_id)})
    if referred is None:
        raise ReferralError("Referred user not found")

    if db["referral"].find_one({"referred_id": referred_user_id, "status": "completed"}):
        return {"success": True, "already_processed": True}

    referrer_id = referred.get("referred_by")
    if not referrer_id:
        referrer = find_referrer(db, referral_code)
        if referrer is None:
            return {"success": True, "no_referrer": True}
        referrer_id = str(referrer["_id"])

    if referrer_id == referred_user_id:
        raise SelfReferral("Cannot refer yourself")

    if not referred.get("referred_by"):
        db["user"].update_one({"_id": referred["_id"]}, {"$set": {"referred_by": referrer_id}})

    try:
        create_document(db, "referral", Referral(
            referrer_id=referrer_id,
            referred_id=referred_user_id,
            bonus_awarded=REFERRAL_BONUS_SCANS,
            completed_at=utcnow(),
        ))
    except DuplicateKeyError:
        # A concurrent call got there first
        return {"success": True, "already_processed": True}

    referrer = db["user"].find_one_and_update(
        {"_id": as_object_id(referrer_id)},
        {"$inc": {"referral_count": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if referrer is None:
        raise ReferralError("Referrer not found")

    count = referrer.get("referral_count", 0)
    milestone = MILESTONE_BONUSES.get(count, 0)
    db["user"].update_one({"_id": referrer["_id"]}, {"$inc": {"bonus_scans": REFERRAL_BONUS_SCANS + milestone}})

    total = REFERRAL_BONUS_SCANS + milestone
    logger.info("Referral %s -> %s credited %d bonus scans", referrer_id, referred_user_id, total)
    notify(db, referrer_id, "referral", "Referral bonus",
           f"{referred.get('email', 'A friend')} joined with your code. You earned {total} bonus scans.")
    return {
        "success": True,
        "referrer_id": referrer_id,
        "bonus_awarded": REFERRAL_BONUS_SCANS,
        "milestone_bonus": milestone,
        "referral_count": count,
    }


def referral_summary(db: Database, user_id: str) -> dict:
    user = db["user"].find_one({"_id": as_object_id(user_id)}) or {}
    return {
        "referral_code": user.get("referral_code"),
        "referral_count": user.get("referral_count", 0),
        "bonus_scans": user.get("bonus_scans", 0),
        "referrals": db["referral"].count_documents({"referrer_id": user_id, "status": "completed"}),
    }
