"""
M-Pesa (Daraja) STK push payments.

Initiating a payment only returns a CheckoutRequestID; the outcome arrives
later on the callback URL. The stored transaction moves from ``pending`` to
a final status exactly once, so a redelivered callback never applies an
upgrade twice.
"""

import base64
import logging
import math
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import requests
from pymongo import ReturnDocument
from pymongo.database import Database

from config import (
    MPESA_BASE_URL,
    MPESA_CALLBACK_URL,
    MPESA_CONSUMER_KEY,
    MPESA_CONSUMER_SECRET,
    MPESA_PASSKEY,
    MPESA_SHORTCODE,
    MPESA_TIMEOUT_SECONDS,
)
from database import create_document, serialize, utcnow
from schemas import MpesaTransaction
from subscriptions import activate_plan, get_subscription, plan_details

logger = logging.getLogger(__name__)

RESULT_CANCELLED_BY_USER = 1032
# Daraja timestamps and TransactionDate are in Kenyan local time
EAT = timezone(timedelta(hours=3))

_PHONE_RE = re.compile(r"^2547\d{8}$|^2541\d{8}$")


class MpesaError(Exception):
    pass


class InvalidPhone(ValueError):
    pass


class TransactionNotFound(Exception):
    pass


def normalize_phone(phone: str) -> str:
    """07XXXXXXXX, +2547XXXXXXXX and 2547XXXXXXXX all become 2547XXXXXXXX."""
    digits = re.sub(r"[\s\-()]", "", phone or "")
    if digits.startswith("+"):
        digits = digits[1:]
    if digits.startswith("0"):
        digits = "254" + digits[1:]
    elif len(digits) == 9 and digits[0] in "71":
        digits = "254" + digits
    if not _PHONE_RE.match(digits):
        raise InvalidPhone("Enter a valid Safaricom number, e.g. 0712345678")
    return digits


def stk_timestamp(now: Optional[datetime] = None) -> str:
    return (now or datetime.now(EAT)).strftime("%Y%m%d%H%M%S")


def stk_password(shortcode: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode("ascii")


class MpesaClient:
    def __init__(self, consumer_key: str = MPESA_CONSUMER_KEY, consumer_secret: str = MPESA_CONSUMER_SECRET,
                 shortcode: str = MPESA_SHORTCODE, passkey: str = MPESA_PASSKEY,
                 callback_url: str = MPESA_CALLBACK_URL, base_url: str = MPESA_BASE_URL,
                 timeout: float = MPESA_TIMEOUT_SECONDS, session: Optional[requests.Session] = None):
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.shortcode = shortcode
        self.passkey = passkey
        self.callback_url = callback_url
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def access_token(self) -> str:
        if not self.consumer_key or not self.consumer_secret:
            raise MpesaError("M-Pesa credentials not configured")
        try:
            resp = self.session.get(
                f"{self.base_url}/oauth/v1/generate",
                params={"grant_type": "client_credentials"},
                auth=(self.consumer_key, self.consumer_secret),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise MpesaError("M-Pesa is unreachable") from e
        if not resp.ok:
            logger.error("M-Pesa auth error %s: %.300s", resp.status_code, resp.text)
            raise MpesaError("Failed to authenticate with M-Pesa")
        try:
            return resp.json()["access_token"]
        except (ValueError, KeyError, TypeError) as e:
            raise MpesaError("Unexpected response from M-Pesa") from e

    def stk_push(self, phone: str, amount: float, reference: str, description: str) -> dict:
        token = self.access_token()
        timestamp = stk_timestamp()
        body = {
            "BusinessShortCode": self.shortcode,
            "Password": stk_password(self.shortcode, self.passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": math.ceil(amount),
            "PartyA": phone,
            "PartyB": self.shortcode,
            "PhoneNumber": phone,
            "CallBackURL": self.callback_url,
            "AccountReference": reference,
            "TransactionDesc": description,
        }
        try:
            resp = self.session.post(
                f"{self.base_url}/mpesa/stkpush/v1/processrequest",
                headers={"Authorization": f"Bearer {token}"},
                json=body,
                timeout=self.timeout,
            )
            result = resp.json()
        except requests.RequestException as e:
            raise MpesaError("M-Pesa is unreachable") from e
        except ValueError as e:
            raise MpesaError("Unexpected response from M-Pesa") from e

        if str(result.get("ResponseCode")) != "0":
            logger.error("STK push rejected: %s", result)
            raise MpesaError(result.get("errorMessage") or result.get("ResponseDescription")
                             or "Failed to initiate M-Pesa payment")
        return result


def initiate_payment(db: Database, client: MpesaClient, user_id: str, phone: str, plan: str) -> dict:
    details = plan_details(plan)
    msisdn = normalize_phone(phone)
    logger.info("STK push for user %s, plan %s, phone %s", user_id, plan, msisdn)
    result = client.stk_push(msisdn, details["amount"], "SafeBazaar", f"Safe Bazaar {details['name']} Subscription")

    create_document(db, "mpesa_transaction", MpesaTransaction(
        user_id=user_id,
        plan=plan,
        amount=details["amount"],
        phone=msisdn,
        checkout_request_id=result["CheckoutRequestID"],
        merchant_request_id=result.get("MerchantRequestID"),
    ))
    return {
        "checkout_request_id": result["CheckoutRequestID"],
        "merchant_request_id": result.get("MerchantRequestID"),
        "status": "pending",
        "message": "Please check your phone for the M-Pesa prompt",
    }


def _metadata(callback: dict) -> dict:
    meta = callback.get("CallbackMetadata")
    items = meta.get("Item") if isinstance(meta, dict) else None
    if not isinstance(items, list):
        return {}
    return {item.get("Name"): item.get("Value") for item in items if isinstance(item, dict)}


def _parse_transaction_date(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    try:
        local = datetime.strptime(str(value), "%Y%m%d%H%M%S")
    except ValueError:
        return None
    return local.replace(tzinfo=EAT)


def process_callback(db: Database, payload: Any, now: Optional[datetime] = None) -> Optional[dict]:
    """Apply an STK callback. Returns the updated transaction, or None if nothing was applied.

    Never raises for a bad payload: the gateway must always get an ack. A
    store error while activating the plan propagates and leaves the
    transaction pending, so a redelivery applies it.
    """
    now = now or utcnow()
    body = payload.get("Body") if isinstance(payload, dict) else None
    stk = body.get("stkCallback") if isinstance(body, dict) else None
    checkout_id = stk.get("CheckoutRequestID") if isinstance(stk, dict) else None
    # Only a plain string may reach a query filter
    if not isinstance(checkout_id, str) or not checkout_id:
        logger.warning("Ignoring malformed M-Pesa callback: %.500r", payload)
        return None

    try:
        result_code = int(stk.get("ResultCode"))
    except (TypeError, ValueError):
        logger.warning("Callback %s has no usable ResultCode: %r", checkout_id, stk.get("ResultCode"))
        return None
    result_desc = stk.get("ResultDesc")

    pending = db["mpesa_transaction"].find_one({"checkout_request_id": checkout_id})
    if pending is None:
        logger.warning("Callback for unknown transaction %s", checkout_id)
        return None
    if pending["status"] != "pending":
        logger.info("Duplicate callback for %s ignored", checkout_id)
        return None

    if result_code == 0:
        meta = _metadata(stk)
        # Activation is idempotent on the transaction id, so it runs before
        # the transaction leaves pending
        activate_plan(db, pending["user_id"], pending["plan"], transaction_id=str(pending["_id"]), now=now)
        updates = {
            "status": "completed",
            "mpesa_receipt_number": meta.get("MpesaReceiptNumber"),
            "transaction_date": _parse_transaction_date(meta.get("TransactionDate")) or now,
            "completed_at": now,
        }
    else:
        updates = {"status": "cancelled" if result_code == RESULT_CANCELLED_BY_USER else "failed"}
    updates.update({"result_code": result_code, "result_desc": result_desc, "updated_at": now})

    # Only a pending transaction can move, which makes redelivery a no-op
    txn = db["mpesa_transaction"].find_one_and_update(
        {"_id": pending["_id"], "status": "pending"},
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
    )
    if txn is None:
        logger.info("Duplicate callback for %s ignored", checkout_id)
        return None

    if txn["status"] == "completed":
        logger.info("Payment %s completed, receipt %s", checkout_id, txn.get("mpesa_receipt_number"))
    else:
        logger.info("Payment %s %s: %s (%s)", checkout_id, txn["status"], result_desc, result_code)
    return txn


def payment_status(db: Database, user_id: str, checkout_request_id: str) -> dict:
    txn = db["mpesa_transaction"].find_one({"checkout_request_id": checkout_request_id, "user_id": user_id})
    if txn is None:
        raise TransactionNotFound("Transaction not found")
    subscription = None
    if txn["status"] == "completed":
        subscription = serialize(get_subscription(db, user_id))
    return {"transaction": serialize(txn), "subscription": subscription}
