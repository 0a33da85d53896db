"""
Scan orchestration.

Order matters: quota is consumed before the model is called, and the scan
record is written only after an assessment (or its fallback) is in hand.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import PyMongoError

from assessor import AssessmentError, AssessmentResult, Parsed, resolve
from database import as_object_id, create_document, serialize, utcnow
from quota import check_and_consume
from schemas import ProductDescriptor, Scan

logger = logging.getLogger(__name__)

MAX_BULK_ITEMS = 50
MAX_HISTORY_LIMIT = 100

Assess = Callable[[ProductDescriptor], AssessmentResult]


class QuotaExceeded(Exception):
    def __init__(self, remaining: int = 0):
        super().__init__("Daily scan limit reached. Upgrade to premium for unlimited scans.")
        self.remaining = remaining


class BatchTooLarge(ValueError):
    pass


class EmptyBatch(ValueError):
    pass


class ScanNotFound(Exception):
    pass


def _store_scan(db: Database, user_id: str, product: ProductDescriptor, assess: Assess,
                bulk: bool = False, now: Optional[datetime] = None) -> dict:
    result = assess(product)
    assessment = resolve(result)
    product_doc = product.model_dump(exclude_none=True)
    if product_doc.get("image_url", "").startswith("data:"):
        # Uploaded images are not kept
        product_doc["image_url"] = "upload"
    scan = Scan(
        user_id=user_id,
        product=product_doc,
        input_type=product.input_type,
        overall_score=assessment.overall_score,
        verdict=assessment.verdict,
        risk_factors=assessment.risk_factors,
        recommendations=assessment.recommendations,
        assessment_source="model" if isinstance(result, Parsed) else "fallback",
        bulk=bulk,
    )
    doc = scan.model_dump()
    doc["created_at"] = now or utcnow()
    scan_id = create_document(db, "scan", doc)
    return serialize(db["scan"].find_one({"_id": as_object_id(scan_id)}))


def submit_scan(db: Database, user_id: str, product: ProductDescriptor, assess: Assess,
                now: Optional[datetime] = None) -> dict:
    """Consume one scan from the user's quota, assess the product and store the result."""
    decision = check_and_consume(db, user_id, now)
    if not decision.allowed:
        raise QuotaExceeded(decision.remaining)

    record = _store_scan(db, user_id, product, assess, now=now)
    record["scans_remaining"] = decision.remaining
    logger.info("Scan %s for user %s: %s (%d)", record["id"], user_id, record["verdict"], record["overall_score"])
    return record


def bulk_scan(db: Database, user_id: str, products: List[ProductDescriptor], assess: Assess) -> dict:
    if not products:
        raise EmptyBatch("Products array is required")
    if len(products) > MAX_BULK_ITEMS:
        raise BatchTooLarge(f"Maximum {MAX_BULK_ITEMS} products per batch")

    results = []
    # Sequential on purpose: keeps us under the gateway's rate limits
    for index, product in enumerate(products):
        try:
            record = _store_scan(db, user_id, product, assess, bulk=True)
        except AssessmentError as e:
            logger.warning("Bulk item %d for user %s failed: %s", index, user_id, e)
            results.append({
                "index": index,
                "product": product.model_dump(exclude_none=True),
                "success": False,
                "error": e.message,
            })
        except PyMongoError as e:
            logger.error("Bulk item %d for user %s could not be stored: %s", index, user_id, e)
            results.append({
                "index": index,
                "product": product.model_dump(exclude_none=True),
                "success": False,
                "error": "Could not save the scan result. Please try again later.",
            })
        else:
            results.append({"index": index, "product": record["product"], "success": True, "scan": record})

    successful = sum(1 for r in results if r["success"])
    summary = {"total": len(products), "successful": successful, "failed": len(products) - successful}
    logger.info("Bulk scan for user %s completed: %s", user_id, summary)
    return {"results": results, "summary": summary}


def scan_history(db: Database, user_id: str, limit: int = 20, offset: int = 0) -> dict:
    limit = max(1, min(limit, MAX_HISTORY_LIMIT))
    offset = max(offset, 0)
    cursor = (
        db["scan"].find({"user_id": user_id})
        .sort("created_at", DESCENDING)
        .skip(offset)
        .limit(limit)
    )
    return {
        "scans": [serialize(s) for s in cursor],
        "total": db["scan"].count_documents({"user_id": user_id}),
        "limit": limit,
        "offset": offset,
    }


def get_scan(db: Database, scan_id: str, viewer_id: str, is_admin: bool = False) -> dict:
    oid = as_object_id(scan_id)
    scan = db["scan"].find_one({"_id": oid}) if oid else None
    # Other users' scans look exactly like missing ones
    if scan is None or (scan["user_id"] != viewer_id and not is_admin):
        raise ScanNotFound("Scan not found")
    return serialize(scan)
