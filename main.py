import logging
import re
from contextlib import asynccontextmanager
from typing import List, Literal, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from assessor import AssessmentError, InvalidImage, RiskAssessor, image_data_url
from auth import hash_password, optional_user, require_admin, require_api_key, require_user, verify_password
from capabilities import Capability, capabilities_for, has_capability
from config import FREE_SCANS_DEFAULT, LOG_LEVEL, PORT
from database import (
    as_object_id,
    create_document,
    ensure_indexes,
    get_db,
    get_documents,
    serialize,
    utcnow,
)
from mpesa import InvalidPhone, MpesaClient, MpesaError, TransactionNotFound, initiate_payment, payment_status, \
    process_callback
from notifications import list_notifications, mark_all_read, notify
from quota import ProfileNotFound, quota_status
from referrals import ReferralError, generate_referral_code, process_referral, referral_summary
from scanning import BatchTooLarge, EmptyBatch, QuotaExceeded, ScanNotFound, bulk_scan, get_scan, scan_history, \
    submit_scan
from seller_api import scan_stats, usage
from schemas import AdminAction, ProductDescriptor, User
from subscriptions import PLANS, NoActiveSubscription, cancel, expire_if_due, get_subscription, set_tier
from tokens import issue_access_token, issue_refresh_token, verify_refresh_token

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("safebazaar")

MAX_UPLOAD_BYTES = 5 * 1024 * 1024

risk_assessor = RiskAssessor()
mpesa_client = MpesaClient()


def get_assessor():
    return risk_assessor


def get_mpesa_client() -> MpesaClient:
    return mpesa_client


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_indexes(get_db())
    yield


app = FastAPI(title="Safe Bazaar AI", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    user: Optional[dict] = None


class SignupModel(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)
    name: Optional[str] = None
    phone: Optional[str] = None
    role: Literal["buyer", "seller"] = "buyer"
    referral_code: Optional[str] = None


class SigninModel(BaseModel):
    email: EmailStr
    password: str


class RefreshModel(BaseModel):
    refresh_token: str


class ProfileUpdateModel(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None


class ChangePasswordModel(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=8)


class BulkScanRequest(BaseModel):
    products: List[ProductDescriptor]


class UpgradeModel(BaseModel):
    plan: Literal["premium", "premium_seller"]
    phone: str


class BanModel(BaseModel):
    reason: Optional[str] = None


class TierModel(BaseModel):
    tier: Literal["free", "premium", "premium_seller"]
    days: Optional[int] = Field(None, ge=1, le=366)


# Error mapping

@app.exception_handler(QuotaExceeded)
async def quota_exceeded_handler(request: Request, exc: QuotaExceeded):
    return JSONResponse(
        status_code=403,
        content={"detail": str(exc), "code": "quota_exceeded", "scans_remaining": exc.remaining},
    )


@app.exception_handler(AssessmentError)
async def assessment_error_handler(request: Request, exc: AssessmentError):
    logger.warning("Assessment failed on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(ProfileNotFound)
async def profile_not_found_handler(request: Request, exc: ProfileNotFound):
    return JSONResponse(status_code=404, content={"detail": "Profile not found"})


# Helpers

def _user_view(user: dict, include_api_key: bool = False) -> dict:
    view = serialize(user)
    if not include_api_key:
        # Only the owner ever sees their key, on /auth/me
        view.pop("api_key", None)
    view["capabilities"] = capabilities_for(user.get("subscription_tier", "free"))
    return view


def _load_profile(db: Database, user_id: str) -> dict:
    oid = as_object_id(user_id)
    user = db["user"].find_one({"_id": oid}) if oid else None
    if user is None:
        raise ProfileNotFound(user_id)
    return user


def _active_profile(db: Database, claims: dict) -> dict:
    user = _load_profile(db, claims["sub"])
    if user.get("is_banned"):
        raise HTTPException(status_code=403, detail="Account suspended")
    return user


def _issue_pair(user: dict) -> TokenResponse:
    user_id = str(user["_id"])
    return TokenResponse(
        access_token=issue_access_token(user_id, user["email"], user.get("is_admin", False)),
        refresh_token=issue_refresh_token(user_id),
        user=_user_view(user),
    )


def _log_admin_action(db: Database, admin_id: str, action: str, target_user_id: Optional[str] = None,
                      details: Optional[dict] = None) -> None:
    create_document(db, "admin_action", AdminAction(
        admin_id=admin_id, action=action, target_user_id=target_user_id, details=details or {}))
    logger.info("Admin %s: %s on %s %s", admin_id, action, target_user_id, details or "")


@app.get("/")
def read_root():
    return {"message": "Safe Bazaar AI backend running"}


# Auth routes

@app.post("/auth/signup", response_model=TokenResponse, status_code=201)
def signup(payload: SignupModel, db: Database = Depends(get_db)):
    email = payload.email.strip().lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=409, detail="Email already registered")

    user = None
    for _ in range(5):
        try:
            user_id = create_document(db, "user", User(
                email=email,
                password_hash=hash_password(payload.password),
                name=payload.name,
                phone=payload.phone,
                role=payload.role,
                scan_limit=FREE_SCANS_DEFAULT,
                referral_code=generate_referral_code(),
            ))
        except DuplicateKeyError:
            # Either the email raced another signup or the referral code collided
            if db["user"].find_one({"email": email}):
                raise HTTPException(status_code=409, detail="Email already registered")
            continue
        user = db["user"].find_one({"_id": as_object_id(user_id)})
        break
    if user is None:
        raise HTTPException(status_code=500, detail="Could not create account, please retry")

    if payload.referral_code:
        try:
            process_referral(db, str(user["_id"]), payload.referral_code)
        except ReferralError as e:
            logger.warning("Referral for %s not applied: %s", email, e)

    logger.info("New %s account %s", payload.role, user["_id"])
    return _issue_pair(user)


@app.post("/auth/signin", response_model=TokenResponse)
def signin(payload: SigninModel, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": payload.email.strip().lower()})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if user.get("is_banned"):
        raise HTTPException(status_code=403, detail="Account is inactive")

    db["user"].update_one({"_id": user["_id"]}, {"$set": {"last_login_at": utcnow()}})
    user = expire_if_due(db, user)
    return _issue_pair(user)


@app.post("/auth/refresh", response_model=TokenResponse)
def refresh(payload: RefreshModel, db: Database = Depends(get_db)):
    claims = verify_refresh_token(payload.refresh_token)
    if claims is None:
        raise HTTPException(status_code=403, detail="Invalid or expired refresh token")
    user = _load_profile(db, claims["sub"])
    if user.get("is_banned"):
        raise HTTPException(status_code=403, detail="Account is inactive")
    # Email and admin flag come from the store, not from the old access token
    token = issue_access_token(str(user["_id"]), user["email"], user.get("is_admin", False))
    return TokenResponse(access_token=token)


@app.get("/auth/me")
def get_me(claims: dict = Depends(require_user), db: Database = Depends(get_db)):
    user = expire_if_due(db, _load_profile(db, claims["sub"]))
    view = _user_view(user, include_api_key=True)
    view["quota"] = quota_status(db, claims["sub"])
    return view


@app.put("/auth/profile")
def update_profile(update: ProfileUpdateModel, claims: dict = Depends(require_user), db: Database = Depends(get_db)):
    updates = update.model_dump(exclude_none=True)
    if updates:
        updates["updated_at"] = utcnow()
        db["user"].update_one({"_id": as_object_id(claims["sub"])}, {"$set": updates})
    return _user_view(_load_profile(db, claims["sub"]))


@app.post("/auth/change-password")
def change_password(payload: ChangePasswordModel, claims: dict = Depends(require_user),
                    db: Database = Depends(get_db)):
    user = _load_profile(db, claims["sub"])
    if not verify_password(payload.current_password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Current password is incorrect")
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": hash_password(payload.new_password), "updated_at": utcnow()}},
    )
    return {"message": "Password changed successfully"}


# Scan routes

@app.get("/scan/quota")
def get_quota(claims: dict = Depends(require_user), db: Database = Depends(get_db)):
    return quota_status(db, claims["sub"])


@app.post("/scan/perform", status_code=201)
def perform_scan(product: ProductDescriptor, claims: dict = Depends(require_user),
                 db: Database = Depends(get_db), assess=Depends(get_assessor)):
    _active_profile(db, claims)
    return submit_scan(db, claims["sub"], product, assess)


@app.post("/scan/image", status_code=201)
def perform_image_scan(
    file: UploadFile = File(...),
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    price: Optional[str] = Form(None),
    platform: Optional[str] = Form(None),
    claims: dict = Depends(require_user),
    db: Database = Depends(get_db),
    assess=Depends(get_assessor),
):
    _active_profile(db, claims)
    contents = file.file.read(MAX_UPLOAD_BYTES + 1)
    if len(contents) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="Image must be 5MB or smaller")
    try:
        data_url = image_data_url(contents)
    except InvalidImage as e:
        raise HTTPException(status_code=400, detail=str(e))

    product = ProductDescriptor(name=name, description=description, price=price, platform=platform,
                                image_url=data_url)
    return submit_scan(db, claims["sub"], product, assess)


@app.post("/scan/bulk")
def perform_bulk_scan(payload: BulkScanRequest, claims: dict = Depends(require_user),
                      db: Database = Depends(get_db), assess=Depends(get_assessor)):
    user = expire_if_due(db, _active_profile(db, claims))
    if not has_capability(user, Capability.BULK_SCANNING):
        raise HTTPException(status_code=403,
                            detail="Bulk scanning is only available for Premium Seller subscribers")
    try:
        return bulk_scan(db, claims["sub"], payload.products, assess)
    except (BatchTooLarge, EmptyBatch) as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/scan/history")
def get_history(limit: int = Query(20, ge=1, le=100), offset: int = Query(0, ge=0),
                claims: dict = Depends(require_user), db: Database = Depends(get_db)):
    return scan_history(db, claims["sub"], limit=limit, offset=offset)


@app.get("/scan/{scan_id}")
def get_scan_details(scan_id: str, claims: dict = Depends(require_user), db: Database = Depends(get_db)):
    is_admin = False
    if claims.get("is_admin"):
        viewer = db["user"].find_one({"_id": as_object_id(claims["sub"])}, {"is_admin": 1, "is_banned": 1})
        is_admin = bool(viewer and viewer.get("is_admin") and not viewer.get("is_banned"))
    try:
        return get_scan(db, scan_id, claims["sub"], is_admin=is_admin)
    except ScanNotFound:
        raise HTTPException(status_code=404, detail="Scan not found")


# Subscription and payment routes

@app.get("/subscription/plans")
def get_plans(claims: Optional[dict] = Depends(optional_user), db: Database = Depends(get_db)):
    current = None
    if claims:
        user = db["user"].find_one({"_id": as_object_id(claims["sub"])}, {"subscription_tier": 1})
        current = user.get("subscription_tier") if user else None
    plans = [{"id": plan_id, **details, "capabilities": capabilities_for(plan_id)}
             for plan_id, details in PLANS.items()]
    return {"plans": plans, "current_tier": current}


@app.get("/subscription/status")
def get_subscription_status(claims: dict = Depends(require_user), db: Database = Depends(get_db)):
    user = expire_if_due(db, _load_profile(db, claims["sub"]))
    tier = user.get("subscription_tier", "free")
    return {
        "tier": tier,
        "subscription": serialize(get_subscription(db, claims["sub"])),
        "capabilities": capabilities_for(tier),
        "premium_expires_at": user.get("premium_expires_at"),
    }


@app.post("/subscription/upgrade", status_code=202)
def upgrade(payload: UpgradeModel, claims: dict = Depends(require_user), db: Database = Depends(get_db),
            client: MpesaClient = Depends(get_mpesa_client)):
    _active_profile(db, claims)
    try:
        return initiate_payment(db, client, claims["sub"], payload.phone, payload.plan)
    except InvalidPhone as e:
        raise HTTPException(status_code=400, detail=str(e))
    except MpesaError as e:
        logger.error("Upgrade for %s failed: %s", claims["sub"], e)
        raise HTTPException(status_code=502, detail=str(e))


@app.get("/subscription/payments/{checkout_request_id}")
def get_payment_status(checkout_request_id: str, claims: dict = Depends(require_user),
                       db: Database = Depends(get_db)):
    try:
        return payment_status(db, claims["sub"], checkout_request_id)
    except TransactionNotFound:
        raise HTTPException(status_code=404, detail="Transaction not found")


@app.post("/subscription/cancel")
def cancel_subscription(claims: dict = Depends(require_user), db: Database = Depends(get_db)):
    try:
        subscription = cancel(db, claims["sub"])
    except NoActiveSubscription as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"message": "Subscription cancelled successfully", "subscription": serialize(subscription)}


@app.post("/payments/mpesa/callback")
async def mpesa_callback(request: Request, db: Database = Depends(get_db)):
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    try:
        process_callback(db, payload)
    except PyMongoError:
        logger.exception("Failed to store M-Pesa callback %.500r", payload)
    # Always acknowledge so Safaricom does not keep retrying
    return {"ResultCode": 0, "ResultDesc": "Accepted"}


# Seller API (x-api-key) and seller analytics

@app.post("/seller/v1/scan", status_code=201)
def seller_api_scan(product: ProductDescriptor, seller: dict = Depends(require_api_key),
                    db: Database = Depends(get_db), assess=Depends(get_assessor)):
    return {"success": True, "data": submit_scan(db, str(seller["_id"]), product, assess)}


@app.get("/seller/v1/stats")
def seller_api_stats(seller: dict = Depends(require_api_key), db: Database = Depends(get_db)):
    return {"success": True, "data": scan_stats(db, str(seller["_id"]))}


@app.get("/seller/v1/usage")
def seller_api_usage(seller: dict = Depends(require_api_key)):
    return {"success": True, "data": usage(seller["api_calls_today"])}


@app.get("/seller/analytics")
def seller_analytics(claims: dict = Depends(require_user), db: Database = Depends(get_db)):
    user = expire_if_due(db, _active_profile(db, claims))
    if not has_capability(user, Capability.ANALYTICS_DASHBOARD):
        raise HTTPException(status_code=403,
                            detail="Analytics are only available for Premium Seller subscribers")
    return scan_stats(db, claims["sub"])


# Referrals and notifications

@app.get("/referrals/me")
def get_referrals(claims: dict = Depends(require_user), db: Database = Depends(get_db)):
    return referral_summary(db, claims["sub"])


@app.get("/notifications")
def get_notifications(unread: bool = False, claims: dict = Depends(require_user), db: Database = Depends(get_db)):
    return {"notifications": list_notifications(db, claims["sub"], unread_only=unread)}


@app.post("/notifications/read")
def read_notifications(claims: dict = Depends(require_user), db: Database = Depends(get_db)):
    return {"marked": mark_all_read(db, claims["sub"])}


# Admin routes

@app.get("/admin/stats")
def admin_stats(claims: dict = Depends(require_admin), db: Database = Depends(get_db)):
    users = db["user"]
    scans = db["scan"]
    revenue = sum(t.get("amount", 0) for t in db["mpesa_transaction"].find({"status": "completed"}, {"amount": 1}))
    return {
        "users": {
            "total": users.count_documents({}),
            "premium": users.count_documents({"subscription_tier": "premium"}),
            "premium_seller": users.count_documents({"subscription_tier": "premium_seller"}),
            "banned": users.count_documents({"is_banned": True}),
        },
        "scans": {
            "total": scans.count_documents({}),
            "verdicts": {v: scans.count_documents({"verdict": v}) for v in ("SAFE", "CAUTION", "DANGER")},
        },
        "revenue_kes": revenue,
    }


@app.get("/admin/users")
def admin_list_users(search: Optional[str] = None, limit: int = Query(50, ge=1, le=200),
                     offset: int = Query(0, ge=0), claims: dict = Depends(require_admin),
                     db: Database = Depends(get_db)):
    query = {}
    if search:
        query["email"] = {"$regex": re.escape(search.strip().lower())}
    users = get_documents(db, "user", query, limit=limit, offset=offset)
    return {"users": [_user_view(u) for u in users], "total": db["user"].count_documents(query)}


@app.get("/admin/users/{user_id}")
def admin_user_details(user_id: str, claims: dict = Depends(require_admin), db: Database = Depends(get_db)):
    user = _load_profile(db, user_id)
    return {
        "user": _user_view(user),
        "subscription": serialize(get_subscription(db, user_id)),
        "recent_scans": scan_history(db, user_id, limit=5)["scans"],
    }


@app.post("/admin/users/{user_id}/ban")
def admin_ban_user(user_id: str, payload: BanModel, claims: dict = Depends(require_admin),
                   db: Database = Depends(get_db)):
    if user_id == claims["sub"]:
        raise HTTPException(status_code=400, detail="You cannot ban yourself")
    user = _load_profile(db, user_id)
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"is_banned": True, "updated_at": utcnow()}})
    _log_admin_action(db, claims["sub"], "ban_user", user_id, {"reason": payload.reason})
    notify(db, user_id, "ban", "Account suspended", payload.reason or "Your account has been suspended.")
    return {"message": "User banned", "user": _user_view(_load_profile(db, user_id))}


@app.post("/admin/users/{user_id}/unban")
def admin_unban_user(user_id: str, claims: dict = Depends(require_admin), db: Database = Depends(get_db)):
    user = _load_profile(db, user_id)
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"is_banned": False, "updated_at": utcnow()}})
    _log_admin_action(db, claims["sub"], "unban_user", user_id)
    notify(db, user_id, "unban", "Account restored", "Your account is active again.")
    return {"message": "User unbanned", "user": _user_view(_load_profile(db, user_id))}


@app.post("/admin/users/{user_id}/tier")
def admin_set_tier(user_id: str, payload: TierModel, claims: dict = Depends(require_admin),
                   db: Database = Depends(get_db)):
    _load_profile(db, user_id)
    user = set_tier(db, user_id, payload.tier, days=payload.days)
    _log_admin_action(db, claims["sub"], "set_tier", user_id, {"tier": payload.tier, "days": payload.days})
    notify(db, user_id, "admin_action", "Plan updated", f"An administrator set your plan to {payload.tier}.")
    return {"message": "Tier updated", "user": _user_view(user)}


@app.get("/admin/actions")
def admin_actions(limit: int = Query(50, ge=1, le=200), offset: int = Query(0, ge=0),
                  claims: dict = Depends(require_admin), db: Database = Depends(get_db)):
    return {"actions": [serialize(a) for a in get_documents(db, "admin_action", limit=limit, offset=offset)]}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
