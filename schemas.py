"""
Database Schemas

MongoDB collection schemas defined as Pydantic models.
Model name is converted to lowercase for the collection name:
- User -> "user" collection
- Scan -> "scan" collection
- MpesaTransaction -> "mpesa_transaction" collection
"""

from datetime import datetime
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, EmailStr, Field, model_validator

from config import FREE_SCANS_DEFAULT

Tier = Literal["free", "premium", "premium_seller"]
Role = Literal["buyer", "seller", "admin"]
Verdict = Literal["SAFE", "CAUTION", "DANGER"]

UNLIMITED = -1


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    email: EmailStr = Field(..., description="Email address, stored lower-cased")
    password_hash: str = Field(..., description="Hashed password")
    name: Optional[str] = Field(None, description="Full name")
    phone: Optional[str] = Field(None, description="M-Pesa phone number")
    role: Role = Field("buyer", description="Account role")
    is_admin: bool = False
    is_banned: bool = False
    subscription_tier: Tier = Field("free", description="Subscription tier")
    scans_today: int = Field(0, ge=0, description="Scans used since the last daily reset")
    scan_limit: int = Field(FREE_SCANS_DEFAULT, description="Daily scan allowance, -1 when unlimited")
    last_reset_on: Optional[str] = Field(None, description="ISO date of the last daily reset")
    bonus_scans: int = Field(0, ge=0, description="Extra scans earned through referrals")
    referral_code: str
    referred_by: Optional[str] = None
    referral_count: int = 0
    premium_expires_at: Optional[datetime] = None
    api_key: Optional[str] = None
    api_calls_today: int = Field(0, ge=0, description="Seller API calls since the last daily reset")
    api_calls_reset_on: Optional[str] = None
    seller_verified: bool = False


class RiskFactor(BaseModel):
    name: str
    score: int = Field(0, ge=0, le=100)
    details: str = ""


class Assessment(BaseModel):
    """Shape expected back from the risk-assessment model"""
    overall_score: int = Field(..., ge=0, le=100)
    verdict: Verdict
    risk_factors: List[RiskFactor] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class ProductDescriptor(BaseModel):
    """What the shopper submitted: a link, an image, a description or a mix"""
    name: Optional[str] = Field(None, max_length=300)
    url: Optional[str] = Field(None, max_length=2000)
    image_url: Optional[str] = Field(None, max_length=2000)
    description: Optional[str] = Field(None, max_length=5000)
    price: Optional[Union[float, str]] = None
    vendor: Optional[str] = Field(None, max_length=300)
    platform: Optional[str] = Field(None, max_length=100)

    @model_validator(mode="after")
    def _something_to_scan(self):
        if not any([self.name, self.url, self.image_url, self.description]):
            raise ValueError("Provide a product URL, image or description")
        return self

    @property
    def input_type(self) -> str:
        if self.url:
            return "url"
        if self.image_url:
            return "image"
        return "description"


class Scan(BaseModel):
    """Records each risk assessment; never updated after insert"""
    user_id: str
    product: dict
    input_type: Literal["url", "image", "description"]
    overall_score: int = Field(..., ge=0, le=100)
    verdict: Verdict
    risk_factors: List[RiskFactor] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    assessment_source: Literal["model", "fallback"] = "model"
    bulk: bool = False


class Subscription(BaseModel):
    user_id: str
    plan: Literal["premium", "premium_seller"]
    status: Literal["active", "expired", "cancelled"] = "active"
    payment_method: str = "mpesa"
    transaction_id: Optional[str] = None
    starts_at: datetime
    expires_at: datetime
    cancelled_at: Optional[datetime] = None


class MpesaTransaction(BaseModel):
    user_id: str
    plan: Literal["premium", "premium_seller"]
    amount: int
    phone: str
    checkout_request_id: str
    merchant_request_id: Optional[str] = None
    status: Literal["pending", "completed", "failed", "cancelled"] = "pending"
    result_code: Optional[int] = None
    result_desc: Optional[str] = None
    mpesa_receipt_number: Optional[str] = None
    transaction_date: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class Referral(BaseModel):
    referrer_id: str
    referred_id: str
    bonus_awarded: int = 0
    status: Literal["pending", "completed"] = "completed"
    completed_at: Optional[datetime] = None


class AdminAction(BaseModel):
    admin_id: str
    action: str
    target_user_id: Optional[str] = None
    details: dict = Field(default_factory=dict)


class Notification(BaseModel):
    user_id: str
    kind: Literal["ban", "unban", "premium", "admin_action", "referral"]
    title: str
    message: str
    read: bool = False
