import os

os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("FREE_SCANS_DEFAULT", "3")

import itertools

import mongomock
import pytest
from fastapi.testclient import TestClient

from assessor import AssessmentUnavailable, Parsed
from auth import hash_password
from database import as_object_id, ensure_indexes, utcnow
from main import app, get_assessor, get_db, get_mpesa_client
from quota import local_date
from referrals import generate_referral_code
from schemas import Assessment, RiskFactor, User
from tokens import issue_access_token

PASSWORD = "password123"
PASSWORD_HASH = hash_password(PASSWORD)

SAFE_RESULT = Parsed(Assessment(
    overall_score=82,
    verdict="SAFE",
    risk_factors=[RiskFactor(name="Vendor Trust", score=80, details="Established seller")],
    recommendations=["Pay on delivery where possible"],
))


class FakeAssessor:
    """Stands in for the AI gateway; fails on the call indexes listed in fail_on."""

    def __init__(self, result=SAFE_RESULT, fail_on=(), error=AssessmentUnavailable):
        self.calls = []
        self.result = result
        self.fail_on = set(fail_on)
        self.error = error

    def __call__(self, product):
        index = len(self.calls)
        self.calls.append(product)
        if index in self.fail_on:
            raise self.error("gateway down")
        return self.result


class FakeMpesaClient:
    def __init__(self):
        self.pushes = []
        self._ids = itertools.count(1)

    def stk_push(self, phone, amount, reference, description):
        self.pushes.append({"phone": phone, "amount": amount, "reference": reference})
        n = next(self._ids)
        return {
            "ResponseCode": "0",
            "CheckoutRequestID": f"ws_CO_{n:04d}",
            "MerchantRequestID": f"mr_{n:04d}",
        }


@pytest.fixture
def db():
    database = mongomock.MongoClient(tz_aware=True)["safebazaar_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def assessor():
    return FakeAssessor()


@pytest.fixture
def mpesa():
    return FakeMpesaClient()


@pytest.fixture
def client(db, assessor, mpesa):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_assessor] = lambda: assessor
    app.dependency_overrides[get_mpesa_client] = lambda: mpesa
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    counter = itertools.count(1)

    def _make(email=None, **fields):
        email = email or f"shopper{next(counter)}@safebazaar.co.ke"
        fields.setdefault("referral_code", generate_referral_code())
        last_reset_on = fields.pop("last_reset_on", local_date())
        doc = User(email=email, password_hash=PASSWORD_HASH, **fields).model_dump()
        doc["last_reset_on"] = last_reset_on
        doc["created_at"] = utcnow()
        return str(db["user"].insert_one(doc).inserted_id)

    return _make


@pytest.fixture
def headers_for(db):
    def _headers(user_id):
        user = db["user"].find_one({"_id": as_object_id(user_id)})
        token = issue_access_token(user_id, user["email"], user.get("is_admin", False))
        return {"Authorization": f"Bearer {token}"}

    return _headers
