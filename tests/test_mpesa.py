import base64
from datetime import datetime, timedelta, timezone

import pytest
from pymongo.errors import PyMongoError

import mpesa as mpesa_module
from database import as_object_id, as_utc
from mpesa import (
    InvalidPhone,
    MpesaClient,
    MpesaError,
    TransactionNotFound,
    initiate_payment,
    normalize_phone,
    payment_status,
    process_callback,
    stk_password,
)
from schemas import UNLIMITED

NOW = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)


def _callback(checkout_id, code=0, desc="The service request is processed successfully."):
    stk = {
        "MerchantRequestID": "mr_0001",
        "CheckoutRequestID": checkout_id,
        "ResultCode": code,
        "ResultDesc": desc,
    }
    if code == 0:
        stk["CallbackMetadata"] = {"Item": [
            {"Name": "Amount", "Value": 200},
            {"Name": "MpesaReceiptNumber", "Value": "QJK3H7XYZ1"},
            {"Name": "TransactionDate", "Value": 20261018120000},
            {"Name": "PhoneNumber", "Value": 254712345678},
        ]}
    return {"Body": {"stkCallback": stk}}


@pytest.mark.parametrize("raw", ["0712345678", "+254712345678", "254712345678", "712345678",
                                 "0712 345 678", "0112345678"])
def test_normalize_phone(raw):
    assert normalize_phone(raw).startswith("254")
    assert len(normalize_phone(raw)) == 12


@pytest.mark.parametrize("raw", ["", "12345", "0812345678", "+1 555 0100", None])
def test_invalid_phone(raw):
    with pytest.raises(InvalidPhone):
        normalize_phone(raw)


def test_stk_password():
    encoded = stk_password("174379", "passkey", "20261018120000")
    assert base64.b64decode(encoded) == b"174379passkey20261018120000"


def test_initiate_payment_stores_pending_transaction(db, make_user, mpesa):
    uid = make_user()
    out = initiate_payment(db, mpesa, uid, "0712345678", "premium")

    assert out["status"] == "pending"
    assert mpesa.pushes == [{"phone": "254712345678", "amount": 200, "reference": "SafeBazaar"}]
    txn = db["mpesa_transaction"].find_one({"checkout_request_id": out["checkout_request_id"]})
    assert txn["status"] == "pending"
    assert txn["user_id"] == uid
    assert txn["plan"] == "premium"


def test_successful_callback_upgrades_once(db, make_user, mpesa):
    uid = make_user()
    checkout_id = initiate_payment(db, mpesa, uid, "0712345678", "premium")["checkout_request_id"]

    txn = process_callback(db, _callback(checkout_id), now=NOW)
    assert txn["status"] == "completed"
    assert txn["mpesa_receipt_number"] == "QJK3H7XYZ1"
    assert as_utc(txn["transaction_date"]) == datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)

    user = db["user"].find_one({"_id": as_object_id(uid)})
    assert user["subscription_tier"] == "premium"
    assert user["scan_limit"] == UNLIMITED
    sub = db["subscription"].find_one({"user_id": uid})
    assert sub["status"] == "active"
    assert as_utc(sub["expires_at"]) == NOW + timedelta(days=28)

    # Safaricom redelivers; nothing changes the second time
    assert process_callback(db, _callback(checkout_id), now=NOW + timedelta(days=1)) is None
    sub = db["subscription"].find_one({"user_id": uid})
    assert as_utc(sub["expires_at"]) == NOW + timedelta(days=28)
    assert db["notification"].count_documents({"user_id": uid, "kind": "premium"}) == 1


def test_cancelled_and_failed_callbacks(db, make_user, mpesa):
    uid = make_user()
    first = initiate_payment(db, mpesa, uid, "0712345678", "premium")["checkout_request_id"]
    second = initiate_payment(db, mpesa, uid, "0712345678", "premium")["checkout_request_id"]

    assert process_callback(db, _callback(first, 1032, "Request cancelled by user"))["status"] == "cancelled"
    assert process_callback(db, _callback(second, 1, "The balance is insufficient"))["status"] == "failed"

    user = db["user"].find_one({"_id": as_object_id(uid)})
    assert user["subscription_tier"] == "free"
    assert db["subscription"].count_documents({}) == 0


@pytest.mark.parametrize("payload", [None, {}, {"Body": "x"}, {"Body": {"stkCallback": {"ResultCode": 0}}}])
def test_malformed_callback_is_ignored(db, payload):
    assert process_callback(db, payload) is None


def test_unknown_checkout_id(db):
    assert process_callback(db, _callback("ws_CO_unknown")) is None


def test_callback_route_always_acknowledges(client, db, make_user, mpesa):
    ack = {"ResultCode": 0, "ResultDesc": "Accepted"}
    res = client.post("/payments/mpesa/callback", content=b"not json",
                      headers={"Content-Type": "application/json"})
    assert res.status_code == 200
    assert res.json() == ack

    uid = make_user()
    checkout_id = initiate_payment(db, mpesa, uid, "0712345678", "premium_seller")["checkout_request_id"]
    res = client.post("/payments/mpesa/callback", json=_callback(checkout_id))
    assert res.json() == ack
    assert db["user"].find_one({"_id": as_object_id(uid)})["subscription_tier"] == "premium_seller"


def test_upgrade_and_payment_status_routes(client, make_user, headers_for, mpesa):
    uid = make_user()
    headers = headers_for(uid)

    assert client.post("/subscription/upgrade", json={"plan": "premium", "phone": "12345"},
                       headers=headers).status_code == 400

    res = client.post("/subscription/upgrade", json={"plan": "premium", "phone": "0712345678"}, headers=headers)
    assert res.status_code == 202
    checkout_id = res.json()["checkout_request_id"]

    status = client.get(f"/subscription/payments/{checkout_id}", headers=headers).json()
    assert status["transaction"]["status"] == "pending"
    assert status["subscription"] is None

    client.post("/payments/mpesa/callback", json=_callback(checkout_id))
    status = client.get(f"/subscription/payments/{checkout_id}", headers=headers).json()
    assert status["transaction"]["status"] == "completed"
    assert status["subscription"]["plan"] == "premium"

    other = make_user()
    assert client.get(f"/subscription/payments/{checkout_id}", headers=headers_for(other)).status_code == 404


def test_payment_status_is_scoped_to_owner(db, make_user, mpesa):
    uid = make_user()
    checkout_id = initiate_payment(db, mpesa, uid, "0712345678", "premium")["checkout_request_id"]
    with pytest.raises(TransactionNotFound):
        payment_status(db, make_user(), checkout_id)


class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload
        self.text = str(payload)

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        return self._payload


class FakeSession:
    def __init__(self, push_response):
        self.push_response = push_response
        self.posts = []

    def get(self, url, **kwargs):
        return FakeResponse(200, {"access_token": "tok", "expires_in": "3599"})

    def post(self, url, **kwargs):
        self.posts.append((url, kwargs))
        return self.push_response


def _client(session):
    return MpesaClient(consumer_key="ck", consumer_secret="cs", shortcode="174379", passkey="pk",
                       callback_url="https://api.safebazaar.co.ke/payments/mpesa/callback",
                       base_url="https://sandbox.safaricom.co.ke", session=session)


def test_stk_push_request():
    session = FakeSession(FakeResponse(200, {"ResponseCode": "0", "CheckoutRequestID": "ws_CO_1",
                                             "MerchantRequestID": "mr_1"}))
    result = _client(session).stk_push("254712345678", 200, "SafeBazaar", "Safe Bazaar Premium Subscription")

    assert result["CheckoutRequestID"] == "ws_CO_1"
    url, kwargs = session.posts[0]
    assert url == "https://sandbox.safaricom.co.ke/mpesa/stkpush/v1/processrequest"
    assert kwargs["headers"]["Authorization"] == "Bearer tok"
    assert kwargs["json"]["Amount"] == 200
    assert kwargs["json"]["PartyA"] == "254712345678"
    assert kwargs["json"]["BusinessShortCode"] == "174379"


def test_stk_push_rejected():
    session = FakeSession(FakeResponse(400, {"errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid Amount"}))
    with pytest.raises(MpesaError, match="Invalid Amount"):
        _client(session).stk_push("254712345678", 200, "SafeBazaar", "x")


def test_missing_credentials():
    with pytest.raises(MpesaError):
        MpesaClient(consumer_key="", consumer_secret="", session=FakeSession(None)).access_token()


@pytest.mark.parametrize("checkout_id", [{"$ne": "x"}, {"$exists": True}, ["ws_CO_0001"], 12345])
def test_non_string_checkout_id_is_ignored(db, make_user, mpesa, checkout_id):
    uid = make_user()
    initiate_payment(db, mpesa, uid, "0712345678", "premium_seller")

    assert process_callback(db, _callback(checkout_id)) is None
    assert db["user"].find_one({"_id": as_object_id(uid)})["subscription_tier"] == "free"
    assert db["mpesa_transaction"].find_one({"user_id": uid})["status"] == "pending"


def test_forged_callback_cannot_upgrade_someone_else(client, db, make_user, mpesa):
    victim = make_user()
    initiate_payment(db, mpesa, victim, "0712345678", "premium_seller")

    res = client.post("/payments/mpesa/callback", json=_callback({"$ne": "x"}))

    assert res.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}
    assert db["user"].find_one({"_id": as_object_id(victim)})["subscription_tier"] == "free"
    assert db["subscription"].count_documents({}) == 0


def _flaky_activation(monkeypatch):
    real = mpesa_module.activate_plan
    calls = []

    def activate(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise PyMongoError("write failed")
        return real(*args, **kwargs)

    monkeypatch.setattr(mpesa_module, "activate_plan", activate)
    return calls


def test_failed_activation_is_applied_on_redelivery(db, make_user, mpesa, monkeypatch):
    calls = _flaky_activation(monkeypatch)
    uid = make_user()
    checkout_id = initiate_payment(db, mpesa, uid, "0712345678", "premium")["checkout_request_id"]

    with pytest.raises(PyMongoError):
        process_callback(db, _callback(checkout_id), now=NOW)
    assert db["mpesa_transaction"].find_one({"checkout_request_id": checkout_id})["status"] == "pending"
    assert db["user"].find_one({"_id": as_object_id(uid)})["subscription_tier"] == "free"

    txn = process_callback(db, _callback(checkout_id), now=NOW)
    assert txn["status"] == "completed"
    assert len(calls) == 2
    assert db["user"].find_one({"_id": as_object_id(uid)})["subscription_tier"] == "premium"
    sub = db["subscription"].find_one({"user_id": uid})
    assert as_utc(sub["expires_at"]) == NOW + timedelta(days=28)


def test_callback_route_acks_activation_failure_and_recovers(client, db, make_user, mpesa, monkeypatch):
    _flaky_activation(monkeypatch)
    uid = make_user()
    checkout_id = initiate_payment(db, mpesa, uid, "0712345678", "premium")["checkout_request_id"]

    res = client.post("/payments/mpesa/callback", json=_callback(checkout_id))
    assert res.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}
    assert db["user"].find_one({"_id": as_object_id(uid)})["subscription_tier"] == "free"

    client.post("/payments/mpesa/callback", json=_callback(checkout_id))
    assert db["user"].find_one({"_id": as_object_id(uid)})["subscription_tier"] == "premium"
    assert db["mpesa_transaction"].find_one({"checkout_request_id": checkout_id})["status"] == "completed"


class TokenSession(FakeSession):
    def __init__(self, token_response):
        super().__init__(None)
        self.token_response = token_response

    def get(self, url, **kwargs):
        return self.token_response


@pytest.mark.parametrize("payload", [None, {"error": "no token here"}, ["tok"]])
def test_unexpected_oauth_response(payload):
    response = FakeResponse(200, payload)
    if payload is None:
        def broken_json():
            raise ValueError("Expecting value")
        response.json = broken_json
    with pytest.raises(MpesaError, match="Unexpected response"):
        _client(TokenSession(response)).access_token()
