from datetime import timedelta

import jwt

from config import JWT_REFRESH_SECRET, JWT_SECRET
from tokens import (
    issue_access_token,
    issue_refresh_token,
    verify,
    verify_access_token,
    verify_refresh_token,
)


def test_access_token_round_trip():
    token = issue_access_token("user-1", "wanjiku@safebazaar.co.ke", True)
    claims = verify(token, JWT_SECRET)
    assert claims["sub"] == "user-1"
    assert claims["email"] == "wanjiku@safebazaar.co.ke"
    assert claims["is_admin"] is True
    assert claims["exp"] - claims["iat"] == 15 * 60


def test_refresh_token_carries_only_the_user_id():
    claims = verify_refresh_token(issue_refresh_token("user-1"))
    assert claims["sub"] == "user-1"
    assert "email" not in claims
    assert "is_admin" not in claims
    assert claims["exp"] - claims["iat"] == 7 * 24 * 3600


def test_expired_token_returns_none():
    token = issue_access_token("user-1", "a@safebazaar.co.ke", expires_delta=timedelta(seconds=-1))
    assert verify(token, JWT_SECRET) is None
    assert verify_access_token(token) is None


def test_garbage_and_missing_tokens_return_none():
    assert verify("not-a-jwt", JWT_SECRET) is None
    assert verify("", JWT_SECRET) is None
    assert verify(None, JWT_SECRET) is None


def test_wrong_secret_returns_none():
    token = issue_access_token("user-1", "a@safebazaar.co.ke")
    assert verify(token, "some-other-secret") is None


def test_token_kinds_are_not_interchangeable():
    access = issue_access_token("user-1", "a@safebazaar.co.ke")
    refresh = issue_refresh_token("user-1")
    assert verify_refresh_token(access) is None
    assert verify_access_token(refresh) is None


def test_refresh_secret_cannot_forge_access_tokens():
    forged = jwt.encode({"sub": "user-1", "email": "x@safebazaar.co.ke", "is_admin": True, "type": "access"},
                        JWT_REFRESH_SECRET, algorithm="HS256")
    assert verify_access_token(forged) is None


def test_token_without_subject_is_rejected():
    token = jwt.encode({"type": "access"}, JWT_SECRET, algorithm="HS256")
    assert verify_access_token(token) is None
