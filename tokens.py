"""
Access and refresh tokens.

Access tokens are short lived and carry the identity needed to serve a
request; refresh tokens only carry the user id and can be exchanged for a
new access token. Each kind is signed with its own secret so a leaked
refresh key cannot mint access tokens.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from config import ACCESS_TOKEN_MINUTES, JWT_ALG, JWT_REFRESH_SECRET, JWT_SECRET, REFRESH_TOKEN_DAYS

ACCESS_TTL = timedelta(minutes=ACCESS_TOKEN_MINUTES)
REFRESH_TTL = timedelta(days=REFRESH_TOKEN_DAYS)


def _encode(payload: dict, secret: str, expires_delta: timedelta) -> str:
    now = datetime.now(timezone.utc)
    payload = {**payload, "iat": now, "exp": now + expires_delta}
    return jwt.encode(payload, secret, algorithm=JWT_ALG)


def issue_access_token(user_id: str, email: str, is_admin: bool = False,
                       expires_delta: timedelta = ACCESS_TTL) -> str:
    return _encode(
        {"sub": str(user_id), "email": email, "is_admin": bool(is_admin), "type": "access"},
        JWT_SECRET,
        expires_delta,
    )


def issue_refresh_token(user_id: str, expires_delta: timedelta = REFRESH_TTL) -> str:
    return _encode({"sub": str(user_id), "type": "refresh"}, JWT_REFRESH_SECRET, expires_delta)


def verify(token: Optional[str], secret: str) -> Optional[dict]:
    """Return the token claims, or None for anything that is not a valid token."""
    if not token:
        return None
    try:
        claims = jwt.decode(token, secret, algorithms=[JWT_ALG])
    except jwt.PyJWTError:
        return None
    if not claims.get("sub"):
        return None
    return claims


def verify_access_token(token: Optional[str]) -> Optional[dict]:
    claims = verify(token, JWT_SECRET)
    if claims is None or claims.get("type") != "access":
        return None
    return claims


def verify_refresh_token(token: Optional[str]) -> Optional[dict]:
    claims = verify(token, JWT_REFRESH_SECRET)
    if claims is None or claims.get("type") != "refresh":
        return None
    return claims
