from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import APIKeyHeader, OAuth2PasswordBearer
from passlib.context import CryptContext
from pymongo.database import Database

from config import BCRYPT_ROUNDS
from database import as_object_id, get_db
from seller_api import ApiAccessDenied, ApiLimitReached, InvalidApiKey, authenticate, consume_call
from tokens import verify_access_token

# Auth utilities
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)

# auto_error is off so each dependency decides how a missing token is handled
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/signin", auto_error=False)
api_key_header = APIKeyHeader(name="x-api-key", auto_error=False)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(password, hashed)


def require_user(token: Optional[str] = Depends(oauth2_scheme)) -> dict:
    if not token:
        raise HTTPException(status_code=401, detail="Authentication required")
    claims = verify_access_token(token)
    if claims is None:
        raise HTTPException(status_code=403, detail="Invalid or expired token")
    return claims


def require_admin(claims: dict = Depends(require_user), db: Database = Depends(get_db)) -> dict:
    # The is_admin claim can be up to one token lifetime old, so check the store
    if not claims.get("is_admin"):
        raise HTTPException(status_code=403, detail="Admin access required")
    user = db["user"].find_one({"_id": as_object_id(claims["sub"])}, {"is_admin": 1, "is_banned": 1})
    if not user or not user.get("is_admin") or user.get("is_banned"):
        raise HTTPException(status_code=403, detail="Admin access required")
    return claims


def optional_user(token: Optional[str] = Depends(oauth2_scheme)) -> Optional[dict]:
    if not token:
        return None
    return verify_access_token(token)


def require_api_key(api_key: Optional[str] = Depends(api_key_header), db: Database = Depends(get_db)) -> dict:
    """Seller API authentication; every accepted request counts one call."""
    try:
        user = authenticate(db, api_key)
        user["api_calls_today"] = consume_call(db, user)
    except InvalidApiKey as e:
        raise HTTPException(status_code=401, detail=str(e))
    except ApiAccessDenied as e:
        raise HTTPException(status_code=403, detail=str(e))
    except ApiLimitReached as e:
        raise HTTPException(status_code=429, detail=str(e))
    return user
