"""
Credentials and the request authorization gate.

Tokens are ``<payload>.<signature>`` where the payload is url-safe base64 JSON
``{"sub", "iat", "exp"}`` and the signature is HMAC-SHA256 of the payload under
the configured secret. Only the user id travels in the token; the role is read
from the user record on every request.
"""

import base64
import hashlib
import hmac
import json
import secrets
import time
from typing import Optional

import structlog
from fastapi import Depends, Header, HTTPException, Request
from pymongo.database import Database

from config import Settings
from database import parse_object_id

logger = structlog.get_logger(__name__)


class InvalidToken(Exception):
    """Raised when a bearer token fails signature, format or expiry checks."""


# -------------------- Passwords --------------------

def hash_password(password: str, salt: Optional[str] = None) -> tuple[str, str]:
    if not salt:
        salt = secrets.token_hex(16)
    h = hashlib.sha256((salt + password).encode()).hexdigest()
    return h, salt


def verify_password(password: str, salt: str, expected_hash: str) -> bool:
    h, _ = hash_password(password, salt)
    return hmac.compare_digest(h, expected_hash)


# -------------------- Tokens --------------------

def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def _b64decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def _sign(payload: str, secret: str) -> str:
    return _b64encode(hmac.new(secret.encode(), payload.encode(), hashlib.sha256).digest())


def issue_token(user_id: str, secret: str, ttl_hours: int = 24, now: Optional[float] = None) -> str:
    issued_at = int(now if now is not None else time.time())
    claims = {"sub": user_id, "iat": issued_at, "exp": issued_at + ttl_hours * 3600}
    payload = _b64encode(json.dumps(claims, separators=(",", ":")).encode())
    return f"{payload}.{_sign(payload, secret)}"


def decode_token(token: str, secret: str, now: Optional[float] = None) -> str:
    """Return the subject id of a valid token."""
    try:
        payload, signature = token.split(".")
    except ValueError:
        raise InvalidToken("malformed token")
    if not hmac.compare_digest(_sign(payload, secret).encode(), signature.encode()):
        raise InvalidToken("bad signature")
    try:
        claims = json.loads(_b64decode(payload))
        subject, expires = str(claims["sub"]), int(claims["exp"])
    except (ValueError, KeyError, TypeError):
        raise InvalidToken("malformed payload")
    if expires <= (now if now is not None else time.time()):
        raise InvalidToken("expired")
    return subject


# -------------------- Request dependencies --------------------

def get_db(request: Request) -> Database:
    return request.app.state.db


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def public_user(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "name": user.get("name", ""),
        "email": user.get("email"),
        "role": user.get("role", "customer"),
        "created_at": user["created_at"].isoformat() if user.get("created_at") else None,
    }


def get_current_user(
    authorization: Optional[str] = Header(None),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> dict:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="No token, authorization denied")
    token = authorization.split(" ", 1)[1].strip()
    try:
        user_id = decode_token(token, settings.secret_key)
    except InvalidToken as e:
        logger.info("Rejected bearer token", reason=str(e))
        raise HTTPException(status_code=401, detail="Token is not valid")
    oid = parse_object_id(user_id)
    user = db["user"].find_one({"_id": oid}) if oid else None
    if not user:
        raise HTTPException(status_code=401, detail="Token is not valid")
    return user


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    # user was loaded from the store for this request, so the role is current
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Access denied. Admin only.")
    return user
