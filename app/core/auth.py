import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from fastapi import Header, HTTPException

from app.core.db import SessionLocal
from app.core.models import UserAccount
from config.settings import get_settings


@dataclass
class AuthContext:
    user_id: str
    email: str
    company_id: str | None
    role: str


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def _b64url_decode(raw: str) -> bytes:
    padding = "=" * (-len(raw) % 4)
    return base64.urlsafe_b64decode(raw + padding)


def _sign(payload_part: str) -> str:
    secret = get_settings().auth_secret.encode("utf-8")
    return _b64url_encode(hmac.new(secret, payload_part.encode("utf-8"), hashlib.sha256).digest())


def create_access_token(*, user_id: str, email: str, ttl_seconds: int | None = None) -> str:
    settings = get_settings()
    if ttl_seconds is None:
        exp_at = datetime.now(timezone.utc) + timedelta(hours=max(1, settings.auth_token_ttl_hours))
    else:
        exp_at = datetime.now(timezone.utc) + timedelta(seconds=int(ttl_seconds))
    payload = {
        "sub": str(user_id),
        "email": email,
        "exp": int(exp_at.timestamp()),
        "jti": str(uuid4()),
    }
    payload_raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    payload_part = _b64url_encode(payload_raw)
    return f"{payload_part}.{_sign(payload_part)}"


def decode_access_token(token: str) -> dict:
    try:
        payload_part, sig_part = token.split(".", 1)
        if not hmac.compare_digest(_sign(payload_part), sig_part):
            raise HTTPException(status_code=401, detail="Invalid user token")
        payload = json.loads(_b64url_decode(payload_part))
        if int(payload.get("exp", 0)) < int(datetime.now(timezone.utc).timestamp()):
            raise HTTPException(status_code=401, detail="Invalid user token")
        return payload
    except HTTPException:
        raise
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid user token")


def _resolve_context_from_payload(payload: dict) -> AuthContext:
    db = SessionLocal()
    try:
        user = db.query(UserAccount).filter(UserAccount.id == str(payload.get("sub"))).first()
        if not user or not user.is_active:
            raise HTTPException(status_code=401, detail="Invalid user token")
        return AuthContext(
            user_id=user.id,
            email=user.email,
            company_id=user.company_id,
            role=user.role,
        )
    finally:
        db.close()


def get_current_user(authorization: str | None = Header(default=None)) -> AuthContext:
    """FastAPI dependency: resolve the caller from the ``Authorization`` header."""
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing authorization header")
    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid user token")
    payload = decode_access_token(authorization.removeprefix("Bearer ").strip())
    return _resolve_context_from_payload(payload)
