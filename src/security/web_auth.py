from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import UTC, datetime, timedelta
from uuid import UUID

from pydantic import BaseModel

from src.config import Settings, get_settings

TOKEN_VERSION = 2


class WebAccessClaims(BaseModel):
    user_id: UUID
    email: str
    expires_at: datetime


def _base64url_encode(value: bytes) -> str:
    return base64.urlsafe_b64encode(value).rstrip(b"=").decode("ascii")


def _base64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(f"{value}{padding}".encode("ascii"))


def _sign(payload_b64: str, secret: str) -> str:
    signature = hmac.new(secret.encode("utf-8"), payload_b64.encode("ascii"), hashlib.sha256).digest()
    return _base64url_encode(signature)


def create_web_access_token(*, user_id: UUID, email: str, settings: Settings | None = None) -> str:
    active = settings or get_settings()
    expires_at = datetime.now(UTC) + timedelta(hours=active.web_access_token_expiry_hours)
    payload = {
        "sub": str(user_id),
        "email": email.lower(),
        "exp": int(expires_at.timestamp()),
        "v": TOKEN_VERSION,
    }
    payload_json = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    payload_b64 = _base64url_encode(payload_json)
    return f"{payload_b64}.{_sign(payload_b64, active.web_access_token_secret)}"


def verify_web_access_token(*, token: str, settings: Settings | None = None) -> WebAccessClaims | None:
    """Return the token's claims, or None if it is malformed, forged, stale or expired."""
    active = settings or get_settings()
    parts = token.split(".", maxsplit=1)
    if len(parts) != 2:
        return None
    payload_b64, signature_b64 = parts
    if not hmac.compare_digest(signature_b64, _sign(payload_b64, active.web_access_token_secret)):
        return None

    try:
        payload = json.loads(_base64url_decode(payload_b64))
    except (ValueError, json.JSONDecodeError):
        return None
    if not isinstance(payload, dict) or payload.get("v") != TOKEN_VERSION:
        return None

    sub = payload.get("sub")
    email = payload.get("email")
    exp = payload.get("exp")
    if not isinstance(sub, str) or not isinstance(email, str) or not isinstance(exp, int):
        return None
    if int(datetime.now(UTC).timestamp()) >= exp:
        return None
    try:
        user_id = UUID(sub)
    except ValueError:
        return None
    return WebAccessClaims(user_id=user_id, email=email, expires_at=datetime.fromtimestamp(exp, tz=UTC))
