from __future__ import annotations

import base64
import json
from unittest.mock import patch
from uuid import uuid4

from src.security.web_auth import TOKEN_VERSION, _sign, create_web_access_token, verify_web_access_token


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _forge(payload: dict[str, object], secret: str = "test-secret") -> str:
    payload_b64 = _b64url(json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8"))
    return f"{payload_b64}.{_sign(payload_b64, secret)}"


@patch("src.security.web_auth.get_settings")
def test_create_and_verify_token(mock_settings) -> None:
    mock_settings.return_value.web_access_token_secret = "test-secret"
    mock_settings.return_value.web_access_token_expiry_hours = 1
    user_id = uuid4()

    token = create_web_access_token(user_id=user_id, email="Chair@BoardCo.org")
    claims = verify_web_access_token(token=token)

    assert claims is not None
    assert claims.user_id == user_id
    assert claims.email == "chair@boardco.org"


@patch("src.security.web_auth.get_settings")
def test_verify_rejects_modified_signature(mock_settings) -> None:
    mock_settings.return_value.web_access_token_secret = "test-secret"
    mock_settings.return_value.web_access_token_expiry_hours = 1

    token = create_web_access_token(user_id=uuid4(), email="member@boardco.org")
    payload_part, _ = token.split(".", maxsplit=1)

    assert verify_web_access_token(token=f"{payload_part}.invalid-signature") is None
    assert verify_web_access_token(token="no-dot-here") is None


@patch("src.security.web_auth.get_settings")
def test_verify_rejects_expired_token(mock_settings) -> None:
    mock_settings.return_value.web_access_token_secret = "test-secret"
    token = _forge({"sub": str(uuid4()), "email": "member@boardco.org", "exp": 1, "v": TOKEN_VERSION})
    assert verify_web_access_token(token=token) is None


@patch("src.security.web_auth.get_settings")
def test_verify_rejects_tokens_from_older_versions(mock_settings) -> None:
    mock_settings.return_value.web_access_token_secret = "test-secret"
    token = _forge({"email": "member@boardco.org", "exp": 4_102_444_800, "v": 1})
    assert verify_web_access_token(token=token) is None


@patch("src.security.web_auth.get_settings")
def test_verify_rejects_bad_subject(mock_settings) -> None:
    mock_settings.return_value.web_access_token_secret = "test-secret"
    token = _forge({"sub": "not-a-uuid", "email": "member@boardco.org", "exp": 4_102_444_800, "v": TOKEN_VERSION})
    assert verify_web_access_token(token=token) is None
