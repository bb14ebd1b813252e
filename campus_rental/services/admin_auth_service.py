from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import time
from typing import Any


SESSION_TTL_SECONDS = 60 * 60 * 24 * 7
ADMIN_ROLE = "Admin"


def _require_session_secret() -> bytes:
    raw = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
    if len(raw) < 32:
        raise RuntimeError("SESSION_SIGNING_SECRET must be set and at least 32 characters long.")
    return raw.encode("utf-8")


_SESSION_SECRET = _require_session_secret()


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(encoded: str) -> bytes:
    return base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4))


def _sign(encoded: str) -> bytes:
    return hmac.new(_SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()


def check_admin_credentials(admin_id: str | None, password: str | None) -> bool:
    expected_id = (os.environ.get("ADMIN_ID") or "").strip()
    expected_password = os.environ.get("ADMIN_PASSWORD") or ""
    if not expected_id or not expected_password:
        return False
    id_ok = hmac.compare_digest((admin_id or "").strip().encode("utf-8"), expected_id.encode("utf-8"))
    password_ok = hmac.compare_digest((password or "").encode("utf-8"), expected_password.encode("utf-8"))
    return id_ok and password_ok


def admin_session_payload() -> dict[str, Any]:
    return {
        "id": (os.environ.get("ADMIN_ID") or "").strip(),
        "displayName": "Administrator",
        "role": ADMIN_ROLE,
    }


def create_session(payload: dict[str, Any], now: float | None = None) -> str:
    issued_at = time.time() if now is None else now
    session_payload = dict(payload)
    session_payload["issuedAt"] = int(issued_at)
    session_payload["expiresAt"] = issued_at + SESSION_TTL_SECONDS
    body = json.dumps(session_payload, ensure_ascii=True, separators=(",", ":")).encode("utf-8")
    encoded = _b64encode(body)
    return f"{encoded}.{_b64encode(_sign(encoded))}"


def get_session(token: str | None, now: float | None = None) -> dict[str, Any] | None:
    if not token:
        return None
    current = time.time() if now is None else now
    try:
        encoded, encoded_sig = token.split(".", 1)
        if not hmac.compare_digest(_sign(encoded), _b64decode(encoded_sig)):
            return None
        decoded_session = json.loads(_b64decode(encoded).decode("utf-8"))
    except (ValueError, UnicodeError):
        return None

    if not isinstance(decoded_session, dict):
        return None
    try:
        expires_at = float(decoded_session.get("expiresAt") or 0.0)
    except (TypeError, ValueError):
        return None
    if current >= expires_at:
        return None
    return decoded_session


def is_admin_session(session: dict[str, Any] | None, now: float | None = None) -> bool:
    if not session:
        return False
    try:
        expires_at = float(session.get("expiresAt") or 0.0)
    except (TypeError, ValueError):
        return False
    if (time.time() if now is None else now) >= expires_at:
        return False
    if str(session.get("role") or "").strip() != ADMIN_ROLE:
        return False
    expected_id = (os.environ.get("ADMIN_ID") or "").strip()
    return bool(expected_id) and session.get("id") == expected_id
