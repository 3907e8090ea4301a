"""Signed tokens for the browser cookie and the local backend's sessions."""

import base64
import hashlib
import hmac
import json
import secrets
import time
from typing import Any, Optional

COOKIE_NAME = "tf_session"

PBKDF2_ITERATIONS = 120_000


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def _b64url_decode(s: str) -> bytes:
    pad = "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode((s + pad).encode("utf-8"))


def sign_payload(payload: dict[str, Any], secret: str) -> str:
    data = json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    sig = hmac.new(secret.encode("utf-8"), data, hashlib.sha256).digest()
    return f"{_b64url_encode(data)}.{_b64url_encode(sig)}"


def verify_payload(token: str, secret: str) -> Optional[dict[str, Any]]:
    """Return the payload when the signature matches and ``exp`` has not passed."""
    try:
        data_b64, sig_b64 = token.split(".", 1)
        data = _b64url_decode(data_b64)
        sig = _b64url_decode(sig_b64)
    except (ValueError, TypeError):
        return None
    expected = hmac.new(secret.encode("utf-8"), data, hashlib.sha256).digest()
    if not hmac.compare_digest(sig, expected):
        return None
    try:
        payload = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    exp = int(payload.get("exp", 0))
    if exp and time.time() > exp:
        return None
    return payload


def issue_browser_cookie(ttl_seconds: int, secret: str) -> tuple[str, str]:
    """Return ``(sid, cookie_value)`` for a fresh browser session."""
    now = int(time.time())
    sid = secrets.token_urlsafe(18)
    payload = {"sid": sid, "iat": now, "exp": now + ttl_seconds, "v": 1}
    return sid, sign_payload(payload, secret)


def read_browser_cookie(value: Optional[str], secret: str) -> Optional[str]:
    if not value:
        return None
    payload = verify_payload(value, secret)
    if not payload:
        return None
    sid = payload.get("sid")
    return str(sid) if sid else None


def hash_password(password: str, salt: Optional[bytes] = None) -> str:
    salt = salt or secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PBKDF2_ITERATIONS)
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${_b64url_encode(salt)}${_b64url_encode(digest)}"


def verify_password(password: str, encoded: str) -> bool:
    try:
        _, iterations, salt_b64, digest_b64 = encoded.split("$", 3)
        salt = _b64url_decode(salt_b64)
        expected = _b64url_decode(digest_b64)
        rounds = int(iterations)
    except (ValueError, TypeError):
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, rounds)
    return hmac.compare_digest(digest, expected)
