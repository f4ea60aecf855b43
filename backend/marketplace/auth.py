import base64
import hashlib
import hmac
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Header, HTTPException, status

from marketplace.models import Principal

ROLES = {"client", "provider", "inspector", "admin"}


def _token_ttl_hours() -> int:
    raw = os.getenv("AUTH_TOKEN_TTL_HOURS", "24")
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return 24
    return value if value > 0 else 24


TOKEN_TTL_HOURS = _token_ttl_hours()
_AUTH_SECRET = os.getenv("AUTH_SECRET", "dev-insecure-secret-change-me")


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _b64urldecode(value: str) -> bytes:
    padding = "=" * ((4 - len(value) % 4) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("utf-8"))


def _sign(payload: bytes) -> bytes:
    return hmac.new(_AUTH_SECRET.encode("utf-8"), payload, hashlib.sha256).digest()


def create_access_token(user_id: str, role: str) -> tuple[str, str]:
    if role not in ROLES:
        raise ValueError(f"Unknown role: {role}")
    if "|" in user_id:
        raise ValueError("user_id cannot contain '|'")
    expiry = datetime.now(timezone.utc) + timedelta(hours=TOKEN_TTL_HOURS)
    payload = f"{user_id}|{role}|{int(expiry.timestamp())}".encode("utf-8")
    token = f"{_b64url(payload)}.{_b64url(_sign(payload))}"
    return token, expiry.isoformat()


def verify_access_token(token: str) -> Optional[Principal]:
    try:
        payload_part, sig_part = token.split(".", 1)
        payload = _b64urldecode(payload_part)
        sent_sig = _b64urldecode(sig_part)
        if not hmac.compare_digest(sent_sig, _sign(payload)):
            return None
        user_id, role, expiry_ts = payload.decode("utf-8").split("|", 2)
        if datetime.now(timezone.utc).timestamp() > int(expiry_ts):
            return None
        if not user_id or role not in ROLES:
            return None
        return Principal(id=user_id, role=role)  # type: ignore[arg-type]
    except (ValueError, UnicodeDecodeError):
        return None


def parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def resolve_principal(authorization: Optional[str]) -> Optional[Principal]:
    token = parse_bearer_token(authorization)
    if not token:
        return None
    return verify_access_token(token)


def require_principal(authorization: Optional[str] = Header(default=None)) -> Principal:
    principal = resolve_principal(authorization)
    if principal is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing bearer token")
    return principal
