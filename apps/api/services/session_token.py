"""Bearer tokens for the two kinds of ledger principal: registered users and guest sessions."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import uuid

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "ledger_session"


def new_guest_id() -> str:
    """Principal id for a fresh anonymous session."""
    return f"{settings.GUEST_EMAIL_PREFIX}{uuid.uuid4()}"


def _sign(claims: Dict[str, Any], ttl_hours: int) -> Dict[str, Any]:
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(hours=max(int(ttl_hours), 1))
    claims.update(
        {
            "type": SESSION_TOKEN_TYPE,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
    )
    token = jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return {
        "token": token,
        "principal_id": claims["sub"],
        "expires_at": int(expires_at.timestamp()),
    }


def issue_user_token(
    user_id: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    claims: Dict[str, Any] = {"sub": user_id, "guest": False}
    if email:
        claims["email"] = email
    return _sign(claims, expires_hours or settings.JWT_EXPIRATION_HOURS or 24)


def issue_guest_token(guest_id: Optional[str] = None) -> Dict[str, Any]:
    """Guest tokens live exactly as long as the guest balance does."""
    return _sign(
        {"sub": guest_id or new_guest_id(), "guest": True},
        settings.GUEST_SESSION_TTL_HOURS,
    )


def decode_session_token(token: str) -> Dict[str, Any]:
    """Decode and validate a signed session token."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(payload.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")

    subject = str(payload.get("sub", "")).strip()
    if not subject:
        raise ValueError("Session token missing subject.")

    if not isinstance(payload.get("guest", False), bool):
        raise ValueError("Session token has a malformed guest claim.")
    if payload.get("guest") and not subject.startswith(settings.GUEST_EMAIL_PREFIX):
        raise ValueError("Guest session token has a non-guest subject.")

    return payload
