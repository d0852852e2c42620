"""Request principal resolution for ledger routes."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings
from services.session_token import decode_session_token


bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthContext:
    principal_id: str
    is_guest: bool = False
    email: Optional[str] = None


def is_guest_identity(principal_id: str, email: Optional[str] = None) -> bool:
    prefix = settings.GUEST_EMAIL_PREFIX
    if not prefix:
        return False
    return principal_id.startswith(prefix) or bool(email and email.startswith(prefix))


async def get_auth_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> AuthContext:
    """Principal from the Bearer token. Guest-prefixed identities are always guests."""
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        claims = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    principal_id = str(claims["sub"]).strip()
    email = str(claims.get("email") or "").strip() or None
    return AuthContext(
        principal_id=principal_id,
        is_guest=bool(claims.get("guest")) or is_guest_identity(principal_id, email),
        email=email,
    )


async def require_registered_user(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if auth.is_guest:
        raise HTTPException(status_code=403, detail="A registered account is required.")
    return auth
