"""Bearer-token dependencies shared by the generation and billing routers."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.user_id in set(settings.ADMIN_USER_IDS or [])


def ensure_user_scope(auth_user_id: str, supplied_user_id: Optional[str]) -> str:
    """Resolve the user a request acts on; only the session's own user is allowed."""
    if supplied_user_id and supplied_user_id != auth_user_id:
        raise HTTPException(status_code=403, detail="user_id does not match authenticated session.")
    return auth_user_id


def ensure_admin(auth: AuthContext) -> None:
    if not auth.is_admin:
        raise HTTPException(status_code=403, detail="Admin privileges required.")


async def get_auth_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
) -> AuthContext:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(user_id=str(payload["sub"]), email=payload.get("email") or None)


async def get_admin_context(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
    """Session context for ledger corrections; callers must be listed in ADMIN_USER_IDS."""
    ensure_admin(auth)
    return auth
