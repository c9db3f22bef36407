"""Identity propagation from upstream-issued JWT bearer tokens.

Authentication happens before a request reaches the governance core. The
platform forwards a bearer token whose ``sub`` claim is the user id and whose
``roles`` claim lists the user's role names; this module only decodes it.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from governance_core.core.config import Settings

# JWT bearer scheme
security_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class RequestIdentity:
    """Already-authenticated caller."""

    user_id: Optional[str]
    roles: List[str] = field(default_factory=list)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_id: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id)


def get_settings_from_app(request: Request) -> Settings:
    """FastAPI dependency returning the settings bound to the running app."""
    return request.app.state.settings


def decode_token(token: str, settings: Settings) -> dict:
    """Decode and validate a JWT token."""
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )


def identity_from_claims(payload: dict) -> RequestIdentity:
    roles = payload.get("roles") or []
    if isinstance(roles, str):
        roles = [roles]
    # single-role tokens carry "role"
    if not roles and payload.get("role"):
        roles = [payload["role"]]
    sub = payload.get("sub")
    return RequestIdentity(user_id=str(sub) if sub is not None else None, roles=list(roles))


async def get_identity(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_scheme),
    settings: Settings = Depends(get_settings_from_app),
) -> RequestIdentity:
    """Extract the caller identity from the JWT Bearer token."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    payload = decode_token(credentials.credentials, settings)
    identity = identity_from_claims(payload)
    if not identity.is_authenticated:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )
    request.state.actor_id = identity.user_id
    return RequestIdentity(
        user_id=identity.user_id,
        roles=identity.roles,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent", "")[:500],
        request_id=getattr(request.state, "request_id", None),
    )
