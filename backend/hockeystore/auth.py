"""
Bearer Token Consumption

Tokens are issued by the login service; this module only verifies them and
exposes the embedded user id and role to route handlers.

Claims used:
- id: user identifier
- type: "user" or "admin"
"""
import logging
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import Settings
from .exceptions import AuthenticationError, PermissionDeniedError

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthenticatedUser:
    user_id: str
    role: str = "user"
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def decode_access_token(token: str, settings: Settings) -> AuthenticatedUser:
    """
    Verify signature and expiry, then extract the user.

    Raises:
        PermissionDeniedError: Token invalid, expired or missing the id claim
    """
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError as e:
        logger.warning(f"Rejected bearer token: {e}")
        raise PermissionDeniedError("Invalid token") from e

    user_id = claims.get("id")
    if not user_id:
        raise PermissionDeniedError("Invalid token", details={"reason": "missing id claim"})

    return AuthenticatedUser(
        user_id=str(user_id),
        role=claims.get("type", "user"),
        email=claims.get("email"),
    )


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings)
) -> AuthenticatedUser:
    """FastAPI dependency: 401 without a token, 403 with a bad one."""
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("No token provided")
    return decode_access_token(credentials.credentials, settings)


async def require_admin(user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
    if not user.is_admin:
        raise PermissionDeniedError("Admin access required")
    return user
