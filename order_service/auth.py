"""Bearer-token identity for incoming requests.

Tokens are issued by the storefront auth service and verified here with
the shared HS256 secret. Claims: ``userId``, ``email``, ``role``.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, Header

from . import config
from .errors import AuthenticationError, AuthorizationError
from .models import UserRole


@dataclass(frozen=True)
class Identity:
    user_id: int
    email: Optional[str]
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


def issue_token(user_id: int, email: str, role: str, expires_in: int = 86400) -> str:
    """Sign a token with the shared secret. Used by tests and the smoke script."""
    payload = {
        "userId": str(user_id),
        "email": email,
        "role": role.upper(),
        "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def decode_token(token: str) -> Identity:
    try:
        claims = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
        return Identity(
            user_id=int(claims["userId"]),
            email=claims.get("email"),
            role=UserRole(str(claims.get("role", "USER")).upper()),
        )
    except (jwt.PyJWTError, KeyError, ValueError):
        raise AuthenticationError("invalid or expired token") from None


def get_current_identity(authorization: Optional[str] = Header(default=None)) -> Identity:
    """FastAPI dependency: verified caller identity from the Authorization header."""
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("missing bearer token")
    identity = decode_token(authorization.split(" ", 1)[1].strip())
    if identity.role == UserRole.DISABLED:
        raise AuthorizationError("account is disabled")
    return identity


def require_admin(identity: Identity = Depends(get_current_identity)) -> Identity:
    if not identity.is_admin:
        raise AuthorizationError("administrator access required")
    return identity
