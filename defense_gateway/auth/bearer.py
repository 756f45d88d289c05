"""
Request Defense Gateway — Bearer credential verification.

Access tokens are HS256 JWTs issued by the platform's identity provider
with the user id in ``sub`` and an optional ``role`` claim.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError

from defense_gateway.config import Settings
from defense_gateway.errors import AuthError


@dataclass(frozen=True)
class AuthenticatedUser:
    id: str
    role: Optional[str] = None

    def is_admin(self, admin_role: str) -> bool:
        return self.role == admin_role


def extract_bearer(authorization: Optional[str]) -> str:
    """Token part of an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        raise AuthError("Missing authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthError("Invalid authorization header")
    return token.strip()


def verify_bearer(authorization: Optional[str], cfg: Settings) -> AuthenticatedUser:
    """Verify the header's JWT and return the user it names."""
    token = extract_bearer(authorization)
    try:
        payload = jwt.decode(
            token,
            cfg.jwt_secret,
            algorithms=[cfg.jwt_algorithm],
            options={"require": ["sub", "exp"]},
        )
    except ExpiredSignatureError:
        raise AuthError("Token has expired") from None
    except InvalidTokenError:
        raise AuthError("Invalid authentication token") from None

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        raise AuthError("Invalid token payload")
    return AuthenticatedUser(id=subject, role=payload.get("role"))


def create_access_token(
    user_id: str,
    cfg: Settings,
    role: Optional[str] = None,
    expires_in: timedelta = timedelta(hours=1),
) -> str:
    """Mint an access token (local development and tests)."""
    now = datetime.now(timezone.utc)
    claims = {"sub": user_id, "iat": now, "exp": now + expires_in}
    if role:
        claims["role"] = role
    return jwt.encode(claims, cfg.jwt_secret, algorithm=cfg.jwt_algorithm)
