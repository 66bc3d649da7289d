"""
Authentication service -- provider access tokens.

Tokens are issued by the partner login flow (phone OTP, handled by the
identity provider) and carry the provider ID in ``sub`` and the caller's
role in ``role``. This module only mints and verifies them.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt

from serveit.core.config import settings

# ---------------------------------------------------------------------------
# JWT token generation
# ---------------------------------------------------------------------------

ACCESS_TOKEN_EXPIRE_MINUTES = 60

PROVIDER_ROLE = "provider"

# Backend callers (order placement, matching) that create and dispatch bookings
SERVICE_ROLES = frozenset({"system", "admin"})


@dataclass(frozen=True)
class TokenIdentity:
    subject: str
    role: str


def create_access_token(
    provider_id: str,
    *,
    role: str = PROVIDER_ROLE,
    expires_in: timedelta | None = None,
) -> tuple[str, datetime]:
    """Create a short-lived access token.

    Returns:
        Tuple of (token_string, expiration_datetime).
    """
    now = datetime.now(timezone.utc)
    expires_at = now + (expires_in or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    payload = {
        "sub": provider_id,
        "role": role,
        "type": "access",
        "exp": expires_at,
        "iat": now,
        "jti": str(uuid.uuid4()),
    }
    token = jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return token, expires_at


def decode_token(token: str) -> dict:
    """Decode and verify a JWT token.

    Raises:
        jwt.ExpiredSignatureError: If the token has expired.
        jwt.InvalidTokenError: If the token is otherwise invalid.
    """
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[settings.jwt_algorithm],
    )


def authenticate_token(token: str) -> TokenIdentity:
    """Validate an access token and return who it identifies.

    Raises:
        ValueError: If the token is invalid, expired, or missing claims.
    """
    try:
        payload = decode_token(token)
    except jwt.ExpiredSignatureError:
        raise ValueError("Access token has expired. Please log in again.")
    except jwt.InvalidTokenError:
        raise ValueError("Invalid access token.")

    if payload.get("type", "access") != "access":
        raise ValueError("Invalid token type. Expected an access token.")

    subject = payload.get("sub")
    role = payload.get("role")
    if not subject or not role:
        raise ValueError("Invalid access token: missing subject or role.")
    return TokenIdentity(subject=str(subject), role=str(role))
