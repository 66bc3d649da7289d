"""
Shared FastAPI dependencies for the ServeIt partner backend.

Provides the process-wide booking store (engine, session factory, change
notifier) used by all route handlers, and the authentication dependency
that extracts the calling provider from a JWT Bearer token.
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from serveit.core.config import settings
from serveit.services.auth_service import PROVIDER_ROLE, SERVICE_ROLES, TokenIdentity, authenticate_token
from serveit.services.bookingStore import BookingStore
from serveit.services.changeFeed import build_notifier
from serveit.services.inboxService import InboxProjection

# ---------------------------------------------------------------------------
# Async engine, session factory & store
# ---------------------------------------------------------------------------
# Created once at module import time. Every store operation opens its own
# short-lived ``AsyncSession`` so compare-and-swap retries start from a
# fresh read.
# ---------------------------------------------------------------------------

_engine_kwargs: dict[str, Any] = {"echo": settings.sql_echo, "pool_pre_ping": True}
if not settings.database_url.startswith("sqlite"):
    _engine_kwargs.update(
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
    )

engine = create_async_engine(settings.database_url, **_engine_kwargs)

async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

notifier = build_notifier(settings)

booking_store = BookingStore(async_session_factory, notifier)


def get_store() -> BookingStore:
    """Return the booking store. Overridden in tests."""
    return booking_store


def get_inbox(store: Annotated[BookingStore, Depends(get_store)]) -> InboxProjection:
    return InboxProjection(store)


# ---------------------------------------------------------------------------
# Annotated type aliases for convenience
# ---------------------------------------------------------------------------
Store = Annotated[BookingStore, Depends(get_store)]
Inbox = Annotated[InboxProjection, Depends(get_inbox)]


# ---------------------------------------------------------------------------
# Authentication dependencies
# ---------------------------------------------------------------------------

_bearer_scheme = HTTPBearer(auto_error=True)


async def get_token_identity(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(_bearer_scheme)],
) -> TokenIdentity:
    """Extract and validate a Bearer token from the Authorization header.

    Raises 401 if the token is missing, expired, or invalid.
    """
    try:
        return authenticate_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_provider(
    identity: Annotated[TokenIdentity, Depends(get_token_identity)],
) -> str:
    """Return the authenticated provider ID, or 403 for non-provider tokens."""
    if identity.role != PROVIDER_ROLE:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Provider access required.",
        )
    return identity.subject


async def get_current_service(
    identity: Annotated[TokenIdentity, Depends(get_token_identity)],
) -> TokenIdentity:
    """Require a backend (system or admin) caller."""
    if identity.role not in SERVICE_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Service access required.",
        )
    return identity


CurrentProvider = Annotated[str, Depends(get_current_provider)]
CurrentService = Annotated[TokenIdentity, Depends(get_current_service)]
