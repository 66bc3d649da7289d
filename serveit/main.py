"""ServeIt Partner API -- Main Application Entry Point

Creates the FastAPI application, configures CORS middleware, registers
all API route modules under the /api/v1 prefix, and mounts the Socket.IO
ASGI application for the live job feeds.

Run with::

    uvicorn serveit.main:app --host 0.0.0.0 --port 8000 --reload
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from serveit.core.config import settings
from serveit.services.bookingStore import TransientStoreError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Startup:
      - Configure logging from ``settings.log_level``.
      - Import realtime handlers to register Socket.IO event listeners.

    Shutdown:
      - Close the change notifier and dispose of the database engine.
    """
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # Importing handlers is sufficient to register all Socket.IO events
    from serveit.realtime import handlers  # noqa: F401

    yield

    from serveit.api.deps import engine, notifier

    try:
        await notifier.close()
    except OSError as exc:
        logger.warning("Error closing change notifier: %s", exc)
    await engine.dispose()


# ---------------------------------------------------------------------------
# Application instance
# ---------------------------------------------------------------------------

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# CORS middleware
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------

@app.exception_handler(TransientStoreError)
async def transient_store_error_handler(request: Request, exc: TransientStoreError) -> JSONResponse:
    """The store failed before an outcome was known; the client may retry."""
    logger.error("Transient store error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": {"outcome": "unavailable", "message": "Service temporarily unavailable"}},
        headers={"Retry-After": "1"},
    )


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@app.get("/health", tags=["Health"])
async def health():
    """Lightweight health check for load balancers and readiness checks."""
    return {"status": "ok", "version": settings.app_version}


# ---------------------------------------------------------------------------
# Register API route modules
# ---------------------------------------------------------------------------

from serveit.api.routes import bookings, jobs, providers, routing, worklog  # noqa: E402

_prefix = settings.api_v1_prefix

app.include_router(bookings.router, prefix=_prefix)
app.include_router(jobs.router, prefix=_prefix)
app.include_router(providers.router, prefix=_prefix)
app.include_router(routing.router, prefix=_prefix)
app.include_router(worklog.router, prefix=_prefix)


# ---------------------------------------------------------------------------
# Mount Socket.IO ASGI application
# ---------------------------------------------------------------------------

from serveit.realtime.socketServer import socket_app  # noqa: E402

app.mount("/ws", socket_app)
