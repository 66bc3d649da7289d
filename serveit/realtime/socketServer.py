"""
WebSocket Server
================

Socket.IO server for the ServeIt partner app. Streams the provider's live
job feeds and accepts jobs over the ``/jobs`` namespace.

Architecture:
  - python-socketio AsyncServer mounted as ASGI middleware on FastAPI
  - Optional Redis adapter for horizontal scaling across server instances
  - JWT authentication on connect, extracting user_id and role
  - Room-based routing: ``{role}_{user_id}`` personal rooms

Connection lifecycle:
  1. Client connects with ``auth: { token: "<jwt>" }``
  2. Server validates the JWT and joins the personal room
  3. Client starts live feeds with ``jobs:watch``
  4. On disconnect, the session's feed tasks are cancelled
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import socketio

from serveit.core.config import settings
from serveit.services.auth_service import TokenIdentity, authenticate_token

logger = logging.getLogger(__name__)

NAMESPACE = "/jobs"


# ---------------------------------------------------------------------------
# Socket.IO server instance
# ---------------------------------------------------------------------------

# Redis-backed manager only when several instances share clients
client_manager = (
    socketio.AsyncRedisManager(settings.redis_url, write_only=False)
    if settings.ws_redis_manager_enabled
    else None
)

sio = socketio.AsyncServer(
    async_mode="asgi",
    cors_allowed_origins=settings.ws_cors_allowed_origins,
    client_manager=client_manager,
    logger=False,
    engineio_logger=False,
    ping_timeout=settings.ws_ping_timeout,
    ping_interval=settings.ws_ping_interval,
    max_http_buffer_size=1_000_000,  # 1 MB
    namespaces=[NAMESPACE],
)


# ---------------------------------------------------------------------------
# Session registry: sid -> identity, sid -> running feed tasks.
# Delivery to a user goes through their personal room, so no reverse map.
# ---------------------------------------------------------------------------

_sid_meta: dict[str, dict[str, Any]] = {}
_sid_tasks: dict[str, set[asyncio.Task]] = {}


def get_sid_meta(sid: str) -> dict[str, Any] | None:
    return _sid_meta.get(sid)


def _register_connection(sid: str, identity: TokenIdentity) -> None:
    _sid_meta[sid] = {"user_id": identity.subject, "role": identity.role}


def _unregister_connection(sid: str) -> str | None:
    """Forget a session. Returns its user_id, or None if it was unknown."""
    meta = _sid_meta.pop(sid, None)
    return meta["user_id"] if meta else None


def track_task(sid: str, task: asyncio.Task) -> None:
    """Tie a background task to a session so disconnect cancels it."""
    tasks = _sid_tasks.setdefault(sid, set())
    tasks.add(task)
    task.add_done_callback(tasks.discard)


def cancel_tasks(sid: str) -> int:
    tasks = _sid_tasks.pop(sid, set())
    for task in tasks:
        task.cancel()
    return len(tasks)


# ---------------------------------------------------------------------------
# JWT authentication helper
# ---------------------------------------------------------------------------

def _authenticate(auth: dict[str, Any] | None) -> Optional[TokenIdentity]:
    token = (auth or {}).get("token")
    if not token:
        return None
    try:
        return authenticate_token(token)
    except ValueError as exc:
        logger.warning("Socket authentication failed: %s", exc)
        return None


# ---------------------------------------------------------------------------
# /jobs connect / disconnect
# ---------------------------------------------------------------------------

@sio.on("connect", namespace=NAMESPACE)
async def connect_jobs(sid: str, environ: dict[str, Any], auth: dict[str, Any] | None = None) -> bool:
    """Authenticate on /jobs. Returns ``False`` to reject the connection."""
    identity = _authenticate(auth)
    if identity is None:
        logger.info("Rejected /jobs connect for sid=%s", sid)
        return False
    _register_connection(sid, identity)
    personal_room = f"{identity.role}_{identity.subject}"
    await sio.enter_room(sid, personal_room, namespace=NAMESPACE)
    logger.info("Connected /jobs: sid=%s user_id=%s role=%s", sid, identity.subject, identity.role)
    return True


@sio.on("disconnect", namespace=NAMESPACE)
async def disconnect_jobs(sid: str) -> None:
    cancelled = cancel_tasks(sid)
    user_id = _unregister_connection(sid)
    logger.info("Disconnected /jobs: sid=%s user_id=%s feeds_cancelled=%d", sid, user_id, cancelled)


# ---------------------------------------------------------------------------
# High-level send helper
# ---------------------------------------------------------------------------

async def send_to_user(
    user_id: str,
    event: str,
    data: dict[str, Any],
    *,
    role: str = "provider",
) -> None:
    """Send an event to every connected session of a user."""
    personal_room = f"{role}_{user_id}"
    await sio.emit(event, data, room=personal_room, namespace=NAMESPACE)
    logger.debug("Sent %s to room=%s", event, personal_room)


# ---------------------------------------------------------------------------
# ASGI app for mounting onto FastAPI
# ---------------------------------------------------------------------------

socket_app = socketio.ASGIApp(
    socketio_server=sio,
    socketio_path="/ws/socket.io",
)
