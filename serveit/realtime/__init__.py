"""
ServeIt Real-time Module
========================

WebSocket server and event handlers for the partner app's live feeds.

Usage in FastAPI app startup::

    from serveit.realtime import socket_app
    app.mount("/ws", socket_app)

The ``handlers`` sub-package registers the Socket.IO event handlers as a
side-effect of import.
"""

from __future__ import annotations

from .socketServer import send_to_user, sio, socket_app

# Importing handlers registers the Socket.IO event listeners
from . import handlers  # noqa: F401

__all__ = [
    "sio",
    "socket_app",
    "send_to_user",
    "handlers",
]
