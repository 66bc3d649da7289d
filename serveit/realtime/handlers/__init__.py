"""
ServeIt Real-time Handlers
==========================

WebSocket event handlers for the ``/jobs`` namespace (jobHandler).

Importing this module registers all event handlers with the shared
Socket.IO server instance.
"""

from __future__ import annotations

from . import jobHandler

__all__ = [
    "jobHandler",
]
