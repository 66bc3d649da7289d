"""
Unit tests for the ``/jobs`` Socket.IO namespace.

Handlers are invoked directly with the server's emit and room calls
patched out, so no socket transport is involved.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from serveit.realtime import socketServer
from serveit.realtime.handlers import jobHandler
from serveit.services.auth_service import create_access_token
from serveit.services.bookingStore import BookingStore
from serveit.services.jobSuppression import suppressed_booking_ids
from tests.conftest import PROVIDER_1, PROVIDER_2, raw_booking, seed

pytestmark = pytest.mark.asyncio

SID_1 = "sid-provider-1"
SID_2 = "sid-provider-2"


@pytest_asyncio.fixture
async def emitted(monkeypatch, store: BookingStore):
    """Captured ``(event, payload, sid)`` emits, with handlers bound to ``store``."""
    queue: asyncio.Queue = asyncio.Queue()

    async def fake_emit(event, data, to=None, room=None, namespace=None):
        await queue.put((event, data, to or room))

    monkeypatch.setattr(socketServer.sio, "emit", fake_emit)
    monkeypatch.setattr(socketServer.sio, "enter_room", AsyncMock())
    monkeypatch.setattr(jobHandler, "get_store", lambda: store)
    yield queue
    for sid in (SID_1, SID_2):
        tasks = list(socketServer._sid_tasks.get(sid, ()))
        socketServer.cancel_tasks(sid)
        await asyncio.gather(*tasks, return_exceptions=True)
        socketServer._unregister_connection(sid)


async def _connect(sid, subject, role="provider"):
    token, _ = create_access_token(subject, role=role)
    return await socketServer.connect_jobs(sid, {}, {"token": token})


async def _next_emit(queue, event):
    while True:
        got_event, data, sid = await asyncio.wait_for(queue.get(), timeout=2)
        if got_event == event:
            return data, sid


class TestConnect:
    async def test_valid_token_registers_session(self, emitted):
        assert await _connect(SID_1, PROVIDER_1) is True
        assert socketServer.get_sid_meta(SID_1)["user_id"] == PROVIDER_1
        socketServer.sio.enter_room.assert_awaited_with(SID_1, f"provider_{PROVIDER_1}", namespace="/jobs")

    async def test_bad_or_missing_token_is_refused(self, emitted):
        assert await socketServer.connect_jobs(SID_1, {}, {"token": "garbage"}) is False
        assert await socketServer.connect_jobs(SID_1, {}, None) is False
        assert socketServer.get_sid_meta(SID_1) is None

    async def test_disconnect_cancels_feeds(self, emitted, store):
        await seed(store, raw_booking("bk-1"))
        await _connect(SID_1, PROVIDER_1)
        await jobHandler.handle_watch(SID_1, {"feeds": ["new"]})
        await _next_emit(emitted, "jobs:new")
        [task] = socketServer._sid_tasks[SID_1]

        await socketServer.disconnect_jobs(SID_1)
        await asyncio.gather(task, return_exceptions=True)
        assert task.cancelled()
        assert socketServer.get_sid_meta(SID_1) is None
        assert socketServer.cancel_tasks(SID_1) == 0


class TestWatch:
    async def test_streams_snapshots_and_reacts_to_accept(self, emitted, store):
        await seed(store, raw_booking("bk-1"))
        await _connect(SID_1, PROVIDER_1)
        await _connect(SID_2, PROVIDER_2)

        ack = await jobHandler.handle_watch(SID_2)
        assert ack == {"ok": True, "feeds": ["new", "ongoing"]}
        payload, sid = await _next_emit(emitted, "jobs:new")
        assert sid == SID_2
        assert payload["state"] == "live"
        assert [j["bookingId"] for j in payload["jobs"]] == ["bk-1"]

        accepted = await jobHandler.handle_accept(SID_1, {"bookingId": "bk-1", "providerName": "Ravi"})
        assert accepted["ok"] is True
        assert accepted["outcome"] == "accepted"
        assert accepted["job"]["providerName"] == "Ravi"

        payload, _ = await _next_emit(emitted, "jobs:new")
        assert payload["jobs"] == []

    async def test_unknown_feed(self, emitted):
        await _connect(SID_1, PROVIDER_1)
        ack = await jobHandler.handle_watch(SID_1, {"feeds": ["new", "gossip"]})
        assert ack["ok"] is False
        assert "gossip" in ack["error"]

    async def test_unwatch_reports_cancelled_feeds(self, emitted):
        await _connect(SID_1, PROVIDER_1)
        await jobHandler.handle_watch(SID_1, {"feeds": ["new", "ongoing", "inbox"]})
        assert await jobHandler.handle_unwatch(SID_1) == {"ok": True, "cancelled": 3}

    async def test_non_provider_sessions_are_refused(self, emitted):
        await _connect(SID_1, "order-service", role="system")
        assert (await jobHandler.handle_watch(SID_1))["ok"] is False
        assert (await jobHandler.handle_accept(SID_1, {"bookingId": "bk-1"}))["ok"] is False


class TestAcceptAndReject:
    async def test_loser_gets_already_taken(self, emitted, store):
        await seed(store, raw_booking("bk-1"))
        await _connect(SID_1, PROVIDER_1)
        await _connect(SID_2, PROVIDER_2)

        await jobHandler.handle_accept(SID_1, {"bookingId": "bk-1"})
        lost = await jobHandler.handle_accept(SID_2, {"bookingId": "bk-1"})
        assert lost["ok"] is False
        assert lost["outcome"] == "already_taken"

    async def test_missing_booking_id(self, emitted):
        await _connect(SID_1, PROVIDER_1)
        assert (await jobHandler.handle_accept(SID_1, {}))["error"] == "bookingId is required"
        assert (await jobHandler.handle_reject(SID_1, {}))["error"] == "bookingId is required"

    async def test_reject(self, emitted, store):
        await seed(store, raw_booking("bk-1"))
        await _connect(SID_1, PROVIDER_1)
        ack = await jobHandler.handle_reject(SID_1, {"bookingId": "bk-1"})
        assert ack["ok"] is True
        assert ack["suppressedUntil"]

    async def test_reject_unknown_booking_stores_nothing(self, emitted, store):
        await _connect(SID_1, PROVIDER_1)
        ack = await jobHandler.handle_reject(SID_1, {"bookingId": "nope"})
        assert ack["ok"] is False
        assert ack["outcome"] == "not_found"
        assert await suppressed_booking_ids(store.session_factory, PROVIDER_1) == set()


class TestSendToUser:
    async def test_targets_personal_room(self, emitted):
        await socketServer.send_to_user(PROVIDER_1, "job:offered", {"bookingId": "bk-1"})
        event, data, room = await asyncio.wait_for(emitted.get(), timeout=2)
        assert (event, room) == ("job:offered", f"provider_{PROVIDER_1}")
        assert data == {"bookingId": "bk-1"}
