"""
E2E: provider work log through the HTTP API.

Accepts a job, arrives, then drives the timer, notes and completion
checklist the way the partner app does on site.
"""

from __future__ import annotations

import pytest
from httpx import AsyncClient

from tests.conftest import PROVIDER_1, PROVIDER_2, raw_booking
from tests.e2e.conftest import (
    API,
    auth_headers,
    dispatch_via_api,
    ingest_via_api,
    system_headers,
    transition_via_api,
)

pytestmark = pytest.mark.asyncio


async def _arrive(client: AsyncClient, booking_id: str = "bk-1") -> None:
    await ingest_via_api(client, raw_booking(booking_id, serviceName="Plumbing"))
    await dispatch_via_api(client, booking_id, PROVIDER_1, PROVIDER_2)
    resp = await client.post(f"{API}/jobs/{booking_id}/accept", headers=auth_headers(PROVIDER_1))
    assert resp.status_code == 200, resp.text
    resp = await transition_via_api(client, booking_id, PROVIDER_1, "arrived")
    assert resp.status_code == 200, resp.text


class TestTimerApi:
    async def test_start_pause_resume_stop(self, client: AsyncClient):
        await _arrive(client)
        headers = auth_headers(PROVIDER_1)

        for action in ("start", "pause", "resume", "stop"):
            resp = await client.post(f"{API}/jobs/bk-1/timer/{action}", headers=headers)
            assert resp.status_code == 200, (action, resp.text)

        body = resp.json()
        assert body["isRunning"] is False
        assert body["totalDurationMs"] == body["elapsedMs"]
        assert len(body["pauses"]) == 1
        assert body["pauses"][0]["endedAt"] is not None

        resp = await client.get(f"{API}/jobs/bk-1/timer", headers=headers)
        assert resp.json()["endedAt"] is not None

    async def test_conflicts_and_bad_actions(self, client):
        await _arrive(client)
        headers = auth_headers(PROVIDER_1)

        resp = await client.post(f"{API}/jobs/bk-1/timer/resume", headers=headers)
        assert resp.status_code == 409
        assert resp.json()["detail"]["outcome"] == "timer_not_started"

        resp = await client.post(f"{API}/jobs/bk-1/timer/rewind", headers=headers)
        assert resp.status_code == 422

    async def test_other_provider_is_forbidden(self, client):
        await _arrive(client)
        resp = await client.post(f"{API}/jobs/bk-1/timer/start", headers=auth_headers(PROVIDER_2))
        assert resp.status_code == 403
        assert resp.json()["detail"]["outcome"] == "not_assigned"

        resp = await client.get(f"{API}/jobs/nope/timer", headers=auth_headers(PROVIDER_1))
        assert resp.status_code == 404


class TestNotesApi:
    async def test_add_and_list(self, client: AsyncClient):
        await _arrive(client)
        headers = auth_headers(PROVIDER_1)

        resp = await client.post(
            f"{API}/jobs/bk-1/notes", json={"note": "Leak under sink", "type": "issue"}, headers=headers,
        )
        assert resp.status_code == 201, resp.text
        assert resp.json()["type"] == "issue"

        await client.post(
            f"{API}/jobs/bk-1/notes",
            json={"note": "Bring spare washer", "visibleToCustomer": False},
            headers=headers,
        )

        resp = await client.get(f"{API}/jobs/bk-1/notes", headers=headers)
        assert [n["note"] for n in resp.json()["notes"]] == ["Leak under sink", "Bring spare washer"]

        resp = await client.get(f"{API}/jobs/bk-1/notes/customer", headers=system_headers())
        assert [n["note"] for n in resp.json()["notes"]] == ["Leak under sink"]

    async def test_blank_note_and_provider_on_internal_route(self, client):
        await _arrive(client)
        headers = auth_headers(PROVIDER_1)

        resp = await client.post(f"{API}/jobs/bk-1/notes", json={"note": "   "}, headers=headers)
        assert resp.status_code == 422
        assert resp.json()["detail"]["outcome"] == "invalid_note"

        resp = await client.get(f"{API}/jobs/bk-1/notes/customer", headers=headers)
        assert resp.status_code == 403


class TestChecklistApi:
    async def test_create_and_tick(self, client: AsyncClient):
        await _arrive(client)
        headers = auth_headers(PROVIDER_1)

        resp = await client.get(f"{API}/jobs/bk-1/checklist", headers=headers)
        assert resp.status_code == 404

        resp = await client.post(f"{API}/jobs/bk-1/checklist", headers=headers)
        assert resp.status_code == 200, resp.text
        assert [i["id"] for i in resp.json()["items"]] == [
            "leak_check", "pressure_test", "fixtures_test", "cleanup",
        ]

        for item_id in ("leak_check", "pressure_test", "fixtures_test"):
            resp = await client.patch(
                f"{API}/jobs/bk-1/checklist/items/{item_id}", json={"completed": True}, headers=headers,
            )
            assert resp.status_code == 200, resp.text
        assert resp.json()["allRequiredCompleted"] is True

        resp = await client.patch(
            f"{API}/jobs/bk-1/checklist/items/nope", json={"completed": True}, headers=headers,
        )
        assert resp.status_code == 404
        assert resp.json()["detail"]["outcome"] == "item_not_found"
