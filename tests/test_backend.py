"""Unit tests for HttpAvailabilityBackend (httpx.MockTransport)."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import httpx
import pytest

from rehearsal_sync.backend import HttpAvailabilityBackend
from rehearsal_sync.errors import BackendRequestError, TransientIOError
from rehearsal_sync.models import AvailabilitySlot, SlotSource, SlotUpdate

pytestmark = pytest.mark.unit

BASE_URL = "https://api.example.test/v1"


def _slot_payload(slot_id: str, event_id: str | None = None, **overrides) -> dict:
    payload = {
        "id": slot_id,
        "startsAt": "2025-03-02T09:00:00.000Z",
        "endsAt": "2025-03-02T09:30:00.000Z",
        "type": "busy",
        "source": "apple_calendar" if event_id else "manual",
        "externalEventId": event_id,
        "title": "Standup",
        "isAllDay": False,
    }
    payload.update(overrides)
    return payload


def _backend(
    handler: Callable[[httpx.Request], httpx.Response], **kwargs
) -> HttpAvailabilityBackend:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpAvailabilityBackend(BASE_URL, http_client=client, **kwargs)


@pytest.fixture
def no_sleep(monkeypatch) -> AsyncMock:
    sleep = AsyncMock()
    monkeypatch.setattr("rehearsal_sync.backend.asyncio.sleep", sleep)
    return sleep


class TestListSlots:
    async def test_parses_bare_list(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=[_slot_payload("s1", "e1"), _slot_payload("s2")])

        slots = await _backend(handler, api_token="secret").get_all_availability_slots()

        assert [s.id for s in slots] == ["s1", "s2"]
        assert slots[0].is_imported
        assert not slots[1].is_imported
        assert requests[0].method == "GET"
        assert str(requests[0].url) == f"{BASE_URL}/availability"
        assert requests[0].headers["Authorization"] == "Bearer secret"

    async def test_parses_wrapped_list(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"availability": [_slot_payload("s1", "e1")]})

        slots = await _backend(handler).get_all_availability_slots()
        assert [s.external_event_id for s in slots] == ["e1"]

    async def test_skips_malformed_entries(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, json=[_slot_payload("s1", "e1"), {"id": "broken"}, "not-a-slot"]
            )

        slots = await _backend(handler).get_all_availability_slots()
        assert [s.id for s in slots] == ["s1"]

    async def test_non_list_payload_is_transient_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"unexpected": True})

        with pytest.raises(TransientIOError):
            await _backend(handler).get_all_availability_slots()


class TestWrites:
    async def test_bulk_create_posts_camel_case_and_returns_created(self):
        captured: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["method"] = request.method
            captured["path"] = request.url.path
            captured["body"] = json.loads(request.content)
            return httpx.Response(201, json={"slots": [_slot_payload("s9", "e1")]})

        slot = AvailabilitySlot(
            starts_at=datetime(2025, 3, 2, 9, 0, tzinfo=UTC),
            ends_at=datetime(2025, 3, 2, 9, 30, tzinfo=UTC),
            source=SlotSource.apple_calendar,
            external_event_id="e1",
            title="Standup",
        )
        created = await _backend(handler).bulk_create_slots([slot])

        assert captured["method"] == "POST"
        assert captured["path"] == "/v1/availability/imported"
        sent = captured["body"]["slots"][0]
        assert sent["externalEventId"] == "e1"
        assert sent["startsAt"] == "2025-03-02T09:00:00.000Z"
        assert [s.id for s in created] == ["s9"]

    async def test_bulk_create_without_body_returns_input(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(204)

        slot = AvailabilitySlot(
            starts_at=datetime(2025, 3, 2, 9, 0, tzinfo=UTC),
            ends_at=datetime(2025, 3, 2, 9, 30, tzinfo=UTC),
            source=SlotSource.apple_calendar,
            external_event_id="e1",
        )
        assert await _backend(handler).bulk_create_slots([slot]) == [slot]

    async def test_bulk_update_and_delete_payloads(self):
        seen: list[tuple[str, str, dict | None]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content) if request.content else None
            seen.append((request.method, request.url.path, body))
            return httpx.Response(200, json={"ok": True})

        backend = _backend(handler)
        await backend.bulk_update_slots(
            [
                SlotUpdate(
                    external_event_id="e1",
                    starts_at=datetime(2025, 3, 2, 10, 0, tzinfo=UTC),
                    ends_at=datetime(2025, 3, 2, 11, 0, tzinfo=UTC),
                    title="Standup",
                )
            ]
        )
        await backend.bulk_delete_slots_by_external_id(["e2", "e3"])
        await backend.delete_all_imported_slots()

        assert seen[0][0:2] == ("PUT", "/v1/availability/imported")
        assert seen[0][2]["updates"][0]["externalEventId"] == "e1"
        assert seen[1] == (
            "POST",
            "/v1/availability/imported/delete",
            {"externalEventIds": ["e2", "e3"]},
        )
        assert seen[2] == ("DELETE", "/v1/availability/imported", None)

    async def test_empty_batches_make_no_request(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        backend = _backend(handler)
        assert await backend.bulk_create_slots([]) == []
        await backend.bulk_update_slots([])
        await backend.bulk_delete_slots_by_external_id([])


class TestErrors:
    async def test_non_2xx_raises_sanitized_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                400, json={"error": {"message": "bad token=abc123 for Bearer xyz.987"}}
            )

        with pytest.raises(BackendRequestError) as exc_info:
            await _backend(handler).get_all_availability_slots()

        assert exc_info.value.status_code == 400
        assert "abc123" not in str(exc_info.value)
        assert "xyz.987" not in str(exc_info.value)
        assert "[REDACTED]" in exc_info.value.message

    async def test_error_message_truncated(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="x" * 1000)

        with pytest.raises(BackendRequestError) as exc_info:
            await _backend(handler).delete_all_imported_slots()
        assert len(exc_info.value.message) == 200

    async def test_network_error_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientIOError, match="connection refused"):
            await _backend(handler).get_all_availability_slots()

    async def test_retries_rate_limit_honouring_retry_after(self, no_sleep: AsyncMock):
        responses = iter(
            [
                httpx.Response(429, headers={"Retry-After": "7"}),
                httpx.Response(503),
                httpx.Response(200, json=[]),
            ]
        )

        def handler(request: httpx.Request) -> httpx.Response:
            return next(responses)

        assert await _backend(handler).get_all_availability_slots() == []
        assert [call.args[0] for call in no_sleep.await_args_list] == [7.0, 2.0]

    async def test_gives_up_after_max_retries(self, no_sleep: AsyncMock):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(503, text="maintenance")

        with pytest.raises(BackendRequestError) as exc_info:
            await _backend(handler).get_all_availability_slots()
        assert exc_info.value.status_code == 503
        assert calls == 4
        assert no_sleep.await_count == 3


class TestLifecycle:
    async def test_shutdown_closes_owned_client_only(self):
        external = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        await HttpAvailabilityBackend(BASE_URL, http_client=external).shutdown()
        assert not external.is_closed

        owned = HttpAvailabilityBackend(BASE_URL)
        await owned.shutdown()
        assert owned._http_client.is_closed
