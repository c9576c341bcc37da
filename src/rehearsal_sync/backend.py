"""Availability backend contract and its HTTP client.

The backend owns availability slots.  The import pipeline only ever touches
slots created from a device calendar (``source`` apple/google calendar with
an ``externalEventId``); the bulk endpoints below are scoped accordingly.

HTTP endpoints used by ``HttpAvailabilityBackend``::

    GET    /availability                    -> [AvailabilitySlot]
    POST   /availability/imported           {"slots": [...]}            -> {"slots": [...]}
    PUT    /availability/imported           {"updates": [...]}
    POST   /availability/imported/delete    {"externalEventIds": [...]}
    DELETE /availability/imported
"""

from __future__ import annotations

import abc
import asyncio
import logging
import re
from collections.abc import Sequence
from typing import Any

import httpx
from pydantic import ValidationError

from rehearsal_sync.errors import BackendRequestError, TransientIOError
from rehearsal_sync.models import AvailabilitySlot, SlotUpdate

logger = logging.getLogger(__name__)

# Retry on 429 Too Many Requests and 503 Service Unavailable with exponential backoff.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0
DEFAULT_TIMEOUT_SECONDS = 30.0


class AvailabilityBackend(abc.ABC):
    """Backend operations consumed by the import pipeline."""

    @abc.abstractmethod
    async def get_all_availability_slots(self) -> list[AvailabilitySlot]:
        """Return every slot of the current user."""
        ...

    @abc.abstractmethod
    async def bulk_create_slots(self, slots: Sequence[AvailabilitySlot]) -> list[AvailabilitySlot]:
        """Create imported slots and return them as stored (with backend ids)."""
        ...

    @abc.abstractmethod
    async def bulk_update_slots(self, updates: Sequence[SlotUpdate]) -> None:
        """Update imported slots identified by external event id."""
        ...

    @abc.abstractmethod
    async def bulk_delete_slots_by_external_id(self, external_event_ids: Sequence[str]) -> None:
        """Delete imported slots identified by external event id."""
        ...

    @abc.abstractmethod
    async def delete_all_imported_slots(self) -> None:
        """Delete every slot that originated from a device calendar."""
        ...

    async def shutdown(self) -> None:
        """Release client resources."""
        return None


def _redact_credential_values(message: str) -> str:
    """Redact bearer tokens and token-like key/value pairs from *message*."""
    redacted = re.sub(r"(?i)\bbearer\s+[A-Za-z0-9._~+/=-]+", "Bearer [REDACTED]", message)
    redacted = re.sub(
        r"(?i)\b(api_token|access_token|token)\s*[=:]\s*([^\s,;]+)",
        r"\1=[REDACTED]",
        redacted,
    )
    return redacted


def _safe_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            error_payload = error_payload.get("message")
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(_redact_credential_values(error_payload).split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(_redact_credential_values(raw_text).split())[:200]
    return "Request failed without an error payload"


class HttpAvailabilityBackend(AvailabilityBackend):
    """REST client for the availability API."""

    def __init__(
        self,
        base_url: str,
        *,
        api_token: str | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_token = api_token
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def _request_once(
        self,
        method: str,
        url: str,
        *,
        json_body: dict[str, Any] | None,
    ) -> httpx.Response:
        headers: dict[str, str] = {"Accept": "application/json"}
        if self._api_token:
            headers["Authorization"] = f"Bearer {self._api_token}"
        try:
            return await self._http_client.request(method, url, json=json_body, headers=headers)
        except httpx.HTTPError as exc:
            raise TransientIOError(
                f"Availability backend request failed: {_redact_credential_values(str(exc))}"
            ) from exc

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
    ) -> Any:
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{self._base_url}{normalized_path}"

        response = await self._request_once(method, url, json_body=json_body)

        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            # For 429 responses, respect the Retry-After header when present.
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Availability API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(method, url, json_body=json_body)
            retry += 1

        if response.status_code < 200 or response.status_code >= 300:
            raise BackendRequestError(
                status_code=response.status_code,
                message=_safe_error_message(response),
            )

        if response.status_code == 204 or not response.content:
            return None

        try:
            return response.json()
        except ValueError as exc:
            raise TransientIOError(
                "Availability backend returned invalid JSON for a successful response"
            ) from exc

    @staticmethod
    def _parse_slots(payload: Any, *, context: str) -> list[AvailabilitySlot]:
        # The list endpoint answers with a bare array; older deployments wrap it.
        if isinstance(payload, dict):
            payload = payload.get("availability", payload.get("slots"))
        if not isinstance(payload, list):
            raise TransientIOError(f"Availability backend {context} response is not a slot list")

        slots: list[AvailabilitySlot] = []
        for item in payload:
            if not isinstance(item, dict):
                continue
            try:
                slots.append(AvailabilitySlot.model_validate(item))
            except ValidationError as exc:
                logger.warning("Skipping malformed availability slot in %s: %s", context, exc)
        return slots

    async def get_all_availability_slots(self) -> list[AvailabilitySlot]:
        payload = await self._request("GET", "/availability")
        return self._parse_slots(payload, context="list")

    async def bulk_create_slots(self, slots: Sequence[AvailabilitySlot]) -> list[AvailabilitySlot]:
        if not slots:
            return []
        body = {"slots": [slot.model_dump(mode="json", by_alias=True) for slot in slots]}
        payload = await self._request("POST", "/availability/imported", json_body=body)
        if payload is None:
            return list(slots)
        created = self._parse_slots(payload, context="bulk create")
        return created or list(slots)

    async def bulk_update_slots(self, updates: Sequence[SlotUpdate]) -> None:
        if not updates:
            return
        body = {"updates": [update.model_dump(mode="json", by_alias=True) for update in updates]}
        await self._request("PUT", "/availability/imported", json_body=body)

    async def bulk_delete_slots_by_external_id(self, external_event_ids: Sequence[str]) -> None:
        if not external_event_ids:
            return
        body = {"externalEventIds": list(external_event_ids)}
        await self._request("POST", "/availability/imported/delete", json_body=body)

    async def delete_all_imported_slots(self) -> None:
        await self._request("DELETE", "/availability/imported")

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
