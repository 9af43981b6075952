"""Async HTTP client for the Calendly API v2 with retry logic and timeouts.

Calendly API docs: https://developer.calendly.com/api-docs/
All requests require a Personal Access Token passed as a Bearer token.

One instance is built at process start and shared by every call.  Its only
state is the authenticated user URI (fetched once) and a short-lived cache of
event types; availability is always fetched fresh.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import UTC, datetime
from typing import Any

import httpx

from voice_receptionist.config import (
    CALENDLY_API_TOKEN,
    CALENDLY_BASE_URL,
    CALENDLY_EVENT_TYPE_URI,
)
from voice_receptionist.models import (
    AvailabilitySlot,
    BookingResult,
    Contact,
    ServiceType,
)
from voice_receptionist.services.cache import TTLCache
from voice_receptionist.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 0.5
REQUEST_TIMEOUT_SECONDS = 8.0
# Every attempt times out and every backoff is slept
WORST_CASE_REQUEST_SECONDS = MAX_RETRIES * REQUEST_TIMEOUT_SECONDS + sum(
    INITIAL_BACKOFF_SECONDS * 2 ** i for i in range(MAX_RETRIES - 1)
)

# ── Cache keys ──────────────────────────────────────────────────────
_CK_EVENT_TYPES = "event_types"
_CK_EVENT_TYPE_LOC = "event_type_loc:"
EVENT_TYPE_TTL_SECONDS = 300.0


class CalendlyAPIError(Exception):
    """Raised when a Calendly API call fails after all retries.

    ``maybe_applied`` is set when a non-idempotent request reached Calendly
    but no usable response came back, so it may have taken effect.
    """

    def __init__(
        self, message: str, status_code: int | None = None, *, maybe_applied: bool = False,
    ):
        self.status_code = status_code
        self.maybe_applied = maybe_applied
        super().__init__(message)


def _iso_utc(dt: datetime) -> str:
    return dt.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.000000Z")


def _parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class CalendlyClient:
    """Thin async wrapper around the Calendly REST API v2.

    Exposes the three scheduling capabilities the call pipeline needs
    (``list_availability``, ``create_booking``, ``list_service_types``) plus
    ``cancel_booking``.  Safe to share across concurrent sessions: requests
    are stateless apart from the cached user URI, which is fetched under a
    lock so concurrent first calls trigger only one ``/users/me``.
    """

    def __init__(
        self,
        token: str | None = None,
        base_url: str | None = None,
        *,
        event_type_uri: str | None = None,
        cache: TTLCache | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._token = token or CALENDLY_API_TOKEN
        self._base_url = base_url or CALENDLY_BASE_URL
        self._client = http_client or httpx.AsyncClient(
            base_url=self._base_url,
            headers={
                "Authorization": f"Bearer {self._token}",
                "Content-Type": "application/json",
            },
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
        self._event_type_uri = event_type_uri or CALENDLY_EVENT_TYPE_URI
        self._user_uri: str | None = None
        self._user_lock = asyncio.Lock()
        self._cache = cache or TTLCache(max_entries=64, ttl_seconds=EVENT_TYPE_TTL_SECONDS)

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── Internal helpers ─────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        idempotent: bool = True,
    ) -> dict[str, Any]:
        """Execute an HTTP request with exponential-backoff retries.

        Non-idempotent requests (bookings, cancellations) are only resent when
        the connection was never established; a read timeout or 5xx after the
        request went out raises with ``maybe_applied=True`` instead.
        """
        operation = f"{method} {path.split('?')[0]}"
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            t0 = time.perf_counter()
            try:
                response = await self._client.request(
                    method,
                    path,
                    params=params,
                    json=json_body,
                )
                if response.status_code >= 500:
                    raise CalendlyAPIError(
                        f"Server error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                if response.status_code >= 400:
                    raise CalendlyAPIError(
                        f"Client error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                metrics.record_success(
                    "calendly", operation, latency_ms=(time.perf_counter() - t0) * 1000,
                )
                return response.json()

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                metrics.record_failure(
                    "calendly", operation, error_type=type(exc).__name__,
                    latency_ms=(time.perf_counter() - t0) * 1000,
                )
                never_sent = isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout))
                if not idempotent and not never_sent:
                    raise CalendlyAPIError(
                        f"{operation} sent but no response ({type(exc).__name__}); not retried",
                        maybe_applied=True,
                    ) from exc
                logger.warning(
                    "Calendly API attempt %d/%d failed (%s). Retrying in %.1fs…",
                    attempt,
                    MAX_RETRIES,
                    type(exc).__name__,
                    INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)),
                )
            except CalendlyAPIError as exc:
                metrics.record_failure(
                    "calendly", operation,
                    error_type="5xx" if (exc.status_code or 0) >= 500 else "4xx",
                    latency_ms=(time.perf_counter() - t0) * 1000,
                )
                if exc.status_code and exc.status_code >= 500 and not idempotent:
                    exc.maybe_applied = True
                    raise
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "Calendly API server error on attempt %d/%d. Retrying…",
                        attempt,
                        MAX_RETRIES,
                    )
                else:
                    raise  # 4xx errors are not retried

            if attempt < MAX_RETRIES:
                await asyncio.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        raise CalendlyAPIError(
            f"Calendly API request failed after {MAX_RETRIES} retries: {last_error}"
        )

    def _relative_path(self, uri: str) -> str:
        return uri.replace(self._base_url, "")

    # ── Identity ─────────────────────────────────────────────────────

    async def get_current_user_uri(self) -> str:
        """Return the URI of the authenticated Calendly user (cached)."""
        if self._user_uri is not None:
            return self._user_uri
        async with self._user_lock:
            if self._user_uri is None:
                data = await self._request("GET", "/users/me")
                self._user_uri = data["resource"]["uri"]
        return self._user_uri

    # ── Service types ────────────────────────────────────────────────

    async def list_service_types(self) -> list[ServiceType]:
        """List the active event types for the current user (cached briefly)."""
        cached = self._cache.get(_CK_EVENT_TYPES)
        if cached is not None:
            return cached

        user_uri = await self.get_current_user_uri()
        data = await self._request(
            "GET", "/event_types", params={"user": user_uri, "active": "true"},
        )
        result = [
            ServiceType(
                uri=et["uri"],
                name=et.get("name", ""),
                slug=et.get("slug", ""),
                duration_minutes=et.get("duration"),
                scheduling_url=et.get("scheduling_url"),
            )
            for et in data.get("collection", [])
        ]
        self._cache.put(_CK_EVENT_TYPES, result)
        return result

    async def resolve_event_type_uri(self) -> str:
        """Return the configured event type, else the first active one."""
        if self._event_type_uri:
            return self._event_type_uri
        service_types = await self.list_service_types()
        if not service_types:
            raise CalendlyAPIError("No active event types found for this account.")
        return service_types[0].uri

    # ── Availability ─────────────────────────────────────────────────

    async def list_availability(
        self,
        range_start: datetime,
        range_end: datetime,
        *,
        event_type_uri: str | None = None,
    ) -> list[AvailabilitySlot]:
        """Get bookable start times between two instants.

        **Not cached**: availability changes in real time.  Callers are
        responsible for keeping the range in the future and within
        Calendly's 7-day maximum.
        """
        event_type = event_type_uri or await self.resolve_event_type_uri()
        data = await self._request(
            "GET",
            "/event_type_available_times",
            params={
                "event_type": event_type,
                "start_time": _iso_utc(range_start),
                "end_time": _iso_utc(range_end),
            },
        )
        return [
            AvailabilitySlot(
                start_time=_parse_iso(slot["start_time"]),
                status=slot.get("status", "available"),
            )
            for slot in data.get("collection", [])
        ]

    # ── Bookings ─────────────────────────────────────────────────────

    async def _event_type_locations(self, event_type_uri: str) -> list[dict[str, Any]]:
        key = f"{_CK_EVENT_TYPE_LOC}{event_type_uri}"
        locations = self._cache.get(key)
        if locations is None:
            et_data = await self._request("GET", self._relative_path(event_type_uri))
            locations = et_data.get("resource", {}).get("locations") or []
            self._cache.put(key, locations)
        return locations

    async def create_booking(
        self,
        start_time: str,
        contact: Contact,
        notes: str | None = None,
        *,
        timezone: str = "America/New_York",
        event_type_uri: str | None = None,
    ) -> BookingResult:
        """Book a slot by adding an invitee (POST /invitees).

        See: https://developer.calendly.com/schedule-events-with-ai-agents

        Returns the cancel / reschedule URLs exactly as Calendly sent them.
        """
        event_type = event_type_uri or await self.resolve_event_type_uri()
        locations = await self._event_type_locations(event_type)

        invitee: dict[str, Any] = {
            "name": contact.name,
            "email": contact.email,
            "timezone": timezone,
        }
        if contact.phone:
            invitee["text_reminder_number"] = contact.phone

        payload: dict[str, Any] = {
            "event_type": event_type,
            "start_time": start_time,
            "invitee": invitee,
        }
        if locations:
            loc = locations[0]
            payload["location"] = {
                "kind": loc["kind"],
                "location": loc.get("location", ""),
            }
        if notes:
            payload["questions_and_answers"] = [
                {"question": "Notes", "answer": notes, "position": 0},
            ]

        data = await self._request("POST", "/invitees", json_body=payload, idempotent=False)
        resource = data["resource"]
        logger.info("Booked %s for %s", start_time, contact.email)
        return BookingResult(
            event_uri=resource.get("event"),
            cancel_url=resource.get("cancel_url"),
            reschedule_url=resource.get("reschedule_url"),
        )

    async def cancel_booking(
        self,
        event_uri: str,
        reason: str = "Cancelled by caller via voice agent",
    ) -> dict[str, Any]:
        """Cancel a scheduled event given its URI or UUID."""
        event_uuid = event_uri.rstrip("/").split("/")[-1]
        return await self._request(
            "POST",
            f"/scheduled_events/{event_uuid}/cancellation",
            json_body={"reason": reason},
            idempotent=False,
        )
