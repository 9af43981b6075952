"""Scheduling tools backed by the Calendly capability provider.

Each handler returns a small JSON-able payload whose ``message`` is written to
be spoken almost verbatim.  Provider errors are logged in full and replaced
with short caller-safe reasons; raw provider text never reaches the model.
"""

from __future__ import annotations

import hashlib
import logging
import re
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from voice_receptionist.config import BOOKING_DEDUP_WINDOW_SECONDS
from voice_receptionist.models import AvailabilitySlot, Contact
from voice_receptionist.services.cache import TTLCache
from voice_receptionist.services.calendly_client import CalendlyAPIError
from voice_receptionist.tools.registry import ToolContext, ToolDefinition, ToolError

logger = logging.getLogger(__name__)

# ── Availability formatting limits ──────────────────────────────────
DEFAULT_LOOKAHEAD_DAYS = 6
# Calendly rejects ranges longer than one week
MAX_WINDOW = timedelta(days=7) - timedelta(seconds=1)
MAX_TIMES_PER_DATE = 4
MAX_DATES = 3

NO_AVAILABILITY_MESSAGE = (
    "There are no available times in that range. "
    "Offer to check a different day or week."
)
SCHEDULER_UNAVAILABLE = (
    "The scheduling system is not responding right now. "
    "Apologise and offer to try again in a moment."
)
SLOT_TAKEN = (
    "That time is no longer available. "
    "Offer the caller a different time from a fresh availability check."
)
BOOKING_UNCONFIRMED = (
    "The booking request reached the scheduler but it did not confirm in time. "
    "Tell the caller a confirmation email will arrive if it went through, "
    "and do not try to book this time again."
)
BOOKING_IN_PROGRESS = (
    "That booking is already being processed. "
    "Ask the caller to hold on a moment, then check again."
)

# RFC 5322-ish pattern; covers the vast majority of real-world emails
_EMAIL_RE = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)


def _parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))


def _iso_z(dt: datetime) -> str:
    return dt.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def spoken_time(dt: datetime) -> str:
    """'2:00 PM' rather than '14:00' or '02:00 PM'."""
    return dt.strftime("%I:%M %p").lstrip("0")


def spoken_date(day: date) -> str:
    """'Monday, February 16'."""
    return f"{day.strftime('%A, %B')} {day.day}"


def _join_spoken(items: list[str]) -> str:
    if len(items) <= 1:
        return "".join(items)
    return f"{', '.join(items[:-1])} and {items[-1]}"


# ── Argument models ─────────────────────────────────────────────────


class AvailableSlotsArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    start_date: date | None = Field(
        default=None, description="First day to search, YYYY-MM-DD. Defaults to today.",
    )
    end_date: date | None = Field(
        default=None, description="Last day to search, YYYY-MM-DD (inclusive).",
    )
    days_ahead: int | None = Field(
        default=None, ge=1, le=7,
        description="Number of days to search from start_date when end_date is not given.",
    )


class BookAppointmentArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    full_name: str = Field(..., min_length=1, description="Caller's full name.")
    email: str = Field(..., description="Caller's email address for the confirmation.")
    iso_start_time: str = Field(
        ...,
        description=(
            "Exact ISO 8601 start time of the chosen slot, copied from "
            "getAvailableSlots (e.g. 2026-02-17T14:30:00Z)."
        ),
    )
    phone_number: str | None = Field(default=None, description="Caller's phone number.")
    reason: str | None = Field(
        default=None, max_length=500, description="Short reason for the visit.",
    )

    @field_validator("full_name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be blank")
        return value

    @field_validator("email")
    @classmethod
    def _valid_email(cls, value: str) -> str:
        value = value.strip()
        if not _EMAIL_RE.match(value):
            raise ValueError("does not look like a valid email address")
        return value

    @field_validator("iso_start_time")
    @classmethod
    def _valid_start(cls, value: str) -> str:
        try:
            _parse_iso(value)
        except ValueError:
            raise ValueError("must be an ISO 8601 date and time") from None
        return value.strip()


class ServiceTypesArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")


# ── Availability window and formatting ──────────────────────────────


def availability_window(
    now: datetime,
    tz: tzinfo,
    *,
    start_date: date | None = None,
    end_date: date | None = None,
    days_ahead: int | None = None,
) -> tuple[datetime, datetime]:
    """Compute a search window that Calendly will accept.

    The start is never earlier than one minute from *now*, and the window
    never exceeds one week.  An end that falls before the start (a past
    date, or a backwards range) is replaced by the default look-ahead.
    """
    floor = now + timedelta(minutes=1)
    start = floor
    if start_date is not None:
        start = max(datetime.combine(start_date, time.min, tzinfo=tz), floor)

    if end_date is not None:
        end = datetime.combine(end_date + timedelta(days=1), time.min, tzinfo=tz)
    elif days_ahead is not None:
        end = start + timedelta(days=days_ahead)
    else:
        end = start + timedelta(days=DEFAULT_LOOKAHEAD_DAYS)

    if end <= start:
        end = start + timedelta(days=DEFAULT_LOOKAHEAD_DAYS)
    return start, min(end, start + MAX_WINDOW)


def select_offered_slots(
    slots: list[AvailabilitySlot], tz: tzinfo,
) -> list[tuple[date, list[datetime]]]:
    """Group available slots by local date: at most 4 per date, first 3 dates."""
    grouped: dict[date, list[datetime]] = {}
    for slot in sorted(slots, key=lambda s: s.start_time):
        if slot.status != "available":
            continue
        local = slot.start_time.astimezone(tz)
        grouped.setdefault(local.date(), []).append(local)
    return [
        (day, times[:MAX_TIMES_PER_DATE])
        for day, times in list(grouped.items())[:MAX_DATES]
    ]


def format_available_times(slots: list[AvailabilitySlot], tz: tzinfo) -> str:
    offered = select_offered_slots(slots, tz)
    if not offered:
        return NO_AVAILABILITY_MESSAGE
    sentences = [
        f"On {spoken_date(day)} I have {_join_spoken([spoken_time(t) for t in times])}."
        for day, times in offered
    ]
    return " ".join(sentences) + " Which of those works best?"


# ── Booking dedup ───────────────────────────────────────────────────


class BookingGuard:
    """Remembers recent confirmations so a repeated booking is not re-sent.

    Shared by every session in the process; keys are scoped by tenant.  A key
    is also claimed while its booking is in flight, so a second request for
    the same caller and time is turned away instead of racing it.
    """

    def __init__(
        self,
        window_seconds: float = BOOKING_DEDUP_WINDOW_SECONDS,
        *,
        cache: TTLCache | None = None,
    ) -> None:
        self._cache = cache or TTLCache(max_entries=4096, ttl_seconds=window_seconds)
        self._in_flight: set[str] = set()

    @staticmethod
    def key(tenant_id: str, email: str, start_time: str) -> str:
        raw = f"{tenant_id}|{email.strip().lower()}|{start_time}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def recall(self, key: str) -> dict[str, Any] | None:
        return self._cache.get(key)

    def remember(self, key: str, confirmation: dict[str, Any]) -> None:
        self._cache.put(key, dict(confirmation))

    def claim(self, key: str) -> bool:
        """Mark ``key`` in flight; False if another booking already holds it."""
        if key in self._in_flight:
            return False
        self._in_flight.add(key)
        return True

    def release(self, key: str) -> None:
        self._in_flight.discard(key)


# ── Handlers ────────────────────────────────────────────────────────


async def get_available_slots(ctx: ToolContext, args: AvailableSlotsArgs) -> dict[str, Any]:
    tz = ctx.persona.tzinfo
    start, end = availability_window(
        ctx.clock(), tz,
        start_date=args.start_date, end_date=args.end_date, days_ahead=args.days_ahead,
    )
    try:
        slots = await ctx.provider.list_availability(start, end)
    except CalendlyAPIError as exc:
        logger.error("[%s] availability lookup failed: %s", ctx.session_id, exc)
        raise ToolError(SCHEDULER_UNAVAILABLE) from exc

    offered = select_offered_slots(slots, tz)
    return {
        "message": format_available_times(slots, tz),
        "slots": [
            {"spoken": f"{spoken_date(day)} at {spoken_time(t)}", "iso_start_time": _iso_z(t)}
            for day, times in offered
            for t in times
        ],
    }


async def book_appointment(ctx: ToolContext, args: BookAppointmentArgs) -> dict[str, Any]:
    tz = ctx.persona.tzinfo
    start = _parse_iso(args.iso_start_time)
    if start.tzinfo is None:
        start = start.replace(tzinfo=tz)
    if start <= ctx.clock():
        raise ToolError("That time has already passed. Offer the caller a future time.")
    start_iso = _iso_z(start)

    key = BookingGuard.key(ctx.persona.tenant_id, args.email, start_iso)
    previous = ctx.booking_guard.recall(key)
    if previous is not None:
        logger.info("[%s] duplicate booking suppressed for %s", ctx.session_id, start_iso)
        return {**previous, "duplicate": True}

    if not ctx.booking_guard.claim(key):
        logger.info("[%s] booking for %s already in flight", ctx.session_id, start_iso)
        raise ToolError(BOOKING_IN_PROGRESS)

    contact = Contact(name=args.full_name, email=args.email, phone=args.phone_number)
    try:
        booking = await ctx.provider.create_booking(
            start_iso, contact, args.reason, timezone=ctx.persona.timezone,
        )
        local = start.astimezone(tz)
        confirmation = {
            "message": (
                f"Booked for {spoken_date(local.date())} at {spoken_time(local)}. "
                f"A confirmation email is on its way to {args.email}."
            ),
            "start_time": start_iso,
            "cancel_url": booking.cancel_url,
            "reschedule_url": booking.reschedule_url,
        }
        ctx.booking_guard.remember(key, confirmation)
        return confirmation
    except CalendlyAPIError as exc:
        logger.error("[%s] booking failed: %s", ctx.session_id, exc)
        if exc.maybe_applied:
            raise ToolError(BOOKING_UNCONFIRMED) from exc
        if exc.status_code is not None and 400 <= exc.status_code < 500:
            raise ToolError(SLOT_TAKEN) from exc
        raise ToolError(SCHEDULER_UNAVAILABLE) from exc
    finally:
        ctx.booking_guard.release(key)


async def get_service_types(ctx: ToolContext, args: ServiceTypesArgs) -> dict[str, Any]:
    try:
        service_types = await ctx.provider.list_service_types()
    except CalendlyAPIError as exc:
        logger.error("[%s] service type lookup failed: %s", ctx.session_id, exc)
        raise ToolError(SCHEDULER_UNAVAILABLE) from exc

    if not service_types:
        return {"message": "There are no appointment types set up right now.", "service_types": []}
    described = [
        f"{st.name} ({st.duration_minutes} minutes)" if st.duration_minutes else st.name
        for st in service_types
    ]
    return {
        "message": f"We offer {_join_spoken(described)}.",
        "service_types": [
            {"name": st.name, "duration_minutes": st.duration_minutes} for st in service_types
        ],
    }


SCHEDULING_TOOLS: tuple[ToolDefinition, ...] = (
    ToolDefinition(
        name="getAvailableSlots",
        description=(
            "Check open appointment times. Searches at most one week, starting "
            "no earlier than now. Returns a short spoken summary and the exact "
            "ISO start times offered."
        ),
        args_model=AvailableSlotsArgs,
        handler=get_available_slots,
    ),
    ToolDefinition(
        name="bookAppointment",
        description=(
            "Book an appointment once the caller has chosen a time. Requires the "
            "caller's full name, email and the exact iso_start_time from "
            "getAvailableSlots. A confirmation email is sent automatically."
        ),
        args_model=BookAppointmentArgs,
        handler=book_appointment,
        cancel_on_timeout=False,
        timeout_message=BOOKING_UNCONFIRMED,
    ),
    ToolDefinition(
        name="getServiceTypes",
        description="List the kinds of appointments that can be booked and how long they take.",
        args_model=ServiceTypesArgs,
        handler=get_service_types,
    ),
)
