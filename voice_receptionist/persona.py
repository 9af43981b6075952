"""Persona resolution: tenant id in, immutable per-call bundle out.

Tenant records are read once from a JSON file (``TENANTS_FILE``) that the
admin surface maintains; the call pipeline only ever reads it.  A bundle is a
plain value built by ``PersonaResolver.resolve``: instructions and greeting
rendered from templates, the tenant's practice facts, and the set of tool
names the persona may use (a filter over the shared tool registry).
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from types import MappingProxyType
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from voice_receptionist.config import DEFAULT_TENANT_ID
from voice_receptionist.prompts import render_greeting, render_system_prompt

logger = logging.getLogger(__name__)

DEFAULT_TOOLS: tuple[str, ...] = (
    "getAvailableSlots",
    "bookAppointment",
    "getServiceTypes",
    "getPracticeInfo",
)

_DAY_ORDER = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class PersonaLoadError(Exception):
    """Tenant configuration could not be read or validated."""


class PersonaNotFoundError(LookupError):
    """Neither the requested nor the default tenant exists."""


# ── Tenant records (file schema) ─────────────────────────────────────


class AgentProfile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    agent_name: str = "Rachel"
    greeting_text: str | None = None
    enabled_tools: list[str] = Field(default_factory=lambda: list(DEFAULT_TOOLS))


class TenantRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    phone_no: str | None = None
    email: str | None = None
    address: str | None = None
    operating_hours: dict[str, str] | None = None
    services: list[str] = Field(default_factory=list)
    no_show_fees: float | None = None
    insurance: str | None = None
    additional_details: str | None = None
    timezone: str = "America/New_York"
    agent: AgentProfile = Field(default_factory=AgentProfile)

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except ZoneInfoNotFoundError as exc:
            raise ValueError(f"unknown timezone {value!r}") from exc
        return value


class TenantFile(BaseModel):
    tenants: list[TenantRecord]


# ── Bundle ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PersonaBundle:
    tenant_id: str
    business_name: str
    agent_name: str
    instructions: str
    greeting: str
    enabled_tools: frozenset[str]
    practice_info: Mapping[str, str]
    timezone: str

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def _format_hours(hours: dict[str, str] | None) -> str:
    if not hours:
        return "Please call during business hours."
    ordered = sorted(
        hours.items(),
        key=lambda kv: _DAY_ORDER.index(kv[0].lower()) if kv[0].lower() in _DAY_ORDER else 99,
    )
    return ", ".join(f"{day.capitalize()} {span}" for day, span in ordered)


def _practice_info(record: TenantRecord) -> dict[str, str]:
    contact = ", ".join(
        part for part in (
            f"Phone: {record.phone_no}" if record.phone_no else "",
            f"Email: {record.email}" if record.email else "",
        ) if part
    )
    info = {
        "hours": _format_hours(record.operating_hours),
        "location": record.address or "Address not on file.",
        "services": ", ".join(record.services) or "General services.",
        "contact": contact or "Contact details not on file.",
        "insurance": record.insurance or "Please ask the front desk about insurance.",
        "fees": (
            f"There is a ${record.no_show_fees:g} fee for missed appointments."
            if record.no_show_fees else "There is no missed-appointment fee."
        ),
    }
    if record.additional_details:
        info["details"] = record.additional_details
    return info


# ── Store & resolver ─────────────────────────────────────────────────


class TenantStore:
    """Read-only mapping of tenant id → record."""

    def __init__(self, records: list[TenantRecord]) -> None:
        self._records = {r.id: r for r in records}

    @classmethod
    def from_file(cls, path: str | Path) -> TenantStore:
        path = Path(path)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            parsed = TenantFile.model_validate(raw)
        except FileNotFoundError as exc:
            raise PersonaLoadError(f"Tenant file not found: {path}") from exc
        except (json.JSONDecodeError, ValidationError) as exc:
            raise PersonaLoadError(f"Tenant file {path} is invalid: {exc}") from exc
        logger.info("Loaded %d tenant(s) from %s", len(parsed.tenants), path)
        return cls(parsed.tenants)

    def get(self, tenant_id: str) -> TenantRecord | None:
        return self._records.get(tenant_id)

    def records(self) -> list[TenantRecord]:
        return list(self._records.values())

    def __contains__(self, tenant_id: object) -> bool:
        return tenant_id in self._records

    def __len__(self) -> int:
        return len(self._records)


class PersonaResolver:
    def __init__(self, store: TenantStore, *, default_tenant_id: str = DEFAULT_TENANT_ID) -> None:
        self._store = store
        self._default_tenant_id = default_tenant_id

    def resolve(self, tenant_id: str | None = None, *, now: datetime | None = None) -> PersonaBundle:
        """Build the bundle for *tenant_id*, falling back to the default tenant.

        A missing or unknown id never fails a call on its own; only a missing
        default tenant raises ``PersonaNotFoundError``.
        """
        record = self._store.get(tenant_id) if tenant_id else None
        if record is None:
            if tenant_id:
                logger.warning(
                    "Unknown tenant %r, falling back to %r", tenant_id, self._default_tenant_id,
                )
            record = self._store.get(self._default_tenant_id)
        if record is None:
            raise PersonaNotFoundError(
                f"Default tenant {self._default_tenant_id!r} is not configured"
            )
        return build_persona(record, now=now)


def build_persona(record: TenantRecord, *, now: datetime | None = None) -> PersonaBundle:
    tz = ZoneInfo(record.timezone)
    local_now = (now or datetime.now(tz)).astimezone(tz)
    info = _practice_info(record)
    instructions = render_system_prompt(
        agent_name=record.agent.agent_name,
        business_name=record.name,
        address=info["location"],
        phone=record.phone_no or "not listed",
        hours=info["hours"],
        services=info["services"],
        no_show_fee=f"${record.no_show_fees:g}" if record.no_show_fees else "none",
        additional_details=record.additional_details or "",
        timezone=record.timezone,
        now=local_now,
    )
    greeting = render_greeting(
        record.agent.greeting_text,
        agent_name=record.agent.agent_name,
        business_name=record.name,
    )
    return PersonaBundle(
        tenant_id=record.id,
        business_name=record.name,
        agent_name=record.agent.agent_name,
        instructions=instructions,
        greeting=greeting,
        enabled_tools=frozenset(record.agent.enabled_tools),
        practice_info=MappingProxyType(info),
        timezone=record.timezone,
    )
