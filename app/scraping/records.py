"""
Record shapes produced by candidate programs and their normalization.

Candidates may use snake_case or camelCase keys. Date/time fields are
converted to UTC ISO-8601 strings using the source timezone before a
record is scored; values that cannot be interpreted are dropped from the
record and reported, so they count as missing rather than as present.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator
from pydantic.alias_generators import to_camel

EVENT_SCRAPER = "event-scraper"
VENUE_INFO = "venue-info"


@dataclass(frozen=True)
class FieldSet:
    """
    Required/optional field names for one session kind.
    """

    kind: str
    required: tuple[str, ...]
    optional: tuple[str, ...]

    @property
    def all_fields(self) -> tuple[str, ...]:
        return self.required + self.optional


EVENT_FIELDS = FieldSet(
    kind=EVENT_SCRAPER,
    required=("title", "starts_at", "source_url"),
    optional=(
        "description",
        "cover_charge",
        "image_url",
        "doors_at",
        "ends_at",
        "ticket_url",
        "genres",
        "artists",
        "age_restriction",
    ),
)

VENUE_FIELDS = FieldSet(
    kind=VENUE_INFO,
    required=("name", "website", "address", "city", "state"),
    optional=(
        "postal_code",
        "phone",
        "description",
        "venue_type",
        "logo_url",
        "image_url",
        "capacity",
    ),
)

FIELD_SETS = {EVENT_SCRAPER: EVENT_FIELDS, VENUE_INFO: VENUE_FIELDS}


def field_set_for(kind: str) -> FieldSet:
    try:
        return FIELD_SETS[kind]
    except KeyError as exc:
        raise ValueError(f"Unknown session kind: {kind!r}") from exc


# ---------------------------------------------------------------------------
# Date and price parsing
# ---------------------------------------------------------------------------

_PRICE_RE = re.compile(r"(\d+(?:[.,]\d{1,2})?)")
_FREE_RE = re.compile(r"\bfree\b", re.IGNORECASE)


def resolve_zone(name: str | None, fallback: str = "America/New_York") -> ZoneInfo:
    for candidate in (name, fallback, "UTC"):
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            continue
    return ZoneInfo("UTC")


def to_utc_iso(value: Any, zone: ZoneInfo) -> str:
    """
    Interpret ``value`` in ``zone`` (when naive) and return UTC ISO-8601.

    Raises ValueError for values that are not a recognisable date/time.
    """

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("empty date")
        if text.endswith("Z"):
            text = f"{text[:-1]}+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"unsupported date value of type {type(value).__name__}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=zone)
    return parsed.astimezone(timezone.utc).isoformat()


def parse_price(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError("boolean is not a price")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        if _FREE_RE.search(value):
            return 0.0
        match = _PRICE_RE.search(value)
        if match:
            return float(match.group(1).replace(",", "."))
    raise ValueError(f"unrecognised price {value!r}")


# ---------------------------------------------------------------------------
# Record models
# ---------------------------------------------------------------------------


class _RecordModel(BaseModel):
    model_config = ConfigDict(
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
        str_strip_whitespace=True,
    )


def _report(info: ValidationInfo, message: str) -> None:
    if info.context is not None:
        info.context.setdefault("errors", []).append(message)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _string_list(value: Any) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, (list, tuple, set)):
        return [str(item).strip() for item in value if item is not None and str(item).strip()]
    return [str(value)]


class ScrapedEvent(_RecordModel):
    title: str | None = None
    starts_at: str | None = None
    source_url: str | None = None
    description: str | None = None
    cover_charge: float | None = None
    image_url: str | None = None
    doors_at: str | None = None
    ends_at: str | None = None
    ticket_url: str | None = None
    genres: list[str] | None = None
    artists: list[str] | None = None
    age_restriction: str | None = None

    @field_validator("starts_at", "doors_at", "ends_at", mode="before")
    @classmethod
    def normalize_datetime(cls, value: Any, info: ValidationInfo) -> str | None:
        if _is_blank(value):
            return None
        zone = (info.context or {}).get("zone") or ZoneInfo("UTC")
        try:
            return to_utc_iso(value, zone)
        except ValueError:
            _report(info, f"{info.field_name}: unparseable date {value!r}")
            return None

    @field_validator("cover_charge", mode="before")
    @classmethod
    def normalize_price(cls, value: Any, info: ValidationInfo) -> float | None:
        if _is_blank(value):
            return None
        try:
            return parse_price(value)
        except ValueError:
            _report(info, f"cover_charge: unparseable price {value!r}")
            return None

    @field_validator("genres", "artists", mode="before")
    @classmethod
    def normalize_list(cls, value: Any) -> list[str] | None:
        return _string_list(value)

    @field_validator("age_restriction", mode="before")
    @classmethod
    def normalize_age(cls, value: Any) -> str | None:
        if value is None:
            return None
        return str(value)


class VenueInfo(_RecordModel):
    name: str | None = None
    website: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    phone: str | None = None
    description: str | None = None
    venue_type: str | None = None
    logo_url: str | None = None
    image_url: str | None = None
    capacity: int | None = Field(default=None)

    @field_validator("postal_code", "phone", mode="before")
    @classmethod
    def stringify(cls, value: Any) -> str | None:
        if value is None:
            return None
        return str(value)

    @field_validator("capacity", mode="before")
    @classmethod
    def normalize_capacity(cls, value: Any, info: ValidationInfo) -> int | None:
        if _is_blank(value):
            return None
        if isinstance(value, bool):
            _report(info, "capacity: boolean is not a number")
            return None
        if isinstance(value, (int, float)):
            return int(value)
        digits = re.sub(r"[^\d]", "", str(value))
        if digits:
            return int(digits)
        _report(info, f"capacity: unparseable value {value!r}")
        return None


_MODELS: dict[str, type[_RecordModel]] = {EVENT_SCRAPER: ScrapedEvent, VENUE_INFO: VenueInfo}


def normalize_records(
    raw_records: list[Any],
    *,
    kind: str,
    timezone_name: str | None,
    max_records: int | None = None,
) -> tuple[list[dict[str, Any]], list[str]]:
    """
    Validate raw candidate output into snake_case records.

    Returns the normalized records and a list of per-record problems.
    Non-mapping entries are skipped.
    """

    model = _MODELS[kind]
    zone = resolve_zone(timezone_name)
    records: list[dict[str, Any]] = []
    errors: list[str] = []

    items = raw_records if max_records is None else raw_records[:max_records]
    if max_records is not None and len(raw_records) > max_records:
        errors.append(f"Output capped at {max_records} records ({len(raw_records)} returned)")

    for index, raw in enumerate(items):
        if not isinstance(raw, dict):
            errors.append(f"record {index}: expected a dict, got {type(raw).__name__}")
            continue
        context: dict[str, Any] = {"zone": zone, "errors": []}
        try:
            record = model.model_validate(raw, context=context)
        except ValidationError as exc:
            first = exc.errors()[0]
            location = ".".join(str(part) for part in first.get("loc", ()))
            errors.append(f"record {index}: {location} {first.get('msg')}")
            continue
        errors.extend(f"record {index}: {message}" for message in context["errors"])
        records.append(record.model_dump())

    return records, errors


# ---------------------------------------------------------------------------
# Timezone guess from US state
# ---------------------------------------------------------------------------

_STATE_ZONES: dict[str, tuple[str, ...]] = {
    "America/New_York": (
        "CT", "DE", "DC", "FL", "GA", "IN", "KY", "ME", "MD", "MA", "MI", "NH",
        "NJ", "NY", "NC", "OH", "PA", "RI", "SC", "VT", "VA", "WV",
    ),
    "America/Chicago": (
        "AL", "AR", "IL", "IA", "KS", "LA", "MN", "MS", "MO", "NE", "ND", "OK",
        "SD", "TN", "TX", "WI",
    ),
    "America/Denver": ("CO", "MT", "NM", "UT", "WY", "ID"),
    "America/Phoenix": ("AZ",),
    "America/Los_Angeles": ("CA", "NV", "OR", "WA"),
    "America/Anchorage": ("AK",),
    "Pacific/Honolulu": ("HI",),
}
_ZONE_BY_STATE = {state: zone for zone, states in _STATE_ZONES.items() for state in states}


def guess_timezone(state: str | None, default: str = "America/New_York") -> str:
    if not state:
        return default
    return _ZONE_BY_STATE.get(state.strip().upper()[:2], default)
