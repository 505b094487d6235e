"""clinic_etl.transform

Record transformation (no I/O): one raw source record in, one
CanonicalRecord or Rejected out.

This is the only place that reads the untyped source field bag.  Business
rules, each independently countable for run validation:

  booking_exists  raw Booking stringified contains the year marker
  booking_at      parsed from Booking (long form → ISO minute → ISO date →
                  whole-string parse with matching year), else None
  lead_created    raw 'Lead Created' trimmed is exactly 'Yes'
  engaged         raw 'Engaged in conversation' trimmed is TRUE/True/true
  automation_code query/fragment suffix stripped, WEB → WB, unknown → DB

Missing optional fields never reject a record; only an unexpected error
while reading the field bag does.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Mapping

from clinic_etl.normalize import (
    as_text,
    ensure_utc,
    normalize_email,
    normalize_phone,
    normalize_space,
    parse_iso_ts,
    trim,
)

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

F_USER_ID = "User ID"
F_NAME = "Name"
F_CLINIC = "Clinic"
F_AUTOMATION = "Automation"
F_BOOKING = "Booking"
F_TRANSCRIPT = "Conversation Transcript"
F_CREATED = "Created"
F_LEAD_CREATED = "Lead Created"
F_ENGAGED = "Engaged in conversation"
F_EMAIL = "Email"
F_PHONE = "Phone"

SOURCE_FIELDS: tuple[str, ...] = (
    F_USER_ID, F_NAME, F_CLINIC, F_AUTOMATION, F_BOOKING, F_TRANSCRIPT,
    F_CREATED, F_LEAD_CREATED, F_ENGAGED, F_EMAIL, F_PHONE,
)

DEFAULT_BOOKING_YEAR_MARKER = "2025"

AUTOMATION_CODES = frozenset({"WB", "IB", "CB", "DB", "EB", "TB"})
DEFAULT_AUTOMATION_CODE = "DB"
_AUTOMATION_ALIASES = {"WEB": "WB"}

LEAD_VALUE = "Yes"
_ENGAGED_VALUES = frozenset({"TRUE", "True", "true"})

_GMT_OFFSET_RE = r"(?:\s+(?:GMT|UTC)?([+-])(\d{2}):?(\d{2}))?"

# Whole-string fallback formats tried after ISO 8601 and RFC 2822
_FALLBACK_FORMATS = (
    "%a %b %d %Y %H:%M:%S",
    "%a %b %d %Y",
    "%b %d %Y",
    "%b %d, %Y",
    "%B %d, %Y",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y",
)


# ---------------------------------------------------------------------------
# Record types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SourceRecord:
    """Raw record as delivered by the source: an id plus an untyped field bag."""

    record_id: str
    fields: Mapping[str, Any]
    created_time: str | None = None


@dataclass(frozen=True)
class CanonicalRecord:
    source_id: str
    external_customer_id: str | None
    name: str | None
    organization_name: str | None
    automation_code: str
    conversation_text: str | None
    created_at: datetime | None
    engaged: bool
    lead_created: bool
    booking_exists: bool
    booking_at: datetime | None
    email: str | None
    phone: str | None

    @property
    def booking_undated(self) -> bool:
        return self.booking_exists and self.booking_at is None


@dataclass(frozen=True)
class Rejected:
    source_id: str | None
    reason: str


# ---------------------------------------------------------------------------
# Field rules
# ---------------------------------------------------------------------------

def is_lead(raw: Any) -> bool:
    """Exactly 'Yes' after trimming; case-sensitive."""
    text = as_text(raw)
    if text is None:
        return False
    return text.strip() == LEAD_VALUE


def is_engaged(raw: Any) -> bool:
    """One of 'TRUE', 'True', 'true' after trimming."""
    text = as_text(raw)
    if text is None:
        return False
    return text.strip() in _ENGAGED_VALUES


def has_booking_marker(raw: Any, marker: str) -> bool:
    """Substring test for the year marker, not a date validity test."""
    text = as_text(raw)
    if not text:
        return False
    return marker in text


def normalize_automation_code(raw: Any) -> str:
    """Return a whitelisted automation code; every input resolves to one."""
    code = trim(raw)
    if code is None:
        return DEFAULT_AUTOMATION_CODE
    code = code.split("?", 1)[0]
    code = code.split("#", 1)[0].split("&", 1)[0].strip()
    code = _AUTOMATION_ALIASES.get(code, code)
    if code not in AUTOMATION_CODES:
        log.warning(
            "Unknown automation code %r; defaulting to %s", raw, DEFAULT_AUTOMATION_CODE
        )
        return DEFAULT_AUTOMATION_CODE
    return code


# ---------------------------------------------------------------------------
# Booking date parsing
# ---------------------------------------------------------------------------

def _offset_tz(sign: str | None, hours: str | None, minutes: str | None) -> timezone:
    if not sign:
        return timezone.utc
    delta = timedelta(hours=int(hours), minutes=int(minutes))
    return timezone(-delta if sign == "-" else delta)


def _parse_long_form(text: str, marker: str) -> datetime | None:
    """'Thu Oct 02 2025 18:30:00 GMT+0300' → aware datetime in UTC."""
    pattern = (
        r"[A-Za-z]{3}\s+([A-Za-z]{3})\s+(\d{1,2})\s+"
        + re.escape(marker)
        + r"\s+(\d{1,2}:\d{2}:\d{2})"
        + _GMT_OFFSET_RE
    )
    m = re.search(pattern, text)
    if not m:
        return None
    month, day, clock, sign, off_h, off_m = m.groups()
    try:
        naive = datetime.strptime(f"{month} {day} {marker} {clock}", "%b %d %Y %H:%M:%S")
        return naive.replace(tzinfo=_offset_tz(sign, off_h, off_m)).astimezone(timezone.utc)
    except (ValueError, OverflowError):
        return None


def _parse_iso_minute(text: str, marker: str) -> datetime | None:
    """'2025-09-15T10:00' anywhere in the text."""
    m = re.search(re.escape(marker) + r"-\d{2}-\d{2}T\d{2}:\d{2}", text)
    if not m:
        return None
    try:
        return datetime.strptime(m.group(0), "%Y-%m-%dT%H:%M").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def _parse_iso_date(text: str, marker: str) -> datetime | None:
    """'2025-09-15' anywhere in the text → midnight UTC."""
    m = re.search(re.escape(marker) + r"-\d{2}-\d{2}", text)
    if not m:
        return None
    try:
        return datetime.strptime(m.group(0), "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def _parse_whole(text: str, marker: str) -> datetime | None:
    """Whole-string parse; accepted only when the year equals the marker."""
    candidates: list[datetime] = []
    iso = parse_iso_ts(text)
    if iso is not None:
        candidates.append(iso)
    else:
        try:
            candidates.append(ensure_utc(parsedate_to_datetime(text)))
        except (TypeError, ValueError, IndexError):
            pass
        for fmt in _FALLBACK_FORMATS:
            try:
                candidates.append(datetime.strptime(text, fmt).replace(tzinfo=timezone.utc))
                break
            except ValueError:
                continue
    for dt in candidates:
        if str(dt.year) == marker:
            return dt
    return None


def parse_booking_at(raw: Any, marker: str = DEFAULT_BOOKING_YEAR_MARKER) -> datetime | None:
    """Extract the booking timestamp, or None when the marker is absent or unparseable."""
    text = trim(raw)
    if text is None or marker not in text:
        return None
    for step in (_parse_long_form, _parse_iso_minute, _parse_iso_date, _parse_whole):
        parsed = step(text, marker)
        if parsed is not None:
            return parsed
    log.debug("Could not parse booking date: %r", text)
    return None


# ---------------------------------------------------------------------------
# Transformer
# ---------------------------------------------------------------------------

@dataclass
class TransformStats:
    """Transformer-local counters.  Informational only, never control flow."""

    total: int = 0
    transformed: int = 0
    rejected: int = 0
    bookings: int = 0
    bookings_undated: int = 0
    leads: int = 0
    engaged: int = 0
    automation_codes: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        def rate(n: int) -> str:
            if not self.transformed:
                return "0%"
            return f"{n / self.transformed * 100:.2f}%"

        return {
            "total": self.total,
            "transformed": self.transformed,
            "rejected": self.rejected,
            "bookings": self.bookings,
            "bookings_undated": self.bookings_undated,
            "leads": self.leads,
            "engaged": self.engaged,
            "automation_codes": dict(sorted(self.automation_codes.items())),
            "booking_rate": rate(self.bookings),
            "lead_rate": rate(self.leads),
            "engagement_rate": rate(self.engaged),
        }


class RecordTransformer:
    """Maps SourceRecord → CanonicalRecord with the business rules above."""

    def __init__(self, booking_year_marker: str = DEFAULT_BOOKING_YEAR_MARKER) -> None:
        if not booking_year_marker:
            raise ValueError("booking_year_marker must be a non-empty string")
        self.booking_year_marker = booking_year_marker
        self.stats = TransformStats()

    def reset(self) -> None:
        self.stats = TransformStats()

    def transform(self, raw: SourceRecord) -> CanonicalRecord | Rejected:
        self.stats.total += 1
        try:
            record = self._build(raw)
        except Exception as exc:  # noqa: BLE001
            self.stats.rejected += 1
            source_id = getattr(raw, "record_id", None)
            log.warning("Rejected record %s: %s: %s", source_id, type(exc).__name__, exc)
            return Rejected(source_id=source_id, reason=f"{type(exc).__name__}: {exc}")
        self._count(record)
        return record

    def _build(self, raw: SourceRecord) -> CanonicalRecord:
        fields = raw.fields
        marker = self.booking_year_marker
        booking_raw = fields.get(F_BOOKING)
        booking_exists = has_booking_marker(booking_raw, marker)
        booking_at = parse_booking_at(booking_raw, marker) if booking_exists else None
        created_at = parse_iso_ts(fields.get(F_CREATED)) or parse_iso_ts(raw.created_time)
        phone_raw = fields.get(F_PHONE)
        return CanonicalRecord(
            source_id=str(raw.record_id),
            external_customer_id=trim(fields.get(F_USER_ID)),
            name=normalize_space(fields.get(F_NAME)),
            organization_name=normalize_space(fields.get(F_CLINIC)),
            automation_code=normalize_automation_code(fields.get(F_AUTOMATION)),
            conversation_text=trim(fields.get(F_TRANSCRIPT)),
            created_at=created_at,
            engaged=is_engaged(fields.get(F_ENGAGED)),
            lead_created=is_lead(fields.get(F_LEAD_CREATED)),
            booking_exists=booking_exists,
            booking_at=booking_at,
            email=normalize_email(fields.get(F_EMAIL)),
            phone=normalize_phone(phone_raw) or normalize_space(phone_raw),
        )

    def _count(self, record: CanonicalRecord) -> None:
        s = self.stats
        s.transformed += 1
        if record.booking_exists:
            s.bookings += 1
            if record.booking_at is None:
                s.bookings_undated += 1
                log.warning("Booking marker without parseable date on %s", record.source_id)
        if record.lead_created:
            s.leads += 1
        if record.engaged:
            s.engaged += 1
        s.automation_codes[record.automation_code] = (
            s.automation_codes.get(record.automation_code, 0) + 1
        )
