"""Normalization functions for clinic conversation ingestion.

Source field values arrive untyped (str, bool, number, list or None).
All functions accept ``Any`` and return the appropriate type or None.
"""

from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone
from typing import Any


# ---------------------------------------------------------------------------
# Rule 1: as_text
# ---------------------------------------------------------------------------

def as_text(value: Any) -> str | None:
    """Stringify a raw field value.  None stays None; lists join on ', '."""
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        parts = [as_text(v) for v in value]
        return ", ".join(p for p in parts if p)
    return str(value)


# ---------------------------------------------------------------------------
# Rule 2: trim
# ---------------------------------------------------------------------------

def trim(value: Any) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    v = as_text(value)
    if v is None:
        return None
    v = v.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 3: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: Any) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 4: normalize_email
# ---------------------------------------------------------------------------

def normalize_email(value: Any) -> str | None:
    """Lowercase and trim an email address."""
    v = trim(value)
    if v is None:
        return None
    return v.lower()


# ---------------------------------------------------------------------------
# Rule 5: normalize_phone
# ---------------------------------------------------------------------------

def normalize_phone(value: Any) -> str | None:
    """Return E.164-style phone or None.

    Keeps digits only.  10-digit → +1XXXXXXXXXX.
    11-digit starting with 1 → +1XXXXXXXXXX.
    Anything else → '+' prefixed digits, or None if fewer than 7 digits
    (likely a data error).
    """
    v = trim(value)
    if v is None:
        return None
    digits = re.sub(r"\D", "", v)
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    if len(digits) >= 7:
        return f"+{digits}"
    return None


# ---------------------------------------------------------------------------
# Rule 6: organization_key  (natural key for organizations)
# ---------------------------------------------------------------------------

def organization_key(value: Any) -> str | None:
    """Casefolded letters and digits only, Latin accents folded.

    'Joint Chiro - Capitol Hill' → 'jointchirocapitolhill'.
    Non-Latin scripts are kept: '日本クリニック' → '日本クリニック'.
    """
    v = trim(value)
    if v is None:
        return None
    folded: list[str] = []
    for c in unicodedata.normalize("NFKD", v):
        # drop accents on ASCII bases only; other marks are part of the letter
        if unicodedata.combining(c) and folded and folded[-1].isascii():
            continue
        folded.append(c)
    v = unicodedata.normalize("NFC", "".join(folded)).casefold()
    v = "".join(c for c in v if c.isalnum())
    return v if v else None


def organization_email(key: str) -> str:
    """Derived contact address stored alongside the organization key."""
    return f"{key}@clinic.com"


# ---------------------------------------------------------------------------
# Rule 7: parse_iso_ts
# ---------------------------------------------------------------------------

def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_iso_ts(value: Any) -> datetime | None:
    """Parse an ISO 8601 timestamp ('2025-09-15T10:00:00.000Z') as UTC."""
    if isinstance(value, datetime):
        return ensure_utc(value)
    v = trim(value)
    if v is None:
        return None
    if v.endswith("Z"):
        v = v[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(v))
    except ValueError:
        return None


def isoformat_z(dt: datetime) -> str:
    """Serialize to ISO 8601 with a 'Z' suffix for source filter formulas."""
    return ensure_utc(dt).replace(microsecond=0).isoformat().replace("+00:00", "Z")
