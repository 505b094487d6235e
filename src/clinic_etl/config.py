"""clinic_etl.config

Process settings from environment variables.

Required:
  DATABASE_URL        PostgreSQL DSN
  AIRTABLE_API_KEY    bearer token for the source API
  AIRTABLE_BASE_ID    source base
  AIRTABLE_TABLE_ID   source table

Optional (defaults in parentheses):
  AIRTABLE_PAGE_SIZE        (100)
  BOOKING_YEAR_MARKER       (2025)
  SCHEDULE_MORNING          (06:00)
  SCHEDULE_EVENING          (18:00)
  SCHEDULE_TIMEZONE         (America/New_York)
  VALIDATION_BASELINE_PATH  (config/validation_baseline.yml)
  REJECTS_PATH              (./artifacts/rejects/clinic_rejects.csv)
  LOG_LEVEL                 (INFO)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from clinic_etl.orchestrator import DEFAULT_REJECTS_PATH
from clinic_etl.scheduler import (
    DEFAULT_EVENING,
    DEFAULT_MORNING,
    DEFAULT_TIMEZONE,
    parse_clock,
)
from clinic_etl.shared import ConfigurationError
from clinic_etl.source import MAX_PAGE_SIZE, AirtableCredentials
from clinic_etl.transform import DEFAULT_BOOKING_YEAR_MARKER
from clinic_etl.validation import DEFAULT_BASELINE_PATH

REQUIRED_VARS = ("DATABASE_URL", "AIRTABLE_API_KEY", "AIRTABLE_BASE_ID", "AIRTABLE_TABLE_ID")

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


@dataclass(frozen=True)
class Settings:
    database_url: str
    airtable_api_key: str
    airtable_base_id: str
    airtable_table_id: str
    airtable_page_size: int = MAX_PAGE_SIZE
    booking_year_marker: str = DEFAULT_BOOKING_YEAR_MARKER
    schedule_morning: str = DEFAULT_MORNING
    schedule_evening: str = DEFAULT_EVENING
    schedule_timezone: str = DEFAULT_TIMEZONE
    validation_baseline_path: Path = DEFAULT_BASELINE_PATH
    rejects_path: Path = DEFAULT_REJECTS_PATH
    log_level: str = "INFO"

    @property
    def airtable_credentials(self) -> AirtableCredentials:
        return AirtableCredentials(
            token=self.airtable_api_key,
            base_id=self.airtable_base_id,
            table=self.airtable_table_id,
        )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """Build settings, failing before any run when something is missing.

        Raises:
            ConfigurationError: listing every missing required variable, or
                naming the first invalid optional one.
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> str | None:
            value = env.get(name)
            if value is None:
                return None
            value = value.strip()
            return value or None

        missing = [name for name in REQUIRED_VARS if get(name) is None]
        if missing:
            raise ConfigurationError(
                f"missing required environment variables: {', '.join(missing)}"
            )

        page_size_raw = get("AIRTABLE_PAGE_SIZE")
        page_size = MAX_PAGE_SIZE
        if page_size_raw is not None:
            try:
                page_size = int(page_size_raw)
            except ValueError as exc:
                raise ConfigurationError(
                    f"AIRTABLE_PAGE_SIZE must be an integer, got {page_size_raw!r}"
                ) from exc
            if not 1 <= page_size <= MAX_PAGE_SIZE:
                raise ConfigurationError(
                    f"AIRTABLE_PAGE_SIZE must be between 1 and {MAX_PAGE_SIZE}"
                )

        morning = get("SCHEDULE_MORNING") or DEFAULT_MORNING
        evening = get("SCHEDULE_EVENING") or DEFAULT_EVENING
        for name, value in (("SCHEDULE_MORNING", morning), ("SCHEDULE_EVENING", evening)):
            try:
                parse_clock(value)
            except ValueError as exc:
                raise ConfigurationError(f"{name}: {exc}") from exc

        log_level = (get("LOG_LEVEL") or "INFO").upper()
        if log_level not in _LOG_LEVELS:
            raise ConfigurationError(f"LOG_LEVEL must be one of {sorted(_LOG_LEVELS)}")

        baseline = get("VALIDATION_BASELINE_PATH")
        rejects = get("REJECTS_PATH")
        return cls(
            database_url=get("DATABASE_URL"),
            airtable_api_key=get("AIRTABLE_API_KEY"),
            airtable_base_id=get("AIRTABLE_BASE_ID"),
            airtable_table_id=get("AIRTABLE_TABLE_ID"),
            airtable_page_size=page_size,
            booking_year_marker=get("BOOKING_YEAR_MARKER") or DEFAULT_BOOKING_YEAR_MARKER,
            schedule_morning=morning,
            schedule_evening=evening,
            schedule_timezone=get("SCHEDULE_TIMEZONE") or DEFAULT_TIMEZONE,
            validation_baseline_path=Path(baseline) if baseline else DEFAULT_BASELINE_PATH,
            rejects_path=Path(rejects) if rejects else DEFAULT_REJECTS_PATH,
            log_level=log_level,
        )
