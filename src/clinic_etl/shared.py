"""clinic_etl.shared

Shared utilities used across the import pipeline: the error taxonomy,
RejectWriter for transform rejections, and run-report writing.
"""

from __future__ import annotations

import csv
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ClinicEtlError(Exception):
    """Base class for pipeline errors."""


class ConfigurationError(ClinicEtlError):
    """Raised when required connection parameters are missing or invalid."""


class SourceFetchError(ClinicEtlError):
    """Raised when a page fetch from the record source fails.  Fatal for the run."""


class BatchFailure(ClinicEtlError):
    """Raised when a page transaction fails and has been rolled back.

    Fatal for the run; pages committed earlier stay in place.
    """

    def __init__(self, page_number: int, source_id: str | None, cause: BaseException) -> None:
        self.page_number = page_number
        self.source_id = source_id
        self.cause = cause
        where = f" at record {source_id}" if source_id else ""
        super().__init__(
            f"page {page_number} rolled back{where}: {type(cause).__name__}: {cause}"
        )


class ConflictError(ClinicEtlError):
    """Raised when an import is requested while another one is running.

    Not an error state of any run: the request is rejected, never queued.
    """

    def __init__(self, current_run_id: str | None = None) -> None:
        self.current_run_id = current_run_id
        suffix = f" (run {current_run_id})" if current_run_id else ""
        super().__init__(f"import already running{suffix}")


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected source records."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.count = 0

    @property
    def path(self) -> Path:
        return self._path

    def write(self, row: dict[str, Any], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()
        self.count += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()
            self._fh = None
            self._writer = None


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    report: dict[str, Any],
    reports_dir: Path = Path("./artifacts/reports"),
) -> Path:
    """Write the final run summary as ``<reports_dir>/<run_id>.json``."""
    payload = {
        "run_id": run_id,
        "written_at": datetime.now(timezone.utc).isoformat(),
        **report,
    }
    report_path = reports_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(payload, indent=2, default=str))
    return report_path
