"""clinic_etl.orchestrator

Import orchestration: one run = one pass over the source.

    idle ──trigger_import──► running ──► completed
                                  └────► failed

Per page: transform every record (rejects go to CSV), upsert the page in
its own transaction, then checkpoint the run counters.  The checkpoint is
written after the page commit, so recorded progress can lag committed
data but never lead it.

Only one run at a time per orchestrator: the lock is acquired without
blocking and a second trigger fails fast with ConflictError.  The
database's single-running index covers other processes.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator, Protocol

import psycopg

from clinic_etl.batch import upsert_page
from clinic_etl.runs import (
    RunCounters,
    RunSummary,
    TriggeredBy,
    checkpoint_run,
    complete_run,
    count_runs,
    fail_run,
    get_run,
    interrupt_stale_runs,
    last_full_completion,
    list_runs,
    open_run,
)
from clinic_etl.shared import ConflictError, RejectWriter, write_run_report
from clinic_etl.source import SourcePage
from clinic_etl.transform import (
    DEFAULT_BOOKING_YEAR_MARKER,
    CanonicalRecord,
    RecordTransformer,
    Rejected,
    TransformStats,
)
from clinic_etl.validation import ValidationBaseline, validate_counts

log = logging.getLogger(__name__)

DEFAULT_REJECTS_PATH = Path("./artifacts/rejects/clinic_rejects.csv")
DEFAULT_REPORTS_DIR = Path("./artifacts/reports")


class PageSource(Protocol):
    def iter_pages(self, since: datetime | None = None) -> Iterator[SourcePage]: ...


@dataclass(frozen=True)
class OrchestratorStatus:
    is_running: bool
    current_run_id: str | None


@dataclass(frozen=True)
class RunHistory:
    runs: list[RunSummary]
    total: int
    limit: int
    offset: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "runs": [r.to_dict() for r in self.runs],
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
        }


def validation_stats(stats: TransformStats) -> dict[str, int]:
    """Observed counts compared against the baseline."""
    return {
        "total_records": stats.total,
        "bookings": stats.bookings,
        "leads": stats.leads,
        "engaged": stats.engaged,
    }


class ImportOrchestrator:
    def __init__(
        self,
        db_dsn: str,
        pager: PageSource,
        *,
        booking_year_marker: str = DEFAULT_BOOKING_YEAR_MARKER,
        baseline: ValidationBaseline | None = None,
        rejects_path: Path = DEFAULT_REJECTS_PATH,
        reports_dir: Path = DEFAULT_REPORTS_DIR,
        connect: Callable[..., psycopg.Connection] = psycopg.connect,
    ) -> None:
        self._db_dsn = db_dsn
        self._pager = pager
        self._marker = booking_year_marker
        self._baseline = baseline
        self._rejects_path = rejects_path
        self._reports_dir = reports_dir
        self._connect = connect
        self._lock = threading.Lock()
        self._current_run_id: str | None = None

    # ------------------------------------------------------------------ #
    # Trigger surface                                                      #
    # ------------------------------------------------------------------ #

    def trigger_import(
        self,
        incremental: bool = True,
        notes: str | None = None,
        triggered_by: TriggeredBy = TriggeredBy.MANUAL,
    ) -> RunSummary:
        """Run one import to completion and return its final summary.

        Raises:
            ConflictError: an import is already running (never queued).
            SourceFetchError, BatchFailure: the run failed; it is recorded
                as failed before the error is re-raised.
        """
        if not self._lock.acquire(blocking=False):
            raise ConflictError(self._current_run_id)
        try:
            return self._run(incremental, notes, triggered_by)
        finally:
            self._current_run_id = None
            self._lock.release()

    def get_status(self) -> OrchestratorStatus:
        return OrchestratorStatus(
            is_running=self._lock.locked(),
            current_run_id=self._current_run_id,
        )

    def get_run_history(self, limit: int = 10, offset: int = 0) -> RunHistory:
        with self._connect(self._db_dsn, autocommit=False) as conn:
            runs = list_runs(conn, limit=limit, offset=offset)
            total = count_runs(conn)
        return RunHistory(runs=runs, total=total, limit=limit, offset=offset)

    def get_run(self, run_id: str) -> RunSummary | None:
        with self._connect(self._db_dsn, autocommit=False) as conn:
            return get_run(conn, run_id)

    def should_run_incremental(self) -> bool:
        """True once a completed full import exists."""
        with self._connect(self._db_dsn, autocommit=False) as conn:
            return last_full_completion(conn) is not None

    # ------------------------------------------------------------------ #
    # Run                                                                  #
    # ------------------------------------------------------------------ #

    def _run(
        self,
        incremental: bool,
        notes: str | None,
        triggered_by: TriggeredBy,
    ) -> RunSummary:
        conn = self._connect(self._db_dsn, autocommit=False)
        try:
            interrupt_stale_runs(conn)
            watermark = last_full_completion(conn) if incremental else None
            if incremental and watermark is None:
                log.info("No completed full import yet; running a full import")
            run_id = open_run(conn, triggered_by, watermark is not None, watermark, notes)
            self._current_run_id = run_id
            return self._execute(conn, run_id, watermark)
        finally:
            conn.close()

    def _execute(
        self,
        conn: psycopg.Connection,
        run_id: str,
        watermark: datetime | None,
    ) -> RunSummary:
        started = time.monotonic()
        counters = RunCounters()
        transformer = RecordTransformer(self._marker)
        rejects = RejectWriter(self._rejects_file(run_id))
        mode = "incremental" if watermark else "full"
        log.info("[%s] Starting %s import (watermark=%s)", run_id, mode, watermark)

        try:
            for page in self._pager.iter_pages(since=watermark):
                counters.fetched += len(page.records)
                records = self._transform_page(page, transformer, counters, rejects)
                batch = upsert_page(conn, records, page_number=page.number)
                counters.add_batch(batch)
                checkpoint_run(conn, run_id, counters)
                log.info(
                    "[%s] Page %d committed: %d processed, %d created, %d updated",
                    run_id, page.number, batch.processed, batch.created, batch.updated,
                )
        except Exception as exc:
            duration = time.monotonic() - started
            message = f"{type(exc).__name__}: {exc}"
            log.error("[%s] Import failed after %.1fs: %s", run_id, duration, message)
            self._record_failure(conn, run_id, message, counters, duration)
            self._write_report(run_id, conn, transformer, rejects, None)
            raise
        finally:
            rejects.close()

        duration = time.monotonic() - started
        rate = counters.processed / duration if duration > 0 else 0.0

        validation: dict[str, Any] | None = None
        if watermark is None and self._baseline is not None:
            report = validate_counts(self._baseline, validation_stats(transformer.stats))
            log.info("[%s] Validation:\n%s", run_id, report.format_report())
            if not report.all_match:
                log.warning("[%s] Counts differ from the validation baseline", run_id)
            validation = report.to_dict()

        if complete_run(conn, run_id, counters, duration, rate, validation):
            log.info(
                "[%s] Import completed: %d fetched, %d processed, %d rejected in %.1fs (%.1f rec/s)",
                run_id, counters.fetched, counters.processed, counters.rejected, duration, rate,
            )
        else:
            log.warning(
                "[%s] Import finished but the run was already finalized elsewhere; "
                "completion not recorded",
                run_id,
            )
        summary = get_run(conn, run_id)
        self._write_report(run_id, conn, transformer, rejects, summary)
        return summary

    def _transform_page(
        self,
        page: SourcePage,
        transformer: RecordTransformer,
        counters: RunCounters,
        rejects: RejectWriter,
    ) -> list[CanonicalRecord]:
        records: list[CanonicalRecord] = []
        for raw in page.records:
            result = transformer.transform(raw)
            if isinstance(result, Rejected):
                counters.rejected += 1
                rejects.write({"source_id": result.source_id, "page": page.number}, result.reason)
                continue
            records.append(result)
        return records

    def _record_failure(
        self,
        conn: psycopg.Connection,
        run_id: str,
        message: str,
        counters: RunCounters,
        duration: float,
    ) -> None:
        try:
            conn.rollback()
            fail_run(conn, run_id, message, counters, duration)
            return
        except psycopg.Error as exc:
            log.warning("[%s] Recording failure on a new connection: %s", run_id, exc)
        try:
            with self._connect(self._db_dsn, autocommit=False) as fresh:
                fail_run(fresh, run_id, message, counters, duration)
        except psycopg.Error:
            log.exception("[%s] Could not record run failure; it will be interrupted later", run_id)

    def _rejects_file(self, run_id: str) -> Path:
        p = self._rejects_path
        return p.with_name(f"{p.stem}_{run_id}{p.suffix}")

    def _write_report(
        self,
        run_id: str,
        conn: psycopg.Connection,
        transformer: RecordTransformer,
        rejects: RejectWriter,
        summary: RunSummary | None,
    ) -> None:
        if summary is None:
            try:
                summary = get_run(conn, run_id)
            except psycopg.Error as exc:
                log.warning("[%s] Run summary unavailable for report: %s", run_id, exc)
        report = {
            "summary": summary.to_dict() if summary else None,
            "transform": transformer.stats.to_dict(),
            "rejects_path": str(rejects.path) if rejects.count else None,
        }
        path = write_run_report(run_id, report, self._reports_dir)
        log.info("[%s] Run report: %s", run_id, path)
