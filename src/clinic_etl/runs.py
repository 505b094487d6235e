"""clinic_etl.runs

Import run lifecycle tracking (import_runs table).

State machine per row:

    running ──► completed
        └─────► failed

A row is finalized exactly once: complete_run / fail_run only touch rows
still in 'running'.  At most one row is 'running' at a time, enforced by
the partial unique index uq_import_runs_single_running.

Every function here commits its own statement.  Callers must not have a
content transaction open when calling them.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import psycopg
from psycopg.errors import UniqueViolation
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from clinic_etl.batch import BatchCounters
from clinic_etl.shared import ConflictError

log = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "interrupted"
DEFAULT_STALE_AFTER = timedelta(minutes=30)


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TriggeredBy(str, Enum):
    MANUAL = "manual"
    SCHEDULER = "scheduler"
    STARTUP = "startup"
    CLI = "cli"


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    fetched: int = 0
    processed: int = 0
    rejected: int = 0
    created: int = 0
    updated: int = 0
    conversations: int = 0
    bookings: int = 0
    leads: int = 0
    engaged: int = 0
    clients: int = 0
    locations: int = 0
    customers: int = 0
    customers_updated: int = 0

    def add_batch(self, batch: BatchCounters) -> None:
        """Fold a committed page's counters into the run totals."""
        for name in _BATCH_FIELDS:
            setattr(self, name, getattr(self, name) + getattr(batch, name))

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


COUNTER_FIELDS: tuple[str, ...] = tuple(f.name for f in fields(RunCounters))
_BATCH_FIELDS: tuple[str, ...] = tuple(
    name for name in COUNTER_FIELDS if name not in ("fetched", "rejected")
)


@dataclass
class RunSummary:
    id: str
    status: RunStatus
    triggered_by: str
    incremental: bool
    started_at: datetime
    watermark: datetime | None = None
    notes: str | None = None
    completed_at: datetime | None = None
    counters: RunCounters = field(default_factory=RunCounters)
    duration_seconds: float | None = None
    records_per_second: float | None = None
    error_message: str | None = None
    validation: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "triggered_by": self.triggered_by,
            "incremental": self.incremental,
            "watermark": self.watermark.isoformat() if self.watermark else None,
            "notes": self.notes,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "counters": self.counters.to_dict(),
            "duration_seconds": self.duration_seconds,
            "records_per_second": self.records_per_second,
            "error_message": self.error_message,
            "validation": self.validation,
        }


_SELECT_RUN = f"""
    SELECT id, status, triggered_by, incremental, watermark, notes,
           started_at, completed_at, {", ".join(COUNTER_FIELDS)},
           duration_seconds, records_per_second, error_message, validation
    FROM import_runs
"""


def _summary_from_row(row: dict[str, Any]) -> RunSummary:
    duration = row["duration_seconds"]
    rate = row["records_per_second"]
    return RunSummary(
        id=str(row["id"]),
        status=RunStatus(row["status"]),
        triggered_by=row["triggered_by"],
        incremental=row["incremental"],
        watermark=row["watermark"],
        notes=row["notes"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        counters=RunCounters(**{name: row[name] for name in COUNTER_FIELDS}),
        duration_seconds=float(duration) if duration is not None else None,
        records_per_second=float(rate) if rate is not None else None,
        error_message=row["error_message"],
        validation=row["validation"],
    )


def _counter_assignments() -> str:
    return ", ".join(f"{name} = %({name})s" for name in COUNTER_FIELDS)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

def open_run(
    conn: psycopg.Connection,
    triggered_by: TriggeredBy | str,
    incremental: bool,
    watermark: datetime | None = None,
    notes: str | None = None,
) -> str:
    """Insert a 'running' row and return its id.

    Raises:
        ConflictError: another run is already 'running'.
    """
    trigger = triggered_by.value if isinstance(triggered_by, TriggeredBy) else str(triggered_by)
    try:
        row = conn.execute(
            """
            INSERT INTO import_runs (status, triggered_by, incremental, watermark, notes)
            VALUES ('running', %s, %s, %s, %s)
            RETURNING id
            """,
            (trigger, incremental, watermark, notes),
        ).fetchone()
        conn.commit()
    except UniqueViolation as exc:
        conn.rollback()
        current = current_run_id(conn)
        raise ConflictError(current) from exc
    run_id = str(row[0])
    log.info("Opened import run %s (triggered_by=%s, incremental=%s)", run_id, trigger, incremental)
    return run_id


def checkpoint_run(conn: psycopg.Connection, run_id: str, counters: RunCounters) -> None:
    """Persist progress counters on a running row and bump its heartbeat."""
    conn.execute(
        f"""
        UPDATE import_runs SET {_counter_assignments()}, heartbeat_at = now()
        WHERE id = %(run_id)s AND status = 'running'
        """,
        {**counters.to_dict(), "run_id": run_id},
    )
    conn.commit()


def complete_run(
    conn: psycopg.Connection,
    run_id: str,
    counters: RunCounters,
    duration: float,
    rate: float,
    validation: dict[str, Any] | None = None,
) -> bool:
    """Finalize as completed.  Returns False when the row was no longer running."""
    row = conn.execute(
        f"""
        UPDATE import_runs SET
          status = 'completed',
          completed_at = now(),
          heartbeat_at = now(),
          {_counter_assignments()},
          duration_seconds = %(duration)s,
          records_per_second = %(rate)s,
          validation = %(validation)s
        WHERE id = %(run_id)s AND status = 'running'
        RETURNING id
        """,
        {
            **counters.to_dict(),
            "duration": round(duration, 3),
            "rate": round(rate, 2),
            "validation": Jsonb(validation) if validation is not None else None,
            "run_id": run_id,
        },
    ).fetchone()
    conn.commit()
    if row is None:
        log.warning("Run %s was already finalized; completion ignored", run_id)
    return row is not None


def fail_run(
    conn: psycopg.Connection,
    run_id: str,
    message: str,
    counters: RunCounters | None = None,
    duration: float | None = None,
) -> bool:
    """Finalize as failed.  Returns False when the row was no longer running."""
    row = conn.execute(
        f"""
        UPDATE import_runs SET
          status = 'failed',
          completed_at = now(),
          heartbeat_at = now(),
          {_counter_assignments()},
          duration_seconds = %(duration)s,
          error_message = %(message)s
        WHERE id = %(run_id)s AND status = 'running'
        RETURNING id
        """,
        {
            **(counters or RunCounters()).to_dict(),
            "duration": round(duration, 3) if duration is not None else None,
            "message": message,
            "run_id": run_id,
        },
    ).fetchone()
    conn.commit()
    if row is None:
        log.warning("Run %s was already finalized; failure ignored", run_id)
    return row is not None


def interrupt_stale_runs(
    conn: psycopg.Connection,
    stale_after: timedelta = DEFAULT_STALE_AFTER,
) -> list[str]:
    """Fail 'running' rows whose heartbeat is older than ``stale_after``.

    These are left behind by a process that died mid-run.  Returns the ids
    that were interrupted.
    """
    rows = conn.execute(
        """
        UPDATE import_runs SET
          status = 'failed',
          completed_at = now(),
          error_message = %s
        WHERE status = 'running' AND heartbeat_at < now() - %s
        RETURNING id
        """,
        (INTERRUPTED_MESSAGE, stale_after),
    ).fetchall()
    conn.commit()
    ids = [str(r[0]) for r in rows]
    for run_id in ids:
        log.warning("Marked stale import run %s as failed (%s)", run_id, INTERRUPTED_MESSAGE)
    return ids


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def current_run_id(conn: psycopg.Connection) -> str | None:
    row = conn.execute(
        "SELECT id FROM import_runs WHERE status = 'running' LIMIT 1"
    ).fetchone()
    conn.commit()
    return str(row[0]) if row else None


def last_full_completion(conn: psycopg.Connection) -> datetime | None:
    """completed_at of the most recent completed full run, or None."""
    row = conn.execute(
        """
        SELECT completed_at FROM import_runs
        WHERE status = 'completed' AND incremental = false
        ORDER BY completed_at DESC
        LIMIT 1
        """
    ).fetchone()
    conn.commit()
    return row[0] if row else None


def get_run(conn: psycopg.Connection, run_id: str) -> RunSummary | None:
    with conn.cursor(row_factory=dict_row) as cur:
        row = cur.execute(_SELECT_RUN + " WHERE id::text = %s", (run_id,)).fetchone()
    conn.commit()
    return _summary_from_row(row) if row else None


def list_runs(conn: psycopg.Connection, limit: int = 10, offset: int = 0) -> list[RunSummary]:
    """Most recent first."""
    with conn.cursor(row_factory=dict_row) as cur:
        rows = cur.execute(
            _SELECT_RUN + " ORDER BY started_at DESC LIMIT %s OFFSET %s",
            (limit, offset),
        ).fetchall()
    conn.commit()
    return [_summary_from_row(r) for r in rows]


def count_runs(conn: psycopg.Connection) -> int:
    row = conn.execute("SELECT count(*) FROM import_runs").fetchone()
    conn.commit()
    return int(row[0])
