"""clinic_etl.cli

Unified CLI entrypoint for the clinic conversation import.

Modes (--mode):
  migrate          apply migrations/*.sql
  import           run one import now (incremental unless --full)
  status           show the running import, last run and sync watermark
  history          list past runs (--limit / --offset)
  schedule         run the twice-daily scheduler in the foreground
  check_counts     table counts compared with the validation baseline
  test_connection  check the database and the record source
  sample           fetch and transform a few source records (--limit)

Configuration comes from the environment (see clinic_etl.config);
--db-dsn overrides DATABASE_URL.

Usage:
    clinic-etl --mode migrate --db-dsn "$DATABASE_URL"
    clinic-etl --mode import --full --notes "initial load"
    clinic-etl --mode schedule --run-startup-import
"""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
import uuid
from pathlib import Path

import click
import psycopg

from clinic_etl.config import Settings
from clinic_etl.db import apply_migrations, table_counts
from clinic_etl.orchestrator import ImportOrchestrator
from clinic_etl.runs import (
    TriggeredBy,
    count_runs,
    current_run_id,
    last_full_completion,
    list_runs,
)
from clinic_etl.scheduler import ImportScheduler
from clinic_etl.shared import ClinicEtlError, ConfigurationError, ConflictError
from clinic_etl.source import SourcePager
from clinic_etl.transform import RecordTransformer, Rejected
from clinic_etl.validation import BaselineValidationError, load_baseline, validate_counts

log = logging.getLogger(__name__)

MODES = [
    "migrate", "import", "status", "history", "schedule",
    "check_counts", "test_connection", "sample",
]
_SOURCE_MODES = frozenset({"import", "schedule", "test_connection", "sample"})


def _load_settings(db_dsn: str | None) -> Settings:
    env = dict(os.environ)
    if db_dsn:
        env["DATABASE_URL"] = db_dsn
    return Settings.from_env(env)


def _database_url(db_dsn: str | None) -> str:
    dsn = db_dsn or os.environ.get("DATABASE_URL", "").strip()
    if not dsn:
        raise ConfigurationError("missing required environment variables: DATABASE_URL")
    return dsn


def _build_orchestrator(settings: Settings) -> ImportOrchestrator:
    pager = SourcePager(settings.airtable_credentials, page_size=settings.airtable_page_size)
    baseline = None
    if settings.validation_baseline_path.exists():
        baseline = load_baseline(settings.validation_baseline_path)
    else:
        log.warning("No validation baseline at %s", settings.validation_baseline_path)
    return ImportOrchestrator(
        settings.database_url,
        pager,
        booking_year_marker=settings.booking_year_marker,
        baseline=baseline,
        rejects_path=settings.rejects_path,
    )


def _echo_json(data: object) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.command()
@click.option(
    "--mode",
    default="import",
    type=click.Choice(MODES),
    show_default=True,
    help="Operation to run",
)
@click.option("--db-dsn", default=None, help="PostgreSQL DSN (overrides DATABASE_URL)")
@click.option(
    "--full/--incremental",
    "full",
    default=False,
    show_default=True,
    help="[import] Force a full import instead of an incremental one",
)
@click.option("--notes", default=None, help="[import] Free-text note stored on the run")
@click.option("--limit", default=10, type=int, show_default=True, help="[history|sample] Number of rows")
@click.option("--offset", default=0, type=int, show_default=True, help="[history] Rows to skip")
@click.option(
    "--run-startup-import/--no-run-startup-import",
    default=False,
    show_default=True,
    help="[schedule] Run one import before waiting for the first slot",
)
def main(
    mode: str,
    db_dsn: str | None,
    full: bool,
    notes: str | None,
    limit: int,
    offset: int,
    run_startup_import: bool,
) -> None:
    """Clinic conversation import CLI."""
    invocation = str(uuid.uuid4())[:8]
    try:
        if mode in _SOURCE_MODES:
            settings = _load_settings(db_dsn)
            log_level = settings.log_level
        else:
            settings = None
            log_level = os.environ.get("LOG_LEVEL", "INFO").upper()
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

        if mode == "migrate":
            _run_migrate(invocation, _database_url(db_dsn))
        elif mode == "import":
            _run_import(invocation, settings, full=full, notes=notes)
        elif mode == "status":
            _run_status(_database_url(db_dsn))
        elif mode == "history":
            _run_history(_database_url(db_dsn), limit=limit, offset=offset)
        elif mode == "schedule":
            _run_schedule(invocation, settings, run_startup_import=run_startup_import)
        elif mode == "check_counts":
            _run_check_counts(invocation, _database_url(db_dsn))
        elif mode == "test_connection":
            _run_test_connection(invocation, settings)
        else:
            _run_sample(settings, limit=limit)
    except ConfigurationError as exc:
        click.echo(f"[{invocation}] FATAL: {exc}", err=True)
        sys.exit(2)
    except ConflictError as exc:
        click.echo(f"[{invocation}] {exc}", err=True)
        sys.exit(1)
    except ClinicEtlError as exc:
        click.echo(f"[{invocation}] Import failed: {exc}", err=True)
        sys.exit(1)
    except (FileNotFoundError, BaselineValidationError) as exc:
        click.echo(f"[{invocation}] FATAL: {exc}", err=True)
        sys.exit(1)
    except psycopg.Error as exc:
        click.echo(f"[{invocation}] Database error: {exc}", err=True)
        sys.exit(1)


# ---------------------------------------------------------------------------
# Modes
# ---------------------------------------------------------------------------

def _run_migrate(invocation: str, dsn: str) -> None:
    conn = psycopg.connect(dsn, autocommit=False)
    try:
        applied = apply_migrations(conn)
    finally:
        conn.close()
    click.echo(f"[{invocation}] Applied {len(applied)} migration(s): {', '.join(applied)}")


def _run_import(invocation: str, settings: Settings, *, full: bool, notes: str | None) -> None:
    orchestrator = _build_orchestrator(settings)
    click.echo(f"[{invocation}] Starting {'full' if full else 'incremental'} import")
    summary = orchestrator.trigger_import(
        incremental=not full,
        notes=notes,
        triggered_by=TriggeredBy.CLI,
    )
    _echo_json(summary.to_dict())
    click.echo(f"[{summary.id}] Import {summary.status.value}.")


def _run_status(dsn: str) -> None:
    with psycopg.connect(dsn, autocommit=False) as conn:
        running = current_run_id(conn)
        latest = list_runs(conn, limit=1)
        watermark = last_full_completion(conn)
    _echo_json({
        "is_running": running is not None,
        "current_run_id": running,
        "last_run": latest[0].to_dict() if latest else None,
        "last_full_completion": watermark,
        "next_import_incremental": watermark is not None,
    })


def _run_history(dsn: str, *, limit: int, offset: int) -> None:
    with psycopg.connect(dsn, autocommit=False) as conn:
        runs = list_runs(conn, limit=limit, offset=offset)
        total = count_runs(conn)
    _echo_json({
        "runs": [r.to_dict() for r in runs],
        "total": total,
        "limit": limit,
        "offset": offset,
    })


def _run_schedule(invocation: str, settings: Settings, *, run_startup_import: bool) -> None:
    scheduler = ImportScheduler(
        _build_orchestrator(settings),
        morning=settings.schedule_morning,
        evening=settings.schedule_evening,
        timezone=settings.schedule_timezone,
    )
    scheduler.start()
    _echo_json(scheduler.get_status())
    if run_startup_import:
        scheduler.run_startup_import()
    click.echo(f"[{invocation}] Scheduler running; Ctrl+C to stop.")
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        click.echo(f"[{invocation}] Stopping scheduler...")
    finally:
        scheduler.shutdown(wait=True)


def _run_check_counts(invocation: str, dsn: str) -> None:
    with psycopg.connect(dsn, autocommit=False) as conn:
        counts = table_counts(conn)
    _echo_json(counts)

    baseline_path = os.environ.get("VALIDATION_BASELINE_PATH")
    baseline = load_baseline(Path(baseline_path)) if baseline_path else load_baseline()
    report = validate_counts(baseline, {
        "total_records": counts["conversations"],
        "bookings": counts["bookings"],
        "leads": counts["lead_flagged"],
        "engaged": counts["engaged"],
    })
    click.echo(report.format_report())
    if not report.all_match:
        click.echo(f"[{invocation}] Counts differ from the validation baseline.", err=True)


def _run_test_connection(invocation: str, settings: Settings) -> None:
    ok = True
    try:
        with psycopg.connect(settings.database_url, autocommit=False) as conn:
            conn.execute("SELECT 1")
        click.echo(f"[{invocation}] Database: OK")
    except psycopg.Error as exc:
        click.echo(f"[{invocation}] Database: FAILED ({exc})", err=True)
        ok = False

    pager = SourcePager(settings.airtable_credentials, page_size=1)
    if pager.test_connection():
        click.echo(f"[{invocation}] Record source: OK")
    else:
        click.echo(f"[{invocation}] Record source: FAILED", err=True)
        ok = False
    if not ok:
        sys.exit(1)


def _run_sample(settings: Settings, *, limit: int) -> None:
    pager = SourcePager(settings.airtable_credentials)
    transformer = RecordTransformer(settings.booking_year_marker)
    out = []
    for raw in pager.sample_records(limit):
        result = transformer.transform(raw)
        if isinstance(result, Rejected):
            out.append({"source_id": result.source_id, "rejected": result.reason})
            continue
        out.append({
            "source_id": result.source_id,
            "organization": result.organization_name,
            "automation_code": result.automation_code,
            "created_at": result.created_at,
            "booking_exists": result.booking_exists,
            "booking_at": result.booking_at,
            "lead_created": result.lead_created,
            "engaged": result.engaged,
        })
    _echo_json({"records": out, "stats": transformer.stats.to_dict()})


if __name__ == "__main__":
    main()
