"""clinic_etl.scheduler

Twice-daily import scheduling on APScheduler.

Two cron slots, 'morning' and 'evening', each a job on one
BackgroundScheduler.  A slot is stopped by pausing its job and started by
resuming it; the other slot is unaffected.

Scheduled runs never raise into the scheduler thread: every error,
including a ConflictError from an overlapping run, is logged and the slot
fires again at its next time.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from clinic_etl.orchestrator import ImportOrchestrator
from clinic_etl.runs import RunSummary, TriggeredBy
from clinic_etl.shared import ConflictError

log = logging.getLogger(__name__)

MORNING = "morning"
EVENING = "evening"
SLOTS = (MORNING, EVENING)

DEFAULT_MORNING = "06:00"
DEFAULT_EVENING = "18:00"
DEFAULT_TIMEZONE = "America/New_York"


def parse_clock(value: str) -> tuple[int, int]:
    """'HH:MM' → (hour, minute)."""
    try:
        hour_s, minute_s = value.strip().split(":")
        hour, minute = int(hour_s), int(minute_s)
    except ValueError as exc:
        raise ValueError(f"expected HH:MM, got {value!r}") from exc
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"time out of range: {value!r}")
    return hour, minute


def _job_id(slot: str) -> str:
    return f"clinic_import_{slot}"


class ImportScheduler:
    def __init__(
        self,
        orchestrator: ImportOrchestrator,
        *,
        morning: str = DEFAULT_MORNING,
        evening: str = DEFAULT_EVENING,
        timezone: str = DEFAULT_TIMEZONE,
        scheduler: BackgroundScheduler | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._timezone = timezone
        self._times = {MORNING: parse_clock(morning), EVENING: parse_clock(evening)}
        self._scheduler = scheduler or BackgroundScheduler(timezone=timezone)
        self._add_jobs()

    @property
    def running(self) -> bool:
        return self._scheduler.running

    # ------------------------------------------------------------------ #
    # Lifecycle                                                            #
    # ------------------------------------------------------------------ #

    def _add_jobs(self) -> None:
        for slot in SLOTS:
            hour, minute = self._times[slot]
            self._scheduler.add_job(
                self.run_scheduled_import,
                trigger=CronTrigger(hour=hour, minute=minute, timezone=self._timezone),
                args=[slot],
                id=_job_id(slot),
                name=f"{slot} import",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
        log.info("Scheduler started: %s", self.next_run_times())

    def shutdown(self, wait: bool = False) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            log.info("Scheduler stopped")

    def start_slot(self, slot: str) -> None:
        self._scheduler.resume_job(_job_id(self._check_slot(slot)))
        log.info("Resumed %s import slot", slot)

    def stop_slot(self, slot: str) -> None:
        self._scheduler.pause_job(_job_id(self._check_slot(slot)))
        log.info("Paused %s import slot", slot)

    # ------------------------------------------------------------------ #
    # Status                                                               #
    # ------------------------------------------------------------------ #

    def next_run_times(self) -> dict[str, datetime | None]:
        """Next fire time per slot; None for a paused or unscheduled slot."""
        out: dict[str, datetime | None] = {}
        for slot in SLOTS:
            job = self._scheduler.get_job(_job_id(slot))
            out[slot] = getattr(job, "next_run_time", None) if job else None
        return out

    def get_status(self) -> dict[str, Any]:
        status = self._orchestrator.get_status()
        slots = {}
        for slot, next_run in self.next_run_times().items():
            hour, minute = self._times[slot]
            slots[slot] = {
                "time": f"{hour:02d}:{minute:02d}",
                "active": next_run is not None,
                "next_run": next_run.isoformat() if next_run else None,
            }
        return {
            "scheduler_running": self._scheduler.running,
            "timezone": self._timezone,
            "slots": slots,
            "import_running": status.is_running,
            "current_run_id": status.current_run_id,
        }

    # ------------------------------------------------------------------ #
    # Entry points                                                         #
    # ------------------------------------------------------------------ #

    def run_scheduled_import(self, slot: str) -> RunSummary | None:
        """Job body for a cron slot.  Never raises."""
        status = self._orchestrator.get_status()
        if status.is_running:
            log.warning(
                "Skipping %s import: run %s still in progress", slot, status.current_run_id
            )
            return None
        log.info("Starting scheduled %s import", slot)
        try:
            summary = self._orchestrator.trigger_import(
                incremental=True,
                notes=f"scheduled {slot} import",
                triggered_by=TriggeredBy.SCHEDULER,
            )
        except ConflictError as exc:
            log.warning("Skipping %s import: %s", slot, exc)
            return None
        except Exception:
            log.exception("Scheduled %s import failed", slot)
            return None
        log.info("Scheduled %s import finished: run %s", slot, summary.id)
        return summary

    def trigger_manual_import(
        self,
        incremental: bool = True,
        notes: str | None = None,
    ) -> RunSummary:
        """Caller-facing trigger; ConflictError and run failures propagate."""
        return self._orchestrator.trigger_import(
            incremental=incremental,
            notes=notes,
            triggered_by=TriggeredBy.MANUAL,
        )

    def run_startup_import(self) -> RunSummary | None:
        """One import at process start.  Errors are logged, not raised."""
        log.info("Running startup import")
        try:
            return self._orchestrator.trigger_import(
                incremental=True,
                notes="startup import",
                triggered_by=TriggeredBy.STARTUP,
            )
        except Exception:
            log.exception("Startup import failed")
            return None

    def _check_slot(self, slot: str) -> str:
        if slot not in SLOTS:
            raise ValueError(f"unknown slot {slot!r}; expected one of {', '.join(SLOTS)}")
        return slot
