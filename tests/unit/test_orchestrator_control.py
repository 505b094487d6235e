"""Unit tests for ImportOrchestrator control flow (database helpers patched)."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from clinic_etl.batch import BatchCounters, BatchOutcome
from clinic_etl.orchestrator import ImportOrchestrator
from clinic_etl.runs import TriggeredBy
from clinic_etl.shared import BatchFailure, ConflictError, SourceFetchError
from clinic_etl.source import SourcePage
from clinic_etl.transform import SourceRecord
from clinic_etl.validation import ValidationBaseline

WATERMARK = datetime(2025, 9, 1, 10, 0, tzinfo=timezone.utc)


class FakePager:
    def __init__(self, pages, error=None, on_page=None):
        self.pages = pages
        self.error = error
        self.on_page = on_page
        self.since_calls = []

    def iter_pages(self, since=None):
        self.since_calls.append(since)
        for page in self.pages:
            if self.on_page:
                self.on_page(page)
            yield page
        if self.error:
            raise self.error


def _page(number, *ids, **fields):
    return SourcePage(
        number=number,
        records=[SourceRecord(record_id=i, fields=dict(fields)) for i in ids],
        fetched_total=0,
    )


def _batch(n):
    return BatchCounters(processed=n, created=n, conversations=n, outcome=BatchOutcome.COMMITTED)


@pytest.fixture
def db():
    """Patch every database helper the orchestrator calls."""
    mocks = {
        "interrupt_stale_runs": MagicMock(return_value=[]),
        "last_full_completion": MagicMock(return_value=None),
        "open_run": MagicMock(return_value="run-1"),
        "checkpoint_run": MagicMock(),
        "complete_run": MagicMock(return_value=True),
        "fail_run": MagicMock(return_value=True),
        "get_run": MagicMock(return_value=MagicMock(id="run-1")),
        "upsert_page": MagicMock(
            side_effect=lambda conn, records, page_number: _batch(len(records))
        ),
        "write_run_report": MagicMock(),
    }
    with patch.multiple("clinic_etl.orchestrator", **mocks):
        yield mocks


def _orch(pager, tmp_path, **kwargs):
    connect = MagicMock()
    orch = ImportOrchestrator(
        "dbname=test",
        pager,
        rejects_path=tmp_path / "rejects.csv",
        reports_dir=tmp_path / "reports",
        connect=connect,
        **kwargs,
    )
    return orch, connect


# ---------------------------------------------------------------------------
# Mutual exclusion
# ---------------------------------------------------------------------------

class TestExclusion:
    def test_second_trigger_conflicts_while_running(self, db, tmp_path):
        seen = {}

        def reenter(page):
            seen["status"] = orch.get_status()
            with pytest.raises(ConflictError) as exc_info:
                orch.trigger_import()
            seen["conflict_run"] = exc_info.value.current_run_id

        pager = FakePager([_page(1, "r1")], on_page=reenter)
        orch, _ = _orch(pager, tmp_path)
        orch.trigger_import()
        assert seen["status"].is_running is True
        assert seen["status"].current_run_id == "run-1"
        assert seen["conflict_run"] == "run-1"
        assert db["open_run"].call_count == 1

    def test_lock_released_after_success(self, db, tmp_path):
        orch, _ = _orch(FakePager([_page(1, "r1")]), tmp_path)
        orch.trigger_import()
        status = orch.get_status()
        assert status.is_running is False
        assert status.current_run_id is None
        orch.trigger_import()
        assert db["open_run"].call_count == 2

    def test_lock_released_after_failure(self, db, tmp_path):
        orch, _ = _orch(FakePager([], error=SourceFetchError("HTTP 500")), tmp_path)
        with pytest.raises(SourceFetchError):
            orch.trigger_import()
        assert orch.get_status().is_running is False

    def test_database_conflict_propagates(self, db, tmp_path):
        db["open_run"].side_effect = ConflictError("other-process")
        orch, _ = _orch(FakePager([]), tmp_path)
        with pytest.raises(ConflictError):
            orch.trigger_import()
        assert orch.get_status().is_running is False


# ---------------------------------------------------------------------------
# Incremental selection
# ---------------------------------------------------------------------------

class TestIncrementalSelection:
    def test_falls_back_to_full_without_completed_full_run(self, db, tmp_path):
        pager = FakePager([])
        orch, _ = _orch(pager, tmp_path)
        orch.trigger_import(incremental=True)
        assert pager.since_calls == [None]
        args = db["open_run"].call_args.args
        assert args[1:4] == (TriggeredBy.MANUAL, False, None)

    def test_incremental_uses_last_full_completion(self, db, tmp_path):
        db["last_full_completion"].return_value = WATERMARK
        pager = FakePager([])
        orch, _ = _orch(pager, tmp_path)
        orch.trigger_import(incremental=True, notes="n", triggered_by=TriggeredBy.SCHEDULER)
        assert pager.since_calls == [WATERMARK]
        args = db["open_run"].call_args.args
        assert args[1:] == (TriggeredBy.SCHEDULER, True, WATERMARK, "n")

    def test_full_requested_ignores_watermark(self, db, tmp_path):
        db["last_full_completion"].return_value = WATERMARK
        pager = FakePager([])
        orch, _ = _orch(pager, tmp_path)
        orch.trigger_import(incremental=False)
        assert pager.since_calls == [None]
        db["last_full_completion"].assert_not_called()

    def test_stale_runs_interrupted_before_open(self, db, tmp_path):
        orch, _ = _orch(FakePager([]), tmp_path)
        orch.trigger_import()
        db["interrupt_stale_runs"].assert_called_once()


# ---------------------------------------------------------------------------
# Page loop
# ---------------------------------------------------------------------------

class TestPageLoop:
    def test_checkpoint_after_each_page(self, db, tmp_path):
        calls = []
        db["upsert_page"].side_effect = lambda conn, records, page_number: (
            calls.append(("upsert", page_number)) or _batch(len(records))
        )
        db["checkpoint_run"].side_effect = lambda conn, run_id, counters: calls.append(
            ("checkpoint", counters.processed)
        )
        orch, _ = _orch(FakePager([_page(1, "a", "b"), _page(2, "c")]), tmp_path)
        orch.trigger_import()
        assert calls == [("upsert", 1), ("checkpoint", 2), ("upsert", 2), ("checkpoint", 3)]

    def test_completion_counters(self, db, tmp_path):
        orch, _ = _orch(FakePager([_page(1, "a", "b"), _page(2, "c")]), tmp_path)
        orch.trigger_import()
        _, run_id, counters, duration, rate, validation = db["complete_run"].call_args.args
        assert run_id == "run-1"
        assert counters.fetched == 3
        assert counters.processed == 3
        assert counters.created == 3
        assert duration >= 0
        assert validation is None
        db["write_run_report"].assert_called_once()

    def test_completion_not_recorded_is_reported(self, db, tmp_path, caplog):
        db["complete_run"].return_value = False
        orch, _ = _orch(FakePager([_page(1, "a")]), tmp_path)
        with caplog.at_level("INFO", logger="clinic_etl.orchestrator"):
            orch.trigger_import()
        messages = [r.getMessage() for r in caplog.records]
        assert any("completion not recorded" in m for m in messages)
        assert not any("Import completed" in m for m in messages)
        db["get_run"].assert_called_once()

    def test_batch_failure_marks_run_failed(self, db, tmp_path):
        failure = BatchFailure(2, "c", RuntimeError("constraint"))

        def upsert(conn, records, page_number):
            if page_number == 2:
                raise failure
            return _batch(len(records))

        db["upsert_page"].side_effect = upsert
        orch, _ = _orch(FakePager([_page(1, "a", "b"), _page(2, "c")]), tmp_path)
        with pytest.raises(BatchFailure):
            orch.trigger_import()
        _, run_id, message, counters, _duration = db["fail_run"].call_args.args
        assert run_id == "run-1"
        assert "BatchFailure" in message
        assert counters.processed == 2
        db["complete_run"].assert_not_called()

    def test_source_failure_marks_run_failed(self, db, tmp_path):
        orch, _ = _orch(FakePager([_page(1, "a")], error=SourceFetchError("HTTP 503")), tmp_path)
        with pytest.raises(SourceFetchError):
            orch.trigger_import()
        assert "HTTP 503" in db["fail_run"].call_args.args[2]

    def test_rejects_written_and_counted(self, db, tmp_path):
        class Exploding(dict):
            def get(self, key, default=None):
                raise KeyError(key)

        page = SourcePage(
            number=1,
            records=[SourceRecord("ok", {}), SourceRecord("bad", Exploding())],
            fetched_total=2,
        )
        orch, _ = _orch(FakePager([page]), tmp_path)
        orch.trigger_import()
        records = db["upsert_page"].call_args.args[1]
        assert [r.source_id for r in records] == ["ok"]
        counters = db["complete_run"].call_args.args[2]
        assert counters.rejected == 1
        assert counters.fetched == 2
        reject_files = list(tmp_path.glob("rejects_run-1.csv"))
        assert len(reject_files) == 1
        assert "bad" in reject_files[0].read_text()


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TestValidation:
    BASELINE = ValidationBaseline(total_records=2, bookings=1, leads=0, engaged=0)

    def test_full_run_validated(self, db, tmp_path):
        pager = FakePager([_page(1, "a", "b", Booking="2025-09-15")])
        orch, _ = _orch(pager, tmp_path, baseline=self.BASELINE)
        orch.trigger_import(incremental=False)
        validation = db["complete_run"].call_args.args[5]
        assert validation["all_match"] is False
        assert validation["metrics"]["bookings"] == {"expected": 1, "actual": 2, "match": False}

    def test_mismatch_does_not_fail_run(self, db, tmp_path):
        orch, _ = _orch(FakePager([_page(1, "a")]), tmp_path, baseline=self.BASELINE)
        orch.trigger_import(incremental=False)
        db["complete_run"].assert_called_once()
        db["fail_run"].assert_not_called()

    def test_incremental_run_not_validated(self, db, tmp_path):
        db["last_full_completion"].return_value = WATERMARK
        orch, _ = _orch(FakePager([_page(1, "a")]), tmp_path, baseline=self.BASELINE)
        orch.trigger_import(incremental=True)
        assert db["complete_run"].call_args.args[5] is None
