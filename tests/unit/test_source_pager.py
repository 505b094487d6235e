"""Unit tests for clinic_etl.source (HTTP mocked via a fake session)."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests

from clinic_etl.shared import SourceFetchError
from clinic_etl.source import (
    PAGE_DELAY_SECONDS,
    AirtableCredentials,
    SourcePager,
    build_created_after_formula,
)

CREDS = AirtableCredentials(token="tok", base_id="appBASE", table="tblCONV")


def _response(payload=None, status=200, text=""):
    resp = MagicMock()
    resp.status_code = status
    resp.text = text
    if isinstance(payload, Exception):
        resp.json.side_effect = payload
    else:
        resp.json.return_value = payload
    return resp


def _page(ids, offset=None):
    payload = {"records": [{"id": i, "fields": {"Name": i}, "createdTime": "2025-01-01T00:00:00.000Z"} for i in ids]}
    if offset:
        payload["offset"] = offset
    return payload


def _pager(*responses, **kwargs) -> tuple[SourcePager, MagicMock]:
    session = MagicMock()
    session.get.side_effect = list(responses)
    return SourcePager(CREDS, session=session, **kwargs), session


def _params(call) -> list[tuple]:
    return call.kwargs["params"]


# ---------------------------------------------------------------------------
# Paging
# ---------------------------------------------------------------------------

class TestIterPages:
    @patch("clinic_etl.source.time.sleep")
    def test_follows_offset_until_exhausted(self, sleep):
        pager, session = _pager(
            _response(_page(["r1", "r2"], offset="o1")),
            _response(_page(["r3"], offset="o2")),
            _response(_page(["r4"])),
        )
        pages = list(pager.iter_pages())
        assert [p.number for p in pages] == [1, 2, 3]
        assert [[r.record_id for r in p.records] for p in pages] == [["r1", "r2"], ["r3"], ["r4"]]
        assert [p.fetched_total for p in pages] == [2, 3, 4]
        assert ("offset", "o1") in _params(session.get.call_args_list[1])
        assert ("offset", "o2") in _params(session.get.call_args_list[2])

    @patch("clinic_etl.source.time.sleep")
    def test_paces_between_pages_only(self, sleep):
        pager, _ = _pager(
            _response(_page(["r1"], offset="o1")),
            _response(_page(["r2"])),
        )
        list(pager.iter_pages())
        sleep.assert_called_once_with(PAGE_DELAY_SECONDS)

    @patch("clinic_etl.source.time.sleep")
    def test_lazy(self, sleep):
        pager, session = _pager(
            _response(_page(["r1"], offset="o1")),
            _response(_page(["r2"])),
        )
        it = pager.iter_pages()
        assert session.get.call_count == 0
        next(it)
        assert session.get.call_count == 1

    @patch("clinic_etl.source.time.sleep")
    def test_empty_result(self, sleep):
        pager, _ = _pager(_response({"records": []}))
        assert list(pager.iter_pages()) == []

    @patch("clinic_etl.source.time.sleep")
    def test_request_shape(self, sleep):
        pager, session = _pager(_response(_page(["r1"])), page_size=50)
        list(pager.iter_pages())
        call = session.get.call_args
        assert call.args[0] == "https://api.airtable.com/v0/appBASE/tblCONV"
        assert call.kwargs["headers"] == {"Authorization": "Bearer tok"}
        params = _params(call)
        assert ("pageSize", 50) in params
        assert ("fields[]", "Booking") in params
        assert not any(k == "filterByFormula" for k, _ in params)

    @patch("clinic_etl.source.time.sleep")
    def test_incremental_formula(self, sleep):
        pager, session = _pager(_response(_page(["r1"])))
        since = datetime(2025, 9, 1, 6, 0, tzinfo=timezone.utc)
        list(pager.iter_pages(since=since))
        assert (
            "filterByFormula",
            "IS_AFTER({Created}, DATETIME_PARSE('2025-09-01T06:00:00Z'))",
        ) in _params(session.get.call_args)

    def test_page_size_bounds(self):
        with pytest.raises(ValueError):
            SourcePager(CREDS, session=MagicMock(), page_size=101)


def test_created_after_formula():
    since = datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert build_created_after_formula(since) == (
        "IS_AFTER({Created}, DATETIME_PARSE('2025-01-02T03:04:05Z'))"
    )


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

class TestFetchErrors:
    @patch("clinic_etl.source.time.sleep")
    def test_http_error_status(self, sleep):
        pager, _ = _pager(_response(status=429, text="rate limited"))
        with pytest.raises(SourceFetchError, match="HTTP 429"):
            list(pager.iter_pages())

    @patch("clinic_etl.source.time.sleep")
    def test_network_error(self, sleep):
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("down")
        pager = SourcePager(CREDS, session=session)
        with pytest.raises(SourceFetchError, match="network error"):
            list(pager.iter_pages())

    @patch("clinic_etl.source.time.sleep")
    def test_bad_json(self, sleep):
        pager, _ = _pager(_response(ValueError("no json")))
        with pytest.raises(SourceFetchError, match="not valid JSON"):
            list(pager.iter_pages())

    @patch("clinic_etl.source.time.sleep")
    def test_record_without_id(self, sleep):
        pager, _ = _pager(_response({"records": [{"fields": {}}]}))
        with pytest.raises(SourceFetchError, match="without 'id'"):
            list(pager.iter_pages())

    @patch("clinic_etl.source.time.sleep")
    def test_second_page_failure_after_first_yielded(self, sleep):
        pager, _ = _pager(
            _response(_page(["r1"], offset="o1")),
            _response(status=500, text="oops"),
        )
        it = pager.iter_pages()
        assert next(it).number == 1
        with pytest.raises(SourceFetchError):
            next(it)


# ---------------------------------------------------------------------------
# Extras
# ---------------------------------------------------------------------------

class TestConnectionAndSample:
    def test_connection_ok(self):
        pager, session = _pager(_response(_page(["r1"])))
        assert pager.test_connection() is True
        assert ("maxRecords", 1) in _params(session.get.call_args)

    def test_connection_failed(self):
        pager, _ = _pager(_response(status=401, text="unauthorized"))
        assert pager.test_connection() is False

    def test_sample_records(self):
        pager, session = _pager(_response(_page(["r1", "r2", "r3"])))
        records = pager.sample_records(3)
        assert [r.record_id for r in records] == ["r1", "r2", "r3"]
        assert records[0].created_time == "2025-01-01T00:00:00.000Z"
        assert ("maxRecords", 3) in _params(session.get.call_args)
