"""clinic_etl.source

Paginated record source (Airtable REST list-records API).

SourcePager.iter_pages() is a lazy generator: the next HTTP request is only
issued when the consumer pulls the next page, and consecutive requests are
paced by a fixed delay to stay under the source's rate limit.

A failed page fetch raises SourceFetchError.  There is no retry at this
layer; the run fails and the next run resumes through idempotent upserts.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterator

import requests

from clinic_etl.normalize import isoformat_z
from clinic_etl.shared import SourceFetchError
from clinic_etl.transform import F_CREATED, SOURCE_FIELDS, SourceRecord

log = logging.getLogger(__name__)

AIRTABLE_API_URL = "https://api.airtable.com/v0"
MAX_PAGE_SIZE = 100
PAGE_DELAY_SECONDS = 0.2


@dataclass(frozen=True)
class AirtableCredentials:
    token: str
    base_id: str
    table: str


@dataclass(frozen=True)
class SourcePage:
    number: int
    records: list[SourceRecord]
    fetched_total: int


def build_created_after_formula(since: datetime) -> str:
    """Airtable formula selecting records created after ``since`` (UTC)."""
    return f"IS_AFTER({{{F_CREATED}}}, DATETIME_PARSE('{isoformat_z(since)}'))"


class SourcePager:
    """Pull-based page iterator over one Airtable table."""

    def __init__(
        self,
        credentials: AirtableCredentials,
        *,
        session: requests.Session | None = None,
        base_url: str = AIRTABLE_API_URL,
        page_size: int = MAX_PAGE_SIZE,
        timeout: int = 30,
        fields: tuple[str, ...] = SOURCE_FIELDS,
    ) -> None:
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValueError(f"page_size must be between 1 and {MAX_PAGE_SIZE}, got {page_size}")
        self._creds = credentials
        self._session = session or requests.Session()
        self._url = f"{base_url.rstrip('/')}/{credentials.base_id}/{credentials.table}"
        self._page_size = page_size
        self._timeout = timeout
        self._fields = fields

    # ------------------------------------------------------------------ #
    # Public API                                                           #
    # ------------------------------------------------------------------ #

    def iter_pages(self, since: datetime | None = None) -> Iterator[SourcePage]:
        """Yield pages in source order until the offset cursor is exhausted.

        ``since`` restricts the fetch to records created after that instant.
        """
        formula = build_created_after_formula(since) if since else None
        if formula:
            log.info("Incremental fetch: %s", formula)

        offset: str | None = None
        number = 0
        fetched = 0
        while True:
            if number > 0:
                time.sleep(PAGE_DELAY_SECONDS)
            number += 1
            payload = self._fetch(
                self._query(self._page_size, offset=offset, formula=formula),
                page_number=number,
            )
            records = _parse_records(payload, number)
            fetched += len(records)
            log.info("Fetched page %d (%d records, %d total)", number, len(records), fetched)
            if records:
                yield SourcePage(number=number, records=records, fetched_total=fetched)

            offset = payload.get("offset")
            if not offset:
                break

    def test_connection(self) -> bool:
        """Fetch a single record to confirm credentials and table id."""
        try:
            payload = self._fetch(self._query(1, max_records=1), page_number=1)
            _parse_records(payload, 1)
        except SourceFetchError as exc:
            log.error("Source connection failed: %s", exc)
            return False
        return True

    def sample_records(self, count: int = 5) -> list[SourceRecord]:
        size = max(1, min(count, MAX_PAGE_SIZE))
        payload = self._fetch(self._query(size, max_records=size), page_number=1)
        return _parse_records(payload, 1)

    # ------------------------------------------------------------------ #
    # HTTP                                                                 #
    # ------------------------------------------------------------------ #

    def _query(
        self,
        page_size: int,
        *,
        offset: str | None = None,
        formula: str | None = None,
        max_records: int | None = None,
    ) -> list[tuple[str, Any]]:
        query: list[tuple[str, Any]] = [("pageSize", page_size)]
        if max_records is not None:
            query.append(("maxRecords", max_records))
        if formula:
            query.append(("filterByFormula", formula))
        if offset:
            query.append(("offset", offset))
        for f in self._fields:
            query.append(("fields[]", f))
        return query

    def _fetch(self, query: list[tuple[str, Any]], page_number: int) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._creds.token}"}
        try:
            resp = self._session.get(
                self._url, params=query, headers=headers, timeout=self._timeout
            )
        except requests.RequestException as exc:
            raise SourceFetchError(f"network error fetching page {page_number}: {exc}") from exc

        if not 200 <= resp.status_code < 300:
            raise SourceFetchError(
                f"source returned HTTP {resp.status_code} for page {page_number}: "
                f"{resp.text[:500]}"
            )
        try:
            payload = resp.json()
        except ValueError as exc:
            raise SourceFetchError(f"page {page_number} is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise SourceFetchError(f"page {page_number} payload is not an object")
        return payload


def _parse_records(payload: dict[str, Any], page_number: int) -> list[SourceRecord]:
    raw_records = payload.get("records")
    if raw_records is None:
        raw_records = []
    if not isinstance(raw_records, list):
        raise SourceFetchError(f"page {page_number}: 'records' is not a list")

    out: list[SourceRecord] = []
    for rec in raw_records:
        rec_id = rec.get("id") if isinstance(rec, dict) else None
        if not rec_id:
            raise SourceFetchError(f"page {page_number}: source returned a record without 'id'")
        out.append(
            SourceRecord(
                record_id=rec_id,
                fields=rec.get("fields") or {},
                created_time=rec.get("createdTime"),
            )
        )
    return out
