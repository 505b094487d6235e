"""clinic_etl.batch

Page upsert: one page of CanonicalRecords, one transaction.

Per record, in order:
  1.  organization → location → customer → automation
  2.  conversation upsert keyed by source_id (mutable fields only on update)
  3.  booking, when booking_exists and none exists for the conversation
  4.  lead, when lead_created and none exists for the conversation

Any failure rolls back the whole page and is re-raised as BatchFailure.
Pages are never partially committed.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Iterable

import psycopg

from clinic_etl.resolve import (
    Resolved,
    customer_key,
    resolve_automation,
    resolve_customer,
    resolve_location,
    resolve_organization,
)
from clinic_etl.shared import BatchFailure
from clinic_etl.transform import CanonicalRecord

log = logging.getLogger(__name__)

BOOKING_SCHEDULED = "scheduled"
BOOKING_UNDATED = "undated"
LEAD_SOURCE = "chatbot"
LEAD_STATUS = "new"


class BatchOutcome(str, Enum):
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass(frozen=True)
class EntityRefs:
    organization_id: str
    location_id: str
    automation_id: str
    customer_id: str


@dataclass(frozen=True)
class RecordResult:
    conversation_id: str
    conversation_created: bool
    booking_created: bool
    lead_created: bool
    organization_created: bool
    location_created: bool
    customer_created: bool
    customer_updated: bool


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

@dataclass
class BatchCounters:
    processed: int = 0
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
    outcome: BatchOutcome | None = None

    def add(self, record: CanonicalRecord, result: RecordResult) -> None:
        self.processed += 1
        if result.conversation_created:
            self.created += 1
            self.conversations += 1
        else:
            self.updated += 1
        self.bookings += int(result.booking_created)
        self.leads += int(result.lead_created)
        self.engaged += int(record.engaged)
        self.clients += int(result.organization_created)
        self.locations += int(result.location_created)
        self.customers += int(result.customer_created)
        self.customers_updated += int(result.customer_updated)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["outcome"] = self.outcome.value if self.outcome else None
        return d


# ---------------------------------------------------------------------------
# Table writes
# ---------------------------------------------------------------------------

def upsert_conversation(
    conn: psycopg.Connection,
    record: CanonicalRecord,
    refs: EntityRefs,
) -> Resolved:
    """Insert by source_id, or refresh transcript/engaged/lead_created only.

    Foreign keys are fixed at creation and never rewritten.
    """
    row = conn.execute(
        """
        INSERT INTO conversations
          (source_id, organization_id, location_id, automation_id, customer_id,
           transcript, engaged, lead_created, created_at)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (source_id) DO UPDATE SET
          transcript = COALESCE(EXCLUDED.transcript, conversations.transcript),
          engaged = EXCLUDED.engaged,
          lead_created = EXCLUDED.lead_created,
          updated_at = now()
        RETURNING id, (xmax = 0) AS inserted
        """,
        (record.source_id, refs.organization_id, refs.location_id,
         refs.automation_id, refs.customer_id, record.conversation_text,
         record.engaged, record.lead_created, record.created_at),
    ).fetchone()
    return Resolved(id=str(row[0]), created=bool(row[1]))


def insert_booking_if_absent(
    conn: psycopg.Connection,
    conversation_id: str,
    refs: EntityRefs,
    record: CanonicalRecord,
) -> bool:
    """At most one booking per conversation.  Returns True when inserted."""
    status = BOOKING_SCHEDULED if record.booking_at is not None else BOOKING_UNDATED
    row = conn.execute(
        """
        INSERT INTO bookings
          (conversation_id, organization_id, location_id, automation_id,
           customer_id, booked_at, status, created_at)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (conversation_id) DO NOTHING
        RETURNING id
        """,
        (conversation_id, refs.organization_id, refs.location_id,
         refs.automation_id, refs.customer_id, record.booking_at, status,
         record.created_at),
    ).fetchone()
    return row is not None


def insert_lead_if_absent(
    conn: psycopg.Connection,
    conversation_id: str,
    refs: EntityRefs,
    record: CanonicalRecord,
) -> bool:
    """At most one lead per conversation.  Returns True when inserted."""
    row = conn.execute(
        """
        INSERT INTO leads
          (conversation_id, organization_id, location_id, automation_id,
           customer_id, source, status, created_at)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (conversation_id) DO NOTHING
        RETURNING id
        """,
        (conversation_id, refs.organization_id, refs.location_id,
         refs.automation_id, refs.customer_id, LEAD_SOURCE, LEAD_STATUS,
         record.created_at),
    ).fetchone()
    return row is not None


def upsert_record(conn: psycopg.Connection, record: CanonicalRecord) -> RecordResult:
    """Resolve entities and write one record.  Caller owns the transaction."""
    org = resolve_organization(conn, record.organization_name)
    loc = resolve_location(conn, org.id, record.organization_name)
    external_id = customer_key(record)
    if not record.external_customer_id:
        log.warning("Record %s has no customer id, using %s", record.source_id, external_id)
    cust = resolve_customer(conn, external_id, record)
    automation_id = resolve_automation(conn, record.automation_code)

    refs = EntityRefs(
        organization_id=org.id,
        location_id=loc.id,
        automation_id=automation_id,
        customer_id=cust.id,
    )
    conv = upsert_conversation(conn, record, refs)

    booking_created = False
    if record.booking_exists:
        booking_created = insert_booking_if_absent(conn, conv.id, refs, record)

    lead_created = False
    if record.lead_created:
        lead_created = insert_lead_if_absent(conn, conv.id, refs, record)

    return RecordResult(
        conversation_id=conv.id,
        conversation_created=conv.created,
        booking_created=booking_created,
        lead_created=lead_created,
        organization_created=org.created,
        location_created=loc.created,
        customer_created=cust.created,
        customer_updated=cust.updated,
    )


# ---------------------------------------------------------------------------
# Page transaction
# ---------------------------------------------------------------------------

def upsert_page(
    conn: psycopg.Connection,
    records: Iterable[CanonicalRecord],
    page_number: int = 1,
) -> BatchCounters:
    """Write one page in a single transaction and commit it.

    ``conn`` must not be in autocommit mode and must have no open
    transaction on entry.
    """
    counters = BatchCounters()
    current: str | None = None
    try:
        for record in records:
            current = record.source_id
            result = upsert_record(conn, record)
            counters.add(record, result)
        conn.commit()
    except Exception as exc:
        conn.rollback()
        counters.outcome = BatchOutcome.ROLLED_BACK
        log.error("Page %d rolled back at record %s: %s", page_number, current, exc)
        raise BatchFailure(page_number, current, exc) from exc

    counters.outcome = BatchOutcome.COMMITTED
    return counters
