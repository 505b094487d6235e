"""clinic_etl.resolve

Entity resolution against natural keys.  Every helper runs on the caller's
open connection inside the caller's transaction and is idempotent on its own:
calling it twice with the same input returns the same id and creates nothing
the second time.

  organization  natural_key = organization_key(name)
  location      one per organization
  automation    code
  customer      external id, or 'no-user-id-<source_id>' when absent
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import psycopg

from clinic_etl.normalize import organization_email, organization_key
from clinic_etl.transform import CanonicalRecord

log = logging.getLogger(__name__)

UNKNOWN_ORGANIZATION = "Unknown Clinic"
UNKNOWN_LOCATION = "Unknown Location"
SYNTHETIC_CUSTOMER_PREFIX = "no-user-id-"


@dataclass(frozen=True)
class Resolved:
    id: str
    created: bool


@dataclass(frozen=True)
class ResolvedCustomer:
    id: str
    created: bool
    updated: bool


# ---------------------------------------------------------------------------
# Organization / location
# ---------------------------------------------------------------------------

def resolve_organization(conn: psycopg.Connection, name: str | None) -> Resolved:
    """Look up an organization by derived key; insert on miss."""
    key = organization_key(name)
    display = name if key else UNKNOWN_ORGANIZATION
    if key is None:
        key = organization_key(UNKNOWN_ORGANIZATION)

    row = conn.execute(
        "SELECT id FROM organizations WHERE natural_key = %s",
        (key,),
    ).fetchone()
    if row:
        return Resolved(id=str(row[0]), created=False)

    new_row = conn.execute(
        """
        INSERT INTO organizations (name, natural_key, email)
        VALUES (%s, %s, %s)
        RETURNING id
        """,
        (display, key, organization_email(key)),
    ).fetchone()
    log.info("Created organization %r (key=%s)", display, key)
    return Resolved(id=str(new_row[0]), created=True)


def resolve_location(
    conn: psycopg.Connection,
    organization_id: str,
    name: str | None,
) -> Resolved:
    """Return the organization's location, creating it (and its automation links) on miss."""
    row = conn.execute(
        "SELECT id FROM locations WHERE organization_id = %s",
        (organization_id,),
    ).fetchone()
    if row:
        return Resolved(id=str(row[0]), created=False)

    new_row = conn.execute(
        """
        INSERT INTO locations (organization_id, name, address, city, state)
        VALUES (%s, %s, NULL, NULL, NULL)
        RETURNING id
        """,
        (organization_id, name or UNKNOWN_LOCATION),
    ).fetchone()
    location_id = str(new_row[0])
    link_all_automations(conn, location_id)
    return Resolved(id=location_id, created=True)


def link_all_automations(conn: psycopg.Connection, location_id: str) -> int:
    """Backfill location_automations so every known automation is linked.

    Returns the number of links inserted.
    """
    cur = conn.execute(
        """
        INSERT INTO location_automations (location_id, automation_id)
        SELECT %s, a.id FROM automations a
        ON CONFLICT (location_id, automation_id) DO NOTHING
        """,
        (location_id,),
    )
    return cur.rowcount


# ---------------------------------------------------------------------------
# Automation
# ---------------------------------------------------------------------------

def resolve_automation(conn: psycopg.Connection, code: str) -> str:
    """Return the automation id for ``code``; codes are pre-validated upstream."""
    row = conn.execute(
        "SELECT id FROM automations WHERE code = %s",
        (code,),
    ).fetchone()
    if row:
        return str(row[0])

    conn.execute(
        """
        INSERT INTO automations (code, name)
        VALUES (%s, %s)
        ON CONFLICT (code) DO NOTHING
        """,
        (code, code),
    )
    row = conn.execute(
        "SELECT id FROM automations WHERE code = %s",
        (code,),
    ).fetchone()
    automation_id = str(row[0])
    # New catalog entry: keep per-location automation breakdowns complete.
    conn.execute(
        """
        INSERT INTO location_automations (location_id, automation_id)
        SELECT l.id, %s FROM locations l
        ON CONFLICT (location_id, automation_id) DO NOTHING
        """,
        (automation_id,),
    )
    log.info("Created automation %s", code)
    return automation_id


# ---------------------------------------------------------------------------
# Customer
# ---------------------------------------------------------------------------

def customer_key(record: CanonicalRecord) -> str:
    """Real external id, or a deterministic synthetic key derived from source_id."""
    if record.external_customer_id:
        return record.external_customer_id
    return f"{SYNTHETIC_CUSTOMER_PREFIX}{record.source_id}"


def resolve_customer(
    conn: psycopg.Connection,
    external_id: str,
    record: CanonicalRecord,
) -> ResolvedCustomer:
    """Refresh non-null fields and bump last_activity on hit; insert on miss."""
    row = conn.execute(
        "SELECT id FROM customers WHERE external_id = %s",
        (external_id,),
    ).fetchone()
    if row:
        conn.execute(
            """
            UPDATE customers SET
              name = COALESCE(%s, name),
              email = COALESCE(%s, email),
              phone = COALESCE(%s, phone),
              last_activity = GREATEST(last_activity, %s::timestamptz)
            WHERE id = %s
            """,
            (record.name, record.email, record.phone, record.created_at, row[0]),
        )
        return ResolvedCustomer(id=str(row[0]), created=False, updated=True)

    new_row = conn.execute(
        """
        INSERT INTO customers (external_id, name, email, phone, first_seen, last_activity)
        VALUES (%s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (external_id, record.name, record.email, record.phone,
         record.created_at, record.created_at),
    ).fetchone()
    return ResolvedCustomer(id=str(new_row[0]), created=True, updated=False)
