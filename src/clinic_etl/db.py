"""clinic_etl.db

Schema bootstrap and table counts.

Migrations are plain SQL files under <repo>/migrations, applied in file
name order.  Every statement in them is idempotent (IF NOT EXISTS /
ON CONFLICT DO NOTHING), so re-applying is safe.
"""

from __future__ import annotations

import logging
from pathlib import Path

import psycopg

log = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parents[2] / "migrations"

COUNT_QUERIES: dict[str, str] = {
    "conversations": "SELECT count(*) FROM conversations",
    "bookings": "SELECT count(*) FROM bookings",
    "leads": "SELECT count(*) FROM leads",
    "engaged": "SELECT count(*) FROM conversations WHERE engaged",
    "lead_flagged": "SELECT count(*) FROM conversations WHERE lead_created",
    "organizations": "SELECT count(*) FROM organizations",
    "locations": "SELECT count(*) FROM locations",
    "customers": "SELECT count(*) FROM customers",
    "undated_bookings": "SELECT count(*) FROM bookings WHERE booked_at IS NULL",
}


def migration_paths(migrations_dir: Path = MIGRATIONS_DIR) -> list[Path]:
    paths = sorted(migrations_dir.glob("*.sql"))
    if not paths:
        raise FileNotFoundError(f"no migrations found in {migrations_dir}")
    return paths


def apply_migrations(conn: psycopg.Connection, paths: list[Path] | None = None) -> list[str]:
    """Apply each migration file in one transaction and commit.

    Returns the applied file names.
    """
    applied: list[str] = []
    try:
        for path in paths if paths is not None else migration_paths():
            conn.execute(path.read_text(encoding="utf-8"))
            applied.append(path.name)
            log.info("Applied migration %s", path.name)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return applied


def table_counts(conn: psycopg.Connection) -> dict[str, int]:
    counts = {name: int(conn.execute(sql).fetchone()[0]) for name, sql in COUNT_QUERIES.items()}
    conn.commit()
    return counts
