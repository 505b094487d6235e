"""Integration fixtures: an ephemeral PostgreSQL (pytest-postgresql) with
every migration under migrations/ applied, fresh per test.
"""

from __future__ import annotations

import psycopg
import pytest
from pytest_postgresql import factories

from clinic_etl.db import apply_migrations, migration_paths

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


def _dsn(info) -> str:
    return (
        f"host={info.host} port={info.port} dbname={info.dbname} "
        f"user={info.user} password={info.password or ''}"
    )


@pytest.fixture
def db_conn(postgresql):
    """(connection, dsn) on a migrated database; the connection is not autocommit."""
    dsn = _dsn(postgresql.info)
    conn = psycopg.connect(dsn, autocommit=False)
    try:
        apply_migrations(conn, migration_paths())
        yield conn, dsn
    finally:
        conn.close()
