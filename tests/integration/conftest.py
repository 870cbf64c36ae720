"""Fixtures for the database-backed import tests.

pytest-postgresql starts a throwaway server; db_conn creates the job-board
tables from migrations/0001_core_tables.sql for every test, and write_csv
lays out source files under tmp_path in the shape the importer reads.
"""

from __future__ import annotations

import csv
from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

SCHEMA_SQL = Path(__file__).resolve().parents[2] / "migrations" / "0001_core_tables.sql"

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Database fixture
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """(connection, dsn) to a database holding empty job-board tables.

    The connection is handed over with autocommit off, the mode the
    pipeline expects; the dsn is for CLI tests that connect on their own.
    """
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        conn.execute(SCHEMA_SQL.read_text(encoding="utf-8"))
        conn.autocommit = False
        yield conn, dsn
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# CSV helper
# ---------------------------------------------------------------------------

@pytest.fixture
def write_csv(tmp_path):
    """Write rows (list of dicts, header from the first) to tmp_path/name."""
    def _write(name: str, rows: list[dict[str, str]], header: list[str] | None = None) -> Path:
        path = tmp_path / name
        fieldnames = header or list(rows[0].keys())
        with path.open("w", newline="", encoding="utf-8") as fh:
            writer = csv.DictWriter(fh, fieldnames=fieldnames)
            writer.writeheader()
            for row in rows:
                writer.writerow(row)
        return path

    return _write
