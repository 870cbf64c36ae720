"""jobboard_etl.reconcile

Post-load reconciliation: sequence reset, verification queries and
referential-integrity reporting, plus the scoped foreign-key relaxation used
by emergency loads.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import psycopg
from psycopg import errors, pq, sql

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Sequence reset
# ---------------------------------------------------------------------------

def reset_sequence(conn: psycopg.Connection, table: str, key_column: str = "id") -> int | None:
    """Point the table's serial sequence at MAX(key) so nextval() continues past it.

    Empty table → sequence restarts at 1.  Returns the value the sequence
    was set to, or None when the column has no owned sequence.
    """
    row = conn.execute(
        sql.SQL(
            "SELECT setval(pg_get_serial_sequence(%s, %s), "
            "GREATEST(COALESCE(MAX({key}), 0), 1), MAX({key}) IS NOT NULL) "
            "FROM {table}"
        ).format(key=sql.Identifier(key_column), table=sql.Identifier(table)),
        (table, key_column),
    ).fetchone()
    return row[0] if row else None


def max_id(conn: psycopg.Connection, table: str, key_column: str = "id") -> int:
    row = conn.execute(
        sql.SQL("SELECT COALESCE(MAX({key}), 0) FROM {table}").format(
            key=sql.Identifier(key_column), table=sql.Identifier(table)
        )
    ).fetchone()
    return int(row[0])


def existing_ids(conn: psycopg.Connection, table: str, key_column: str = "id") -> set[int]:
    """Snapshot of parent ids used to pre-filter child rows."""
    rows = conn.execute(
        sql.SQL("SELECT {key} FROM {table}").format(
            key=sql.Identifier(key_column), table=sql.Identifier(table)
        )
    ).fetchall()
    return {int(r[0]) for r in rows}


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

def count_rows(conn: psycopg.Connection, table: str) -> int:
    row = conn.execute(
        sql.SQL("SELECT COUNT(*) FROM {}").format(sql.Identifier(table))
    ).fetchone()
    return int(row[0])


def sample_rows(
    conn: psycopg.Connection,
    table: str,
    columns: tuple[str, ...],
    limit: int,
    key_column: str = "id",
) -> list[tuple[Any, ...]]:
    if limit <= 0:
        return []
    return conn.execute(
        sql.SQL("SELECT {cols} FROM {table} ORDER BY {key} LIMIT %s").format(
            cols=sql.SQL(", ").join(map(sql.Identifier, columns)),
            table=sql.Identifier(table),
            key=sql.Identifier(key_column),
        ),
        (limit,),
    ).fetchall()


def count_orphans(
    conn: psycopg.Connection,
    child_table: str,
    parent_table: str,
    fk_column: str = "company_id",
) -> int:
    """Child rows whose non-null foreign key has no parent row."""
    row = conn.execute(
        sql.SQL(
            "SELECT COUNT(*) FROM {child} c "
            "LEFT JOIN {parent} p ON p.id = c.{fk} "
            "WHERE c.{fk} IS NOT NULL AND p.id IS NULL"
        ).format(
            child=sql.Identifier(child_table),
            parent=sql.Identifier(parent_table),
            fk=sql.Identifier(fk_column),
        )
    ).fetchone()
    return int(row[0])


def null_dangling_categories(conn: psycopg.Connection) -> int:
    """Clear jobs.category_id values that no longer name a category.

    Run after a wholesale category reload, before commit, so the deferred
    foreign key check cannot fail.
    """
    cur = conn.execute(
        """
        UPDATE jobs SET category_id = NULL
        WHERE category_id IS NOT NULL
          AND NOT EXISTS (SELECT 1 FROM categories c WHERE c.id = jobs.category_id)
        """
    )
    return max(cur.rowcount, 0)


# ---------------------------------------------------------------------------
# Scoped foreign-key relaxation
# ---------------------------------------------------------------------------

def foreign_keys(conn: psycopg.Connection, table: str) -> list[tuple[str, str]]:
    """Return (constraint_name, definition) for every FK declared on table."""
    return conn.execute(
        """
        SELECT conname, pg_get_constraintdef(oid)
        FROM pg_constraint
        WHERE conrelid = %s::regclass AND contype = 'f'
        ORDER BY conname
        """,
        (table,),
    ).fetchall()


@contextmanager
def relaxed_foreign_keys(
    conn: psycopg.Connection,
    table: str,
    commit: bool = True,
    warnings: list[str] | None = None,
) -> Iterator[list[str]]:
    """Drop the table's foreign keys for the duration of the block.

    Constraints are restored on every exit path.  When existing rows no
    longer satisfy a constraint it is restored as NOT VALID (enforced for
    new writes only) and a warning is recorded.
    """
    constraints = foreign_keys(conn, table)
    for name, _ in constraints:
        conn.execute(
            sql.SQL("ALTER TABLE {} DROP CONSTRAINT {}").format(
                sql.Identifier(table), sql.Identifier(name)
            )
        )
        log.info("Dropped constraint %s on %s", name, table)
    if commit:
        conn.commit()
    try:
        yield [name for name, _ in constraints]
    finally:
        if conn.info.transaction_status == pq.TransactionStatus.INERROR:
            conn.rollback()
        for name, definition in constraints:
            _restore_constraint(conn, table, name, definition, commit, warnings)


def _restore_constraint(
    conn: psycopg.Connection,
    table: str,
    name: str,
    definition: str,
    commit: bool,
    warnings: list[str] | None,
) -> None:
    # definition comes from pg_get_constraintdef, not from source data
    add = sql.SQL("ALTER TABLE {} ADD CONSTRAINT {} ").format(
        sql.Identifier(table), sql.Identifier(name)
    ) + sql.SQL(definition)
    conn.execute("SAVEPOINT restore_fk")
    try:
        conn.execute(add)
        conn.execute("RELEASE SAVEPOINT restore_fk")
        log.info("Restored constraint %s on %s", name, table)
    except errors.ForeignKeyViolation as exc:
        conn.execute("ROLLBACK TO SAVEPOINT restore_fk")
        conn.execute(add + sql.SQL(" NOT VALID"))
        conn.execute("RELEASE SAVEPOINT restore_fk")
        msg = f"constraint {name} on {table} restored NOT VALID: {exc}"
        log.error(msg)
        if warnings is not None:
            warnings.append(msg)
    if commit:
        conn.commit()
