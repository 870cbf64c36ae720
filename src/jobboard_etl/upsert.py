"""jobboard_etl.upsert

Batch upserter: one multi-row INSERT per batch with an explicit conflict
policy, falling back to single-row inserts when the batch statement fails.

Statements are composed with psycopg.sql (quoted identifiers, positional
placeholders); record values only ever travel as bind parameters.

Savepoint layout inside the caller's transaction:
  SAVEPOINT upsert_batch    the multi-row statement
  SAVEPOINT upsert_row      each single-row retry after a batch failure
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import psycopg
from psycopg import sql

from jobboard_etl.config import CONFLICT_NOTHING, CONFLICT_UPDATE
from jobboard_etl.entities import EntitySchema
from jobboard_etl.reporter import ProgressReporter, first_line
from jobboard_etl.shared import RejectWriter

log = logging.getLogger(__name__)

_BATCH_SAVEPOINT = "upsert_batch"
_ROW_SAVEPOINT = "upsert_row"


# ---------------------------------------------------------------------------
# Statement building
# ---------------------------------------------------------------------------

def build_insert_sql(
    table: str,
    columns: Sequence[str],
    row_count: int,
    conflict_policy: str,
    update_columns: Sequence[str] = (),
    key_column: str = "id",
    touch_updated_at: bool = False,
) -> sql.Composed:
    """Return INSERT ... VALUES (...), ... ON CONFLICT ... for row_count rows."""
    if row_count < 1:
        raise ValueError("row_count must be >= 1")
    if conflict_policy not in (CONFLICT_UPDATE, CONFLICT_NOTHING):
        raise ValueError(f"unknown conflict policy {conflict_policy!r}")

    one_row = sql.SQL("({})").format(
        sql.SQL(", ").join([sql.Placeholder()] * len(columns))
    )
    query = sql.SQL("INSERT INTO {table} ({cols}) VALUES {rows}").format(
        table=sql.Identifier(table),
        cols=sql.SQL(", ").join(map(sql.Identifier, columns)),
        rows=sql.SQL(", ").join([one_row] * row_count),
    )

    assignments = [
        sql.SQL("{col} = EXCLUDED.{col}").format(col=sql.Identifier(c))
        for c in update_columns
    ]
    if touch_updated_at:
        assignments.append(sql.SQL("{} = NOW()").format(sql.Identifier("updated_at")))

    if conflict_policy == CONFLICT_NOTHING or not assignments:
        conflict = sql.SQL(" ON CONFLICT ({key}) DO NOTHING").format(
            key=sql.Identifier(key_column)
        )
    else:
        conflict = sql.SQL(" ON CONFLICT ({key}) DO UPDATE SET {sets}").format(
            key=sql.Identifier(key_column),
            sets=sql.SQL(", ").join(assignments),
        )
    return sql.Composed([query, conflict])


def flatten_params(records: Sequence[dict[str, Any]], columns: Sequence[str]) -> list[Any]:
    """Positional parameters for records in source order, column order within a row."""
    return [record[c] for record in records for c in columns]


# ---------------------------------------------------------------------------
# BatchUpserter
# ---------------------------------------------------------------------------

@dataclass
class BatchResult:
    imported: int = 0
    unchanged: int = 0
    errored: int = 0
    fell_back: bool = False


class BatchUpserter:
    """Execute batches for one entity/table with a fixed conflict policy."""

    def __init__(
        self,
        conn: psycopg.Connection,
        schema: EntitySchema,
        conflict_policy: str,
        update_columns: Sequence[str],
        reporter: ProgressReporter,
        rejects: RejectWriter,
    ) -> None:
        self.conn = conn
        self.schema = schema
        self.conflict_policy = conflict_policy
        self.update_columns = tuple(update_columns)
        self.reporter = reporter
        self.rejects = rejects
        self._single_row_sql = self._statement(1)

    def _statement(self, row_count: int) -> sql.Composed:
        return build_insert_sql(
            self.schema.table,
            self.schema.columns,
            row_count,
            self.conflict_policy,
            self.update_columns,
            key_column=self.schema.key_column,
            touch_updated_at=self.schema.has_updated_at,
        )

    def upsert(
        self,
        batch: Sequence[tuple[dict[str, str], dict[str, Any]]],
        batch_no: int,
    ) -> BatchResult:
        """Insert (raw_row, record) pairs as one statement, isolating bad rows on failure.

        Raises:
            CircuitBreakerTripped: propagated from the reporter when the
                cumulative row error count passes its limit.
        """
        result = BatchResult()
        if not batch:
            return result
        records = [record for _, record in batch]

        self.conn.execute(f"SAVEPOINT {_BATCH_SAVEPOINT}")
        try:
            cur = self.conn.execute(
                self._statement(len(records)),
                flatten_params(records, self.schema.columns),
            )
            affected = max(cur.rowcount, 0)
            self.conn.execute(f"RELEASE SAVEPOINT {_BATCH_SAVEPOINT}")
        except psycopg.Error as exc:
            self.conn.execute(f"ROLLBACK TO SAVEPOINT {_BATCH_SAVEPOINT}")
            self.conn.execute(f"RELEASE SAVEPOINT {_BATCH_SAVEPOINT}")
            log.debug("Batch %s statement failed", batch_no, exc_info=True)
            self.reporter.batch_failed(batch_no, len(records), exc)
            result.fell_back = True
            self._upsert_rows(batch, result)
        else:
            result.imported = affected
            result.unchanged = len(records) - affected
            self.reporter.rows_done(result.imported, result.unchanged)

        self.reporter.batch_done(batch_no)
        return result

    def _upsert_rows(
        self,
        batch: Sequence[tuple[dict[str, str], dict[str, Any]]],
        result: BatchResult,
    ) -> None:
        for raw, record in batch:
            self.conn.execute(f"SAVEPOINT {_ROW_SAVEPOINT}")
            try:
                cur = self.conn.execute(
                    self._single_row_sql,
                    flatten_params([record], self.schema.columns),
                )
                self.conn.execute(f"RELEASE SAVEPOINT {_ROW_SAVEPOINT}")
            except psycopg.Error as exc:
                self.conn.execute(f"ROLLBACK TO SAVEPOINT {_ROW_SAVEPOINT}")
                self.conn.execute(f"RELEASE SAVEPOINT {_ROW_SAVEPOINT}")
                result.errored += 1
                self.rejects.write(raw, f"db_error: {first_line(exc)}")
                # may raise CircuitBreakerTripped
                self.reporter.row_failed(self.schema.label(record), exc)
                continue
            if cur.rowcount > 0:
                result.imported += 1
                self.reporter.rows_done(1, 0)
            else:
                result.unchanged += 1
                self.reporter.rows_done(0, 1)


# ---------------------------------------------------------------------------
# Placeholder parents
# ---------------------------------------------------------------------------

def insert_placeholder_companies(
    conn: psycopg.Connection,
    company_ids: Sequence[int],
    import_user: str,
) -> int:
    """Insert synthetic 'Company {id}' rows for ids referenced by jobs but absent.

    Existing ids are left untouched (DO NOTHING).  Returns rows inserted.
    """
    if not company_ids:
        return 0
    columns = ("id", "name", "description", "status", "user_id", "approved_by")
    params: list[Any] = []
    for cid in sorted(company_ids):
        params.extend([
            cid,
            f"Company {cid}",
            f"Auto-generated company profile for company ID {cid}",
            "approved",
            import_user,
            import_user,
        ])
    cur = conn.execute(
        build_insert_sql("companies", columns, len(company_ids), CONFLICT_NOTHING),
        params,
    )
    return max(cur.rowcount, 0)
