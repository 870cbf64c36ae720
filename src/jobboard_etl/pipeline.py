"""jobboard_etl.pipeline

Generic bulk upsert pipeline, instantiated per entity by an EntitySchema.

Processing order:
  1.  Optional reseed: TRUNCATE <table> CASCADE (companies/jobs/vendors) or
      DELETE FROM categories (categories are always reloaded wholesale)
  2.  Snapshot parent ids (companies, categories) and the table's MAX(id)
  3.  For each source row, in file order:
        map → RowRejected? count + reject file : append to batch
  4.  Every batch_size records:
        a.  insert placeholder companies queued by the mapper (jobs only)
        b.  SAVEPOINT upsert_batch → multi-row INSERT ... ON CONFLICT
        c.  on failure: single-row retries, each under its own savepoint
        d.  COMMIT (real runs, except categories which commit once at the end)
  5.  Categories only: null jobs.category_id values the reload left dangling
  6.  Reconcile: sequence reset, row count, samples, orphan count

Dry-run: one transaction for the whole run, rolled back at the end.  The
sequence reset is skipped because setval() is not transactional.
"""

from __future__ import annotations

from collections.abc import Iterable
from contextlib import ExitStack
from typing import Any

import psycopg
from psycopg import sql

from jobboard_etl.config import ImportConfig
from jobboard_etl.entities import (
    REJECT_REFERENTIAL,
    REJECT_RESUME,
    EntitySchema,
    IdAllocator,
    MapContext,
    RowRejected,
)
from jobboard_etl.reconcile import (
    count_orphans,
    count_rows,
    existing_ids,
    max_id,
    null_dangling_categories,
    relaxed_foreign_keys,
    reset_sequence,
    sample_rows,
)
from jobboard_etl.reporter import ProgressReporter
from jobboard_etl.shared import CircuitBreakerTripped, ImportCounters, RejectWriter
from jobboard_etl.upsert import BatchUpserter, insert_placeholder_companies


# ---------------------------------------------------------------------------
# Reseed helpers
# ---------------------------------------------------------------------------

def truncate_for_reseed(conn: psycopg.Connection, table: str) -> None:
    """TRUNCATE the table and every table referencing it (jobs, vendors, job_applications)."""
    conn.execute(sql.SQL("TRUNCATE {} CASCADE").format(sql.Identifier(table)))


def clear_categories(conn: psycopg.Connection) -> int:
    """Delete every category; the jobs FK is deferred so the reload commits as a unit."""
    cur = conn.execute("DELETE FROM categories")
    return max(cur.rowcount, 0)


# ---------------------------------------------------------------------------
# Main entry
# ---------------------------------------------------------------------------

def run_import(
    conn: psycopg.Connection,
    schema: EntitySchema,
    config: ImportConfig,
    rows: Iterable[dict[str, str]],
    headers: list[str],
    counters: ImportCounters,
    rejects: RejectWriter,
    reporter: ProgressReporter,
    source_max_id: int = 0,
) -> ImportCounters:
    """Load rows into schema.table and reconcile.

    The caller owns the connection (autocommit=False) and closes it.
    source_max_id is the largest id present in the source; synthetic ids
    for blank-id rows start above it and above the table's MAX(id).
    CircuitBreakerTripped is caught here and recorded in
    counters.aborted_reason; any other exception propagates after the
    open transaction is rolled back.
    """
    wholesale = schema.name == "categories"
    commit_each_batch = not config.dry_run and not wholesale

    try:
        with ExitStack() as stack:
            if config.relax_foreign_keys:
                dropped = stack.enter_context(
                    relaxed_foreign_keys(
                        conn, schema.table,
                        commit=not config.dry_run,
                        warnings=counters.warnings,
                    )
                )
                reporter.echo(f"Foreign keys relaxed on {schema.table}: {dropped}")

            if config.truncate:
                truncate_for_reseed(conn, schema.table)
                reporter.echo(f"Truncated {schema.table} (cascade)")
            if wholesale:
                removed = clear_categories(conn)
                reporter.echo(f"Cleared {removed} existing categories")

            ctx = _build_context(conn, schema, config, counters, reporter, source_max_id)
            _load(conn, schema, config, ctx, rows, headers, counters, rejects,
                  reporter, commit_each_batch)
            if wholesale:
                nulled = null_dangling_categories(conn)
                counters.categories_nulled += nulled
                if nulled:
                    reporter.echo(f"Cleared category_id on {nulled} jobs whose category was not reloaded")
            reconcile(conn, schema, config, counters, reporter)
    except BaseException:
        conn.rollback()
        raise

    # after the stack so a dry run also rolls back the constraint drop/restore
    if config.dry_run:
        conn.rollback()
        reporter.echo("[dry-run] All changes rolled back.")
    else:
        conn.commit()
    return counters


def _build_context(
    conn: psycopg.Connection,
    schema: EntitySchema,
    config: ImportConfig,
    counters: ImportCounters,
    reporter: ProgressReporter,
    source_max_id: int = 0,
) -> MapContext:
    start_max = max_id(conn, schema.table, schema.key_column)
    ctx = MapContext(
        counters=counters,
        ids=IdAllocator(max(start_max, source_max_id)),
        import_user=config.import_user,
        create_missing_companies=config.create_missing_companies,
        resume_floor=start_max if config.resume_after_max_id else None,
    )
    if config.resume_after_max_id:
        reporter.echo(f"Resuming after existing MAX(id)={start_max}")
    # with FKs relaxed the point is to load without parent checks
    if not config.relax_foreign_keys:
        if schema.requires_companies:
            ctx.company_ids = existing_ids(conn, "companies")
            reporter.echo(f"Company id snapshot: {len(ctx.company_ids)} ids")
        if schema.requires_categories:
            ctx.category_ids = existing_ids(conn, "categories")
    return ctx


def _load(
    conn: psycopg.Connection,
    schema: EntitySchema,
    config: ImportConfig,
    ctx: MapContext,
    rows: Iterable[dict[str, str]],
    headers: list[str],
    counters: ImportCounters,
    rejects: RejectWriter,
    reporter: ProgressReporter,
    commit_each_batch: bool,
) -> None:
    policy = config.conflict_policy or schema.default_conflict_policy
    upserter = BatchUpserter(
        conn, schema, policy, schema.update_columns_for(headers), reporter, rejects,
    )
    reporter.echo(
        f"Loading {schema.table}: batch_size={config.batch_size} conflict_policy={policy}"
    )

    batch: list[tuple[dict[str, str], dict[str, Any]]] = []
    batch_no = 0

    def flush() -> None:
        nonlocal batch_no
        batch_no += 1
        if ctx.pending_placeholders:
            created = insert_placeholder_companies(
                conn, sorted(ctx.pending_placeholders), ctx.import_user,
            )
            counters.placeholder_companies_created += created
            ctx.pending_placeholders.clear()
        upserter.upsert(batch, batch_no)
        batch.clear()
        if commit_each_batch:
            conn.commit()

    try:
        for raw in rows:
            try:
                record = schema.mapper(raw, ctx)
            except RowRejected as rej:
                counters.rows_skipped += 1
                if rej.kind == REJECT_RESUME:
                    counters.rows_skipped_resume += 1
                    continue
                if rej.kind == REJECT_REFERENTIAL:
                    counters.rows_skipped_referential += 1
                rejects.write(raw, rej.reason)
                continue
            batch.append((raw, record))
            if len(batch) >= config.batch_size:
                flush()
        if batch:
            flush()
    except CircuitBreakerTripped as exc:
        counters.aborted_reason = str(exc)
        reporter.echo(f"ABORT: {exc}; remaining rows not processed", err=True)
        if commit_each_batch:
            conn.commit()


# ---------------------------------------------------------------------------
# Post-pass reconciler
# ---------------------------------------------------------------------------

def reconcile(
    conn: psycopg.Connection,
    schema: EntitySchema,
    config: ImportConfig,
    counters: ImportCounters,
    reporter: ProgressReporter,
) -> None:
    if config.dry_run:
        reporter.echo(
            f"[dry-run] Sequence reset skipped; would set to "
            f"{max_id(conn, schema.table, schema.key_column)}"
        )
    else:
        counters.sequence_value = reset_sequence(conn, schema.table, schema.key_column)
        reporter.echo(f"Sequence for {schema.table} set to {counters.sequence_value}")

    counters.final_row_count = count_rows(conn, schema.table)
    reporter.echo(f"{schema.table} row count: {counters.final_row_count}")

    sample_cols = (schema.key_column, schema.label_column)
    if schema.requires_companies:
        sample_cols = sample_cols + ("company_id",)
    samples = sample_rows(conn, schema.table, sample_cols, config.sample_size, schema.key_column)
    if samples:
        reporter.echo(f"Sample {schema.table}:")
        for sample in samples:
            reporter.echo("  " + " | ".join("" if v is None else str(v) for v in sample))

    if schema.requires_companies:
        counters.orphan_rows = count_orphans(conn, schema.table, "companies")
        reporter.echo(
            f"Referential check: {counters.rows_skipped_referential} rows skipped "
            f"for unknown company_id, {counters.orphan_rows} orphan rows in table"
        )
