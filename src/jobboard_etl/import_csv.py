"""jobboard_etl.import_csv

CLI entrypoint for bulk loading job-board reference data.

Entities (--entity):
  companies    company profiles, upsert on id (default: update on conflict)
  jobs         job postings; rows whose company_id is unknown are skipped
  vendors      vendor contacts; rows whose company_id is unknown are skipped
               (default: do nothing on conflict)
  categories   wholesale reload from a CSV or the YAML seed

Usage:
    python -m jobboard_etl.import_csv \\
        --entity companies \\
        --db-dsn "$DATABASE_URL" \\
        --csv-path "data/companies.csv"

    python -m jobboard_etl.import_csv \\
        --entity jobs \\
        --csv-path "data/jobs.csv" \\
        --batch-size 250 \\
        --create-missing-companies \\
        --rejects-path "artifacts/rejects/jobs_rejects.csv"

    python -m jobboard_etl.import_csv --entity categories --dry-run
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime
from pathlib import Path

import click
import psycopg

from jobboard_etl.config import (
    DEFAULT_CATEGORY_SEED,
    MAX_BATCH_SIZE,
    READ_MODE_FULL,
    READ_MODE_STREAM,
    VALID_ENTITIES,
    CategorySeedValidationError,
    ImportConfig,
    load_category_seed,
)
from jobboard_etl.entities import ENTITIES, max_source_id
from jobboard_etl.pipeline import run_import
from jobboard_etl.reporter import ProgressReporter
from jobboard_etl.shared import (
    ConfigError,
    ImportCounters,
    RejectWriter,
    SourceReadError,
    write_run_report,
)
from jobboard_etl.source import CsvSource

log = logging.getLogger(__name__)


@click.command()
@click.option(
    "--entity",
    required=True,
    type=click.Choice(list(VALID_ENTITIES)),
    help="Target table to load",
)
@click.option("--db-dsn", envvar="DATABASE_URL", required=True, help="PostgreSQL DSN (env: DATABASE_URL)")
@click.option("--csv-path", default=None, type=click.Path(), help="Source CSV (optional for categories)")
@click.option(
    "--category-seed",
    default=str(DEFAULT_CATEGORY_SEED),
    show_default=True,
    type=click.Path(),
    help="[categories] YAML seed used when --csv-path is not given",
)
@click.option("--batch-size", default=500, type=int, show_default=True, help=f"Rows per INSERT (1-{MAX_BATCH_SIZE})")
@click.option(
    "--conflict-policy",
    default=None,
    type=click.Choice(["update", "nothing"]),
    help="Override the entity's default ON CONFLICT behavior",
)
@click.option(
    "--read-mode",
    default=READ_MODE_FULL,
    show_default=True,
    type=click.Choice([READ_MODE_FULL, READ_MODE_STREAM]),
    help="full: load the file into memory; stream: parse from an open handle",
)
@click.option("--max-errors", default=100, type=int, show_default=True, help="Abort once row errors exceed this")
@click.option("--progress-every", default=10, type=int, show_default=True, help="Progress line every N batches")
@click.option("--sample-size", default=5, type=int, show_default=True, help="Rows echoed by the post-load check")
@click.option("--import-user", default="admin", show_default=True, help="Identity recorded on imported rows")
@click.option("--dry-run", is_flag=True, default=False, help="Run everything in one transaction, then roll back")
@click.option("--truncate", is_flag=True, default=False, help="TRUNCATE ... CASCADE the table before loading")
@click.option(
    "--resume-after-max-id",
    is_flag=True,
    default=False,
    help="Skip rows whose id is at or below the table's current MAX(id)",
)
@click.option(
    "--create-missing-companies",
    is_flag=True,
    default=False,
    help="[jobs] Insert placeholder companies for unknown company_id values",
)
@click.option(
    "--relax-foreign-keys",
    is_flag=True,
    default=False,
    help="Drop the table's foreign keys during the load and restore them afterwards",
)
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/jobboard_rejects.csv",
    show_default=True,
    type=click.Path(),
)
@click.option("--report-dir", default="./artifacts/reports", show_default=True, type=click.Path())
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    default="WARNING",
    show_default=True,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
)
def main(
    entity: str,
    db_dsn: str,
    csv_path: str | None,
    category_seed: str,
    batch_size: int,
    conflict_policy: str | None,
    read_mode: str,
    max_errors: int,
    progress_every: int,
    sample_size: int,
    import_user: str,
    dry_run: bool,
    truncate: bool,
    resume_after_max_id: bool,
    create_missing_companies: bool,
    relax_foreign_keys: bool,
    rejects_path: str,
    report_dir: str,
    run_id: str | None,
    log_level: str,
) -> None:
    """Bulk upsert job-board reference data from CSV into PostgreSQL."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config_kwargs = dict(
        entity=entity,
        db_dsn=db_dsn,
        csv_path=Path(csv_path) if csv_path else None,
        batch_size=batch_size,
        conflict_policy=conflict_policy,
        read_mode=read_mode,
        max_errors=max_errors,
        progress_every=progress_every,
        sample_size=sample_size,
        import_user=import_user,
        dry_run=dry_run,
        truncate=truncate,
        resume_after_max_id=resume_after_max_id,
        create_missing_companies=create_missing_companies,
        relax_foreign_keys=relax_foreign_keys,
        rejects_path=Path(rejects_path),
        report_dir=Path(report_dir),
    )
    if run_id:
        config_kwargs["run_id"] = run_id
    config = ImportConfig(**config_kwargs)
    run_id = config.run_id
    schema = ENTITIES[entity]
    started_at = datetime.utcnow().isoformat()

    try:
        config.validate(column_count=len(schema.columns))
    except ConfigError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)

    counters = ImportCounters()
    rejects = RejectWriter(config.rejects_path)
    reporter = ProgressReporter(
        run_id, counters,
        progress_every=config.progress_every,
        max_errors=config.max_errors,
    )
    reporter.echo(f"Starting {entity} import (dry_run={dry_run})")

    # Pre-flight: every source problem is fatal before the DB is touched
    try:
        if config.csv_path is not None:
            source = CsvSource(
                config.csv_path,
                set(schema.required_headers),
                counters,
                rejects,
                mode=config.read_mode,
            ).open()
            reporter.echo(
                f"Source {config.csv_path} ({source.encoding}, {len(source.headers)} columns)"
            )
            source_max = max_source_id(source.column_values(schema.key_column))
            rows = source.rows()
            headers = source.headers
            source_path = str(config.csv_path)
        else:
            seed_rows = load_category_seed(Path(category_seed))
            counters.rows_read = len(seed_rows)
            reporter.echo(f"Category seed {category_seed}: {len(seed_rows)} categories")
            source_max = max_source_id(r[schema.key_column] for r in seed_rows)
            rows = iter(seed_rows)
            headers = list(seed_rows[0].keys())
            source_path = category_seed
    except (SourceReadError, CategorySeedValidationError, OSError) as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        rejects.close()
        sys.exit(1)

    try:
        conn = psycopg.connect(config.db_dsn, autocommit=False)
    except psycopg.OperationalError as exc:
        click.echo(f"[{run_id}] FATAL: cannot connect to database: {exc}", err=True)
        rejects.close()
        sys.exit(1)

    failed = False
    try:
        run_import(
            conn, schema, config, rows, headers, counters, rejects, reporter,
            source_max_id=source_max,
        )
    except Exception as exc:
        log.exception("Import of %s failed", entity)
        click.echo(f"[{run_id}] FATAL: {type(exc).__name__}: {exc}", err=True)
        counters.aborted_reason = f"{type(exc).__name__}: {exc}"
        failed = True
    finally:
        conn.close()
        rejects.close()

    reporter.summary()
    if rejects.rows_written:
        reporter.echo(f"Rejects: {rejects.rows_written} rows written to {rejects.path}")
    for warning in counters.warnings:
        reporter.echo(f"WARNING: {warning}", err=True)

    report_path = write_run_report(
        run_id, started_at, entity, dry_run, source_path,
        config.settings(), counters, config.report_dir,
    )
    click.echo(json.dumps(counters.to_dict(), indent=2, default=str))
    reporter.echo(f"Run report: {report_path}")

    if failed or counters.aborted_reason:
        sys.exit(1)


if __name__ == "__main__":
    main()
