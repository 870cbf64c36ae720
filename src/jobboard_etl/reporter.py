"""jobboard_etl.reporter

Progress and error reporting for a bulk import run.

State lives entirely in ImportCounters.  The only way the reporter stops a
run is the circuit breaker: row_failed raises CircuitBreakerTripped once
rows_errored exceeds max_errors.
"""

from __future__ import annotations

import click

from jobboard_etl.shared import CircuitBreakerTripped, ImportCounters


class ProgressReporter:
    def __init__(
        self,
        run_id: str,
        counters: ImportCounters,
        progress_every: int = 10,
        max_errors: int = 100,
    ) -> None:
        self.run_id = run_id
        self.counters = counters
        self.progress_every = progress_every
        self.max_errors = max_errors

    def echo(self, message: str, err: bool = False) -> None:
        click.echo(f"[{self.run_id}] {message}", err=err)

    # -- per batch ----------------------------------------------------------

    def rows_done(self, imported: int, unchanged: int) -> None:
        self.counters.rows_imported += imported
        self.counters.rows_unchanged += unchanged

    def batch_done(self, batch_no: int) -> None:
        self.counters.batches_processed += 1
        if batch_no % self.progress_every == 0:
            c = self.counters
            self.echo(
                f"Progress: batch {batch_no}, {c.rows_imported} imported, "
                f"{c.rows_unchanged} unchanged, {c.rows_skipped} skipped, "
                f"{c.rows_errored} errors"
            )

    def batch_failed(self, batch_no: int, size: int, exc: Exception) -> None:
        self.counters.batch_fallbacks += 1
        self.echo(
            f"Batch {batch_no} ({size} rows) failed: {first_line(exc)}; "
            f"retrying row by row",
            err=True,
        )

    def row_failed(self, label: str, exc: Exception) -> None:
        self.counters.rows_errored += 1
        self.echo(f"Row error {label}: {first_line(exc)}", err=True)
        if self.counters.rows_errored > self.max_errors:
            raise CircuitBreakerTripped(
                f"too many errors: {self.counters.rows_errored} row errors "
                f"exceeds limit of {self.max_errors}"
            )

    # -- end of run ---------------------------------------------------------

    def summary(self) -> None:
        c = self.counters
        total = c.rows_read + c.rows_malformed
        lines = [
            "=== IMPORT SUMMARY ===",
            f"Source records:      {total}",
            f"  malformed:         {c.rows_malformed}",
            f"Imported:            {c.rows_imported}",
            f"Unchanged:           {c.rows_unchanged}",
            f"Skipped:             {c.rows_skipped}",
            f"  referential:       {c.rows_skipped_referential}",
            f"  already loaded:    {c.rows_skipped_resume}",
            f"Errors:              {c.rows_errored}",
            f"Batches:             {c.batches_processed} ({c.batch_fallbacks} fell back to row-by-row)",
            f"Success rate:        {c.success_rate:.2f}%",
        ]
        if c.synthetic_ids_assigned:
            lines.append(f"Synthetic ids:       {c.synthetic_ids_assigned}")
        if c.placeholder_companies_created:
            lines.append(f"Placeholder companies: {c.placeholder_companies_created}")
        if c.categories_nulled:
            lines.append(f"Unknown categories nulled: {c.categories_nulled}")
        if c.aborted_reason:
            lines.append(f"ABORTED: {c.aborted_reason}")
        for line in lines:
            self.echo(line)


def first_line(exc: BaseException) -> str:
    text = str(exc).strip()
    return text.splitlines()[0] if text else type(exc).__name__
