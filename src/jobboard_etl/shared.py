"""jobboard_etl.shared

Shared utilities used by every entity import: exceptions, RejectWriter,
ImportCounters and report writing.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SourceReadError(Exception):
    """Raised when the source CSV cannot be read at all; fatal before any DB write."""


class ConfigError(ValueError):
    """Raised when startup configuration fails validation."""


class CircuitBreakerTripped(Exception):
    """Raised when cumulative row-level insert errors exceed the configured limit."""


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.rows_written = 0

    @property
    def path(self) -> Path:
        return self._path

    def write(self, row: dict[str, Any], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()
        self.rows_written += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()
            self._fh = None


# ---------------------------------------------------------------------------
# ImportCounters
# ---------------------------------------------------------------------------

@dataclass
class ImportCounters:
    # Source reader
    rows_read: int = 0
    rows_malformed: int = 0
    # Normalizer
    rows_skipped: int = 0
    rows_skipped_referential: int = 0
    rows_skipped_resume: int = 0
    synthetic_ids_assigned: int = 0
    categories_nulled: int = 0
    placeholder_companies_created: int = 0
    # Upserter
    batches_processed: int = 0
    batch_fallbacks: int = 0
    rows_imported: int = 0
    rows_unchanged: int = 0
    rows_errored: int = 0
    # Reconciler
    sequence_value: int | None = None
    final_row_count: int | None = None
    orphan_rows: int | None = None
    aborted_reason: str | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        """Percentage of read rows that ended up present in the table."""
        if self.rows_read == 0:
            return 0.0
        return 100.0 * (self.rows_imported + self.rows_unchanged) / self.rows_read

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["success_rate"] = round(self.success_rate, 2)
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    entity: str,
    dry_run: bool,
    source_path: str | None,
    settings: dict[str, Any],
    counters: ImportCounters,
    report_dir: Path,
) -> Path:
    report = {
        "run_id": run_id,
        "entity": entity,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "dry_run": dry_run,
        "source_path": source_path,
        "settings": settings,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
