"""jobboard_etl.config

Run configuration for the bulk importers.

Responsibilities:
  - Hold every tunable of a run in one frozen ImportConfig, built once at startup
  - Validate the combination of knobs before any file or DB access
  - Load and validate the YAML category seed (config/categories.yml)

Usage:
    from jobboard_etl.config import ImportConfig, load_category_seed

    config = ImportConfig(entity="companies", db_dsn=dsn, csv_path=Path("companies.csv"))
    config.validate(column_count=17)
    rows = load_category_seed(DEFAULT_CATEGORY_SEED)
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

from jobboard_etl.shared import ConfigError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CONFLICT_UPDATE = "update"
CONFLICT_NOTHING = "nothing"
VALID_CONFLICT_POLICIES = frozenset({CONFLICT_UPDATE, CONFLICT_NOTHING})

READ_MODE_FULL = "full"
READ_MODE_STREAM = "stream"
VALID_READ_MODES = frozenset({READ_MODE_FULL, READ_MODE_STREAM})

VALID_ENTITIES = ("companies", "jobs", "vendors", "categories")

MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 1000
# PostgreSQL wire protocol limit on bind parameters per statement
MAX_BIND_PARAMS = 65535

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
DEFAULT_CATEGORY_SEED = PROJECT_ROOT / "config" / "categories.yml"


class CategorySeedValidationError(ValueError):
    """Raised when the YAML category seed fails schema validation."""


# ---------------------------------------------------------------------------
# ImportConfig
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ImportConfig:
    """Validated settings for one import run."""

    entity: str
    db_dsn: str = field(repr=False)
    csv_path: Path | None = None
    batch_size: int = 500
    conflict_policy: str | None = None
    read_mode: str = READ_MODE_FULL
    max_errors: int = 100
    progress_every: int = 10
    sample_size: int = 5
    import_user: str = "admin"
    dry_run: bool = False
    truncate: bool = False
    resume_after_max_id: bool = False
    create_missing_companies: bool = False
    relax_foreign_keys: bool = False
    rejects_path: Path = Path("./artifacts/rejects/jobboard_rejects.csv")
    report_dir: Path = Path("./artifacts/reports")
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def validate(self, column_count: int) -> None:
        """Raise ConfigError if any knob is out of range for this entity."""
        if self.entity not in VALID_ENTITIES:
            raise ConfigError(f"unknown entity {self.entity!r}")
        if not self.db_dsn:
            raise ConfigError("a database DSN is required (--db-dsn or DATABASE_URL)")
        if self.conflict_policy is not None and self.conflict_policy not in VALID_CONFLICT_POLICIES:
            raise ConfigError(
                f"conflict_policy must be one of {sorted(VALID_CONFLICT_POLICIES)}, "
                f"got {self.conflict_policy!r}"
            )
        if self.read_mode not in VALID_READ_MODES:
            raise ConfigError(
                f"read_mode must be one of {sorted(VALID_READ_MODES)}, got {self.read_mode!r}"
            )
        if not MIN_BATCH_SIZE <= self.batch_size <= MAX_BATCH_SIZE:
            raise ConfigError(
                f"batch_size must be between {MIN_BATCH_SIZE} and {MAX_BATCH_SIZE}, "
                f"got {self.batch_size}"
            )
        if self.batch_size * column_count > MAX_BIND_PARAMS:
            raise ConfigError(
                f"batch_size {self.batch_size} x {column_count} columns exceeds "
                f"{MAX_BIND_PARAMS} bind parameters"
            )
        if self.max_errors < 0:
            raise ConfigError(f"max_errors must be >= 0, got {self.max_errors}")
        if self.progress_every < 1:
            raise ConfigError(f"progress_every must be >= 1, got {self.progress_every}")
        if self.sample_size < 0:
            raise ConfigError(f"sample_size must be >= 0, got {self.sample_size}")
        if self.entity != "categories" and self.csv_path is None:
            raise ConfigError(f"{self.entity} import requires --csv-path")
        if self.create_missing_companies and self.entity != "jobs":
            raise ConfigError("--create-missing-companies only applies to jobs")
        if self.entity == "categories" and (self.truncate or self.resume_after_max_id):
            raise ConfigError("categories are always reloaded wholesale; "
                              "--truncate/--resume-after-max-id do not apply")

    def settings(self) -> dict[str, Any]:
        """Return report-safe settings (DSN omitted)."""
        d = asdict(self)
        d.pop("db_dsn")
        return d


# ---------------------------------------------------------------------------
# Category seed loader + validator
# ---------------------------------------------------------------------------

def load_category_seed(yaml_path: Path) -> list[dict[str, str]]:
    """Load, validate, and return category rows from a YAML seed file.

    Rows are returned as string-valued dicts so they flow through the same
    normalizer as CSV rows.

    Raises:
        CategorySeedValidationError: If the document shape is invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw)
    validate_category_seed(data)
    return [
        {
            "id": str(item["id"]),
            "name": str(item["name"]),
            "description": "" if item.get("description") is None else str(item["description"]),
        }
        for item in data["categories"]
    ]


def validate_category_seed(data: Any) -> None:
    """Raise CategorySeedValidationError if data does not match the seed schema.

    Validates:
      - top-level mapping with a non-empty 'categories' list
      - every item has a positive integer id and a non-blank name
      - ids and names are unique
    """
    if not isinstance(data, dict) or "categories" not in data:
        raise CategorySeedValidationError("seed must be a mapping with a 'categories' key")
    items = data["categories"]
    if not isinstance(items, list) or not items:
        raise CategorySeedValidationError("'categories' must be a non-empty list")

    seen_ids: set[int] = set()
    seen_names: set[str] = set()
    for idx, item in enumerate(items):
        if not isinstance(item, dict):
            raise CategorySeedValidationError(f"categories[{idx}] must be a mapping")
        cid = item.get("id")
        if not isinstance(cid, int) or isinstance(cid, bool) or cid <= 0:
            raise CategorySeedValidationError(
                f"categories[{idx}].id must be a positive integer, got {cid!r}"
            )
        name = item.get("name")
        if not isinstance(name, str) or not name.strip():
            raise CategorySeedValidationError(f"categories[{idx}].name must be a non-blank string")
        if cid in seen_ids:
            raise CategorySeedValidationError(f"duplicate category id {cid}")
        if name.strip().lower() in seen_names:
            raise CategorySeedValidationError(f"duplicate category name {name!r}")
        seen_ids.add(cid)
        seen_names.add(name.strip().lower())
