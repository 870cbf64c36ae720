"""Normalization functions for job-board CSV ingestion.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re
import unicodedata

_NULL_SENTINELS = frozenset({"null"})

_TRUE_LITERALS = frozenset({"TRUE", "true", "1"})

EXPERIENCE_LEVELS = ("entry", "mid", "senior", "executive")
DEFAULT_EXPERIENCE_LEVEL = "mid"

# Source scale 1-9 → bucket
EXPERIENCE_LEVEL_BUCKETS: dict[int, str] = {
    1: "entry", 2: "entry", 3: "entry",
    4: "mid", 5: "mid", 6: "mid",
    7: "senior", 8: "senior",
    9: "executive",
}

EMPLOYMENT_TYPES = ("full_time", "part_time", "contract", "remote")
DEFAULT_EMPLOYMENT_TYPE = "contract"


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string and 'NULL' as None."""
    if value is None:
        return None
    v = value.strip()
    if not v or v.lower() in _NULL_SENTINELS:
        return None
    return v


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


def truncate(value: str | None, max_len: int) -> str | None:
    """Trim and cut to at most max_len characters."""
    v = trim(value)
    if v is None:
        return None
    return v[:max_len]


# ---------------------------------------------------------------------------
# Rule 3: normalize_email
# ---------------------------------------------------------------------------

def normalize_email(value: str | None) -> str | None:
    """Lowercase and trim an email address."""
    v = trim(value)
    if v is None:
        return None
    return v.lower()


# ---------------------------------------------------------------------------
# Rule 4: parse_int
# ---------------------------------------------------------------------------

def parse_int(value: str | None, default: int | None = None) -> int | None:
    """Parse an integer, returning default when absent or invalid.

    Accepts a trailing '.0' (spreadsheet exports write ids as floats).
    """
    v = trim(value)
    if v is None:
        return default
    if v.endswith(".0"):
        v = v[:-2]
    try:
        return int(v)
    except ValueError:
        return default


def parse_positive_int(value: str | None) -> int | None:
    """Parse an integer id; zero and negatives are treated as absent."""
    n = parse_int(value)
    if n is None or n <= 0:
        return None
    return n


# ---------------------------------------------------------------------------
# Rule 5: parse_bool
# ---------------------------------------------------------------------------

def parse_bool(value: str | None, default: bool | None = None) -> bool | None:
    """'TRUE'/'true'/'1' → True, any other literal → False, blank → default."""
    if value is None or not value.strip():
        return default
    return value.strip() in _TRUE_LITERALS


# ---------------------------------------------------------------------------
# Rule 6: bucketed fields
# ---------------------------------------------------------------------------

def bucket_experience_level(value: str | None) -> str:
    """Map the 1-9 source scale (or an existing bucket name) to a bucket.

    Unrecognized or absent values fall back to 'mid'.
    """
    v = trim(value)
    if v is None:
        return DEFAULT_EXPERIENCE_LEVEL
    if v.lower() in EXPERIENCE_LEVELS:
        return v.lower()
    n = parse_int(v)
    if n is None:
        return DEFAULT_EXPERIENCE_LEVEL
    return EXPERIENCE_LEVEL_BUCKETS.get(n, DEFAULT_EXPERIENCE_LEVEL)


def normalize_employment_type(value: str | None) -> str:
    """'Full Time', 'full-time', 'FULL_TIME' → 'full_time'; unknown → 'contract'."""
    v = slug_name(value)
    if v is None:
        return DEFAULT_EMPLOYMENT_TYPE
    v = v.replace("-", "_")
    if v in EMPLOYMENT_TYPES:
        return v
    return DEFAULT_EMPLOYMENT_TYPE


# ---------------------------------------------------------------------------
# Rule 7: slug_name
# ---------------------------------------------------------------------------

def slug_name(value: str | None) -> str | None:
    """Lowercase alnum with '-' separators."""
    v = trim(value)
    if v is None:
        return None
    v = unicodedata.normalize("NFKD", v)
    v = "".join(c for c in v if not unicodedata.combining(c))
    v = v.lower()
    v = re.sub(r"[^a-z0-9]+", "-", v)
    v = v.strip("-")
    return v if v else None


# ---------------------------------------------------------------------------
# Job-specific derived fields
# ---------------------------------------------------------------------------

def format_salary_range(
    salary_min: str | None,
    salary_max: str | None,
) -> str | None:
    """Build a display salary from a numeric range in thousands.

    (80, 120) → '$80k - $120k'; (80, None) → '$80k+'; no positive minimum → None.
    """
    lo = parse_int(salary_min)
    hi = parse_int(salary_max)
    if lo is None or lo <= 0:
        return None
    if hi is not None and hi > 0:
        return f"${lo}k - ${hi}k"
    return f"${lo}k+"


def derive_location(city: str | None, state: str | None) -> str | None:
    """Join city and state as 'City, ST', dropping whichever is absent."""
    parts = [p for p in (trim(city), trim(state)) if p]
    return ", ".join(parts) if parts else None


def split_skills(value: str | None) -> list[str]:
    """Split a comma- or semicolon-delimited skills string into a list."""
    v = trim(value)
    if v is None:
        return []
    return [s.strip() for s in re.split(r"[,;]", v) if s.strip()]
