"""jobboard_etl.entities

Per-entity schemas and row mappers for companies, jobs, vendors and
categories.

Each EntitySchema names its target table, the insert column order, the
headers a source file must carry, the columns an update-on-conflict run
refreshes, and a mapper that turns one raw CSV row into a record dict
keyed by column.  Mappers raise RowRejected for rows that must not be
inserted; they never touch the database.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from jobboard_etl.config import CONFLICT_NOTHING, CONFLICT_UPDATE
from jobboard_etl.normalize import (
    bucket_experience_level,
    derive_location,
    format_salary_range,
    normalize_email,
    normalize_employment_type,
    normalize_space,
    parse_bool,
    parse_int,
    parse_positive_int,
    split_skills,
    trim,
    truncate,
)
from jobboard_etl.shared import ImportCounters

VENDOR_CREATED_BY = "csv-import"
DEFAULT_COMPANY_STATUS = "approved"
COMPANY_STATUSES = ("pending", "approved", "rejected")
DEFAULT_VENDOR_STATUS = "pending"

REJECT_VALIDATION = "validation"
REJECT_REFERENTIAL = "referential"
REJECT_RESUME = "resume"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class RowRejected(Exception):
    """Raised by a mapper when a row must be dropped before insertion."""

    def __init__(self, reason: str, kind: str = REJECT_VALIDATION) -> None:
        super().__init__(reason)
        self.reason = reason
        self.kind = kind


# ---------------------------------------------------------------------------
# Id allocation
# ---------------------------------------------------------------------------

class IdAllocator:
    """Hand out ids for rows whose source id is blank or invalid.

    Synthetic ids continue from the highest id known: the table's MAX(id)
    at start, the largest id in the source file (see max_source_id) and
    any id observed since.  Seeding with the source maximum keeps a
    blank-id row from taking an id a later row brings explicitly.
    """

    def __init__(self, start: int = 0) -> None:
        self.high_water = start

    def observe(self, value: int) -> None:
        if value > self.high_water:
            self.high_water = value

    def next_id(self) -> int:
        self.high_water += 1
        return self.high_water


def max_source_id(values: Iterable[str | None]) -> int:
    """Largest usable id among raw source id values (0 when there is none)."""
    return max((parse_positive_int(v) or 0 for v in values), default=0)


@dataclass
class MapContext:
    """Run state a mapper may read or extend."""

    counters: ImportCounters
    ids: IdAllocator = field(default_factory=IdAllocator)
    import_user: str = "admin"
    company_ids: set[int] | None = None
    category_ids: set[int] | None = None
    create_missing_companies: bool = False
    resume_floor: int | None = None
    pending_placeholders: set[int] = field(default_factory=set)


def assign_id(row: dict[str, str], ctx: MapContext) -> int:
    """Return the row's source id, or a synthetic one when it is blank/invalid.

    With a resume floor set, rows at or below it (or without a usable
    source id) are rejected as already loaded.
    """
    source_id = parse_positive_int(row.get("id"))
    if ctx.resume_floor is not None:
        if source_id is None:
            raise RowRejected("resume_no_source_id", REJECT_RESUME)
        if source_id <= ctx.resume_floor:
            raise RowRejected("resume_already_loaded", REJECT_RESUME)
    if source_id is None:
        ctx.counters.synthetic_ids_assigned += 1
        return ctx.ids.next_id()
    ctx.ids.observe(source_id)
    return source_id


def _require_company(company_id: int, ctx: MapContext) -> None:
    if ctx.company_ids is None or company_id in ctx.company_ids:
        return
    if ctx.create_missing_companies:
        ctx.pending_placeholders.add(company_id)
        ctx.company_ids.add(company_id)
        return
    raise RowRejected(f"unknown_company_id: {company_id}", REJECT_REFERENTIAL)


# ---------------------------------------------------------------------------
# EntitySchema
# ---------------------------------------------------------------------------

Mapper = Callable[[dict[str, str], MapContext], dict[str, Any]]


@dataclass(frozen=True)
class EntitySchema:
    name: str
    table: str
    columns: tuple[str, ...]
    required_headers: frozenset[str]
    update_columns: tuple[str, ...]
    mapper: Mapper
    default_conflict_policy: str
    label_column: str
    has_updated_at: bool = True
    key_column: str = "id"
    # db column → source headers it is derived from, when not just its own name
    column_headers: dict[str, tuple[str, ...]] = field(default_factory=dict)
    requires_companies: bool = False
    requires_categories: bool = False

    def update_columns_for(self, headers: list[str] | set[str]) -> tuple[str, ...]:
        """Update set for a file with these headers.

        A column none of whose source headers is present keeps its stored
        value, so a partial re-import never blanks or re-defaults it.
        """
        present = set(headers)
        return tuple(
            c for c in self.update_columns
            if present.intersection(self.column_headers.get(c, (c,)))
        )

    def label(self, record: dict[str, Any]) -> str:
        return f"{self.key_column}={record.get(self.key_column)} {self.label_column}={record.get(self.label_column)!r}"


# ---------------------------------------------------------------------------
# Companies
# ---------------------------------------------------------------------------

COMPANY_COLUMNS = (
    "id", "name", "country", "state", "city", "location", "zip_code",
    "website", "phone", "status", "approved_by", "user_id", "logo_url",
    "industry", "size", "description", "followers",
)

COMPANY_HEADERS = frozenset({"id", "name"})


def map_company(row: dict[str, str], ctx: MapContext) -> dict[str, Any]:
    name = normalize_space(row.get("name"))
    if not name:
        raise RowRejected("missing_name")
    status = (trim(row.get("status")) or DEFAULT_COMPANY_STATUS).lower()
    if status not in COMPANY_STATUSES:
        raise RowRejected(f"invalid_status: {status}")
    return {
        "id": assign_id(row, ctx),
        "name": name,
        "country": trim(row.get("country")),
        "state": trim(row.get("state")),
        "city": trim(row.get("city")),
        "location": trim(row.get("location")),
        "zip_code": trim(row.get("zip_code")),
        "website": trim(row.get("website")),
        "phone": trim(row.get("phone")),
        "status": status,
        "approved_by": trim(row.get("approved_by")) or ctx.import_user,
        "user_id": trim(row.get("user_id")) or ctx.import_user,
        "logo_url": trim(row.get("logo_url")),
        "industry": trim(row.get("industry")),
        "size": trim(row.get("size")),
        "description": trim(row.get("description")),
        "followers": parse_int(row.get("followers"), 0),
    }


COMPANIES = EntitySchema(
    name="companies",
    table="companies",
    columns=COMPANY_COLUMNS,
    required_headers=COMPANY_HEADERS,
    # followers is a live counter maintained by the application
    update_columns=tuple(c for c in COMPANY_COLUMNS if c not in ("id", "followers")),
    mapper=map_company,
    default_conflict_policy=CONFLICT_UPDATE,
    label_column="name",
)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

JOB_COLUMNS = (
    "id", "company_id", "recruiter_id", "category_id", "title", "description",
    "requirements", "location", "country", "state", "city", "zip_code",
    "employment_type", "experience_level", "salary", "skills", "is_active",
)

JOB_HEADERS = frozenset({"id", "company_id", "title"})

MAX_TITLE_LEN = 255


def map_job(row: dict[str, str], ctx: MapContext) -> dict[str, Any]:
    title = truncate(normalize_space(row.get("title")), MAX_TITLE_LEN)
    if not title:
        raise RowRejected("missing_title")
    company_id = parse_positive_int(row.get("company_id"))
    if company_id is None:
        raise RowRejected("missing_company_id")
    job_id = assign_id(row, ctx)
    _require_company(company_id, ctx)

    category_id = parse_positive_int(row.get("category_id"))
    if (
        category_id is not None
        and ctx.category_ids is not None
        and category_id not in ctx.category_ids
    ):
        ctx.counters.categories_nulled += 1
        category_id = None

    city = trim(row.get("city"))
    state = trim(row.get("state"))
    salary = trim(row.get("salary")) or format_salary_range(
        row.get("salary_min"), row.get("salary_max")
    )

    return {
        "id": job_id,
        "company_id": company_id,
        "recruiter_id": trim(row.get("recruiter_id")) or ctx.import_user,
        "category_id": category_id,
        "title": title,
        "description": trim(row.get("description")) or "",
        "requirements": trim(row.get("requirements")),
        "location": trim(row.get("location")) or derive_location(city, state),
        "country": trim(row.get("country")),
        "state": state,
        "city": city,
        "zip_code": trim(row.get("zip_code")),
        "employment_type": normalize_employment_type(row.get("employment_type")),
        "experience_level": bucket_experience_level(row.get("experience_level")),
        "salary": salary,
        "skills": split_skills(row.get("skills")),
        "is_active": parse_bool(row.get("is_active"), True),
    }


JOBS = EntitySchema(
    name="jobs",
    table="jobs",
    columns=JOB_COLUMNS,
    required_headers=JOB_HEADERS,
    update_columns=tuple(c for c in JOB_COLUMNS if c != "id"),
    mapper=map_job,
    default_conflict_policy=CONFLICT_UPDATE,
    label_column="title",
    column_headers={
        "salary": ("salary", "salary_min", "salary_max"),
        "location": ("location", "city", "state"),
    },
    requires_companies=True,
    requires_categories=True,
)


# ---------------------------------------------------------------------------
# Vendors
# ---------------------------------------------------------------------------

VENDOR_COLUMNS = (
    "id", "company_id", "name", "email", "services", "status", "created_by",
)

VENDOR_HEADERS = frozenset({"id", "company_id", "name", "email", "services"})


def map_vendor(row: dict[str, str], ctx: MapContext) -> dict[str, Any]:
    company_id = parse_positive_int(row.get("company_id"))
    name = truncate(normalize_space(row.get("name")), 255)
    email = truncate(normalize_email(row.get("email")), 255)
    if company_id is None:
        raise RowRejected("missing_company_id")
    if not name:
        raise RowRejected("missing_name")
    if not email:
        raise RowRejected("missing_email")
    vendor_id = assign_id(row, ctx)
    _require_company(company_id, ctx)
    return {
        "id": vendor_id,
        "company_id": company_id,
        "name": name,
        "email": email,
        "services": truncate(row.get("services"), 1000),
        "status": DEFAULT_VENDOR_STATUS,
        "created_by": VENDOR_CREATED_BY,
    }


VENDORS = EntitySchema(
    name="vendors",
    table="vendors",
    columns=VENDOR_COLUMNS,
    required_headers=VENDOR_HEADERS,
    # approval state and authorship belong to the application once a vendor exists
    update_columns=("company_id", "name", "email", "services"),
    mapper=map_vendor,
    default_conflict_policy=CONFLICT_NOTHING,
    label_column="name",
    requires_companies=True,
)


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------

CATEGORY_COLUMNS = ("id", "name", "description")


def map_category(row: dict[str, str], ctx: MapContext) -> dict[str, Any]:
    name = normalize_space(row.get("name"))
    if not name:
        raise RowRejected("missing_name")
    return {
        "id": assign_id(row, ctx),
        "name": name,
        "description": trim(row.get("description")),
    }


CATEGORIES = EntitySchema(
    name="categories",
    table="categories",
    columns=CATEGORY_COLUMNS,
    required_headers=frozenset({"id", "name"}),
    update_columns=("name", "description"),
    mapper=map_category,
    default_conflict_policy=CONFLICT_UPDATE,
    label_column="name",
    has_updated_at=False,
)


ENTITIES: dict[str, EntitySchema] = {
    s.name: s for s in (COMPANIES, JOBS, VENDORS, CATEGORIES)
}
