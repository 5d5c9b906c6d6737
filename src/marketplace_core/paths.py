"""Deterministic partition paths for every entity family.

Each family has exactly one canonical scheme. Paths are pure functions of the
family, the entity's natural key and its creation timestamp; they never depend
on the current time, so re-deriving a path from a stored entity always lands on
the file it was written to.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, date, datetime
from enum import Enum
from pathlib import Path, PurePosixPath

MONTH_NAMES = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)


class MonthStyle(str, Enum):
    NUMERIC = "numeric"
    NAME = "name"


class Family(str, Enum):
    PROJECTS = "projects"
    TASKS = "tasks"
    INVOICES = "invoices"
    GIGS = "gigs"
    USERS = "users"
    ORGANIZATIONS = "organizations"
    NOTIFICATIONS = "notifications"


@dataclass(frozen=True)
class PartitionScheme:
    """Directory layout of one family.

    ``document`` is a filename template where ``{id}`` is the entity id. When
    ``grouped_by_parent`` is set the leaf directory is the parent key (the
    project for tasks and invoices, the event type for notifications) rather
    than the entity id itself.
    """

    directory: str
    month_style: MonthStyle
    document: str
    grouped_by_parent: bool = False
    legacy_file: str | None = None

    def filename(self, entity_id: str) -> str:
        return self.document.format(id=entity_id)

    def id_from_filename(self, filename: str) -> str | None:
        prefix, _, suffix = self.document.partition("{id}")
        if "{id}" not in self.document:
            return None
        if not filename.startswith(prefix) or not filename.endswith(suffix):
            return None
        stem = filename[len(prefix) : len(filename) - len(suffix)]
        return stem or None


SCHEMES: dict[Family, PartitionScheme] = {
    Family.PROJECTS: PartitionScheme("projects", MonthStyle.NUMERIC, "project.json", legacy_file="projects.json"),
    Family.TASKS: PartitionScheme(
        "project-tasks", MonthStyle.NUMERIC, "{id}-task.json", grouped_by_parent=True, legacy_file="project-tasks.json"
    ),
    Family.INVOICES: PartitionScheme(
        "invoices", MonthStyle.NAME, "{id}.json", grouped_by_parent=True, legacy_file="invoices.json"
    ),
    Family.GIGS: PartitionScheme("gigs", MonthStyle.NAME, "gig.json", legacy_file="gigs.json"),
    Family.USERS: PartitionScheme("users", MonthStyle.NUMERIC, "profile.json", legacy_file="users.json"),
    Family.ORGANIZATIONS: PartitionScheme(
        "organizations", MonthStyle.NUMERIC, "profile.json", legacy_file="organizations.json"
    ),
    Family.NOTIFICATIONS: PartitionScheme(
        "notifications/events", MonthStyle.NAME, "{id}.json", grouped_by_parent=True
    ),
}

WALLET_HISTORY = PurePosixPath("wallet/wallet-history.json")
READ_STATES = PurePosixPath("notifications/read-states.json")

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_component(value: object) -> str:
    """Make *value* safe for use as a single path component.

    Raises:
        ValueError: If nothing filesystem-safe remains.
    """
    text = _UNSAFE.sub("-", str(value).strip()).strip("-")
    if not text or text in {".", ".."}:
        raise ValueError(f"{value!r} contains no filesystem-safe characters")
    return text[:128]


def is_safe_component(value: object) -> bool:
    """Return True when *value* is already a valid path component, unchanged by sanitizing."""
    try:
        return sanitize_component(value) == str(value)
    except ValueError:
        return False


def to_utc(value: datetime | date | str) -> datetime:
    """Normalize a creation timestamp to an aware UTC datetime.

    Naive datetimes and bare dates are taken to be UTC already.
    """
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        value = datetime.fromisoformat(text)
    if not isinstance(value, datetime):
        return datetime(value.year, value.month, value.day, tzinfo=UTC)
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def month_component(month: int, style: MonthStyle) -> str:
    if style is MonthStyle.NAME:
        return MONTH_NAMES[month - 1]
    return f"{month:02d}"


def day_directory(family: Family, day: date) -> PurePosixPath:
    """Return the ``<dir>/<YYYY>/<Month>/<DD>`` prefix for *day*."""
    scheme = SCHEMES[family]
    return PurePosixPath(
        scheme.directory,
        f"{day.year:04d}",
        month_component(day.month, scheme.month_style),
        f"{day.day:02d}",
    )


def resolve(
    family: Family,
    entity_id: object,
    created_at: datetime | date | str,
    *,
    parent_id: object | None = None,
) -> PurePosixPath:
    """Return the canonical data-root-relative path of an entity document.

    Raises:
        ValueError: If the family groups by parent and *parent_id* is missing,
            or if an id has no filesystem-safe characters.
    """
    scheme = SCHEMES[family]
    moment = to_utc(created_at)
    safe_id = sanitize_component(entity_id)
    if scheme.grouped_by_parent:
        if parent_id is None:
            raise ValueError(f"{family.value} paths require a parent id")
        leaf = sanitize_component(parent_id)
    else:
        leaf = safe_id
    return day_directory(family, moment.date()) / leaf / scheme.filename(safe_id)


def index_path(data_root: Path, family: Family) -> Path:
    return data_root / f"{family.value}-index.json"


def family_root(data_root: Path, family: Family) -> Path:
    return data_root / SCHEMES[family].directory


def legacy_path(data_root: Path, family: Family) -> Path | None:
    legacy = SCHEMES[family].legacy_file
    return data_root / legacy if legacy else None


def is_partition_path(family: Family, relative: PurePosixPath) -> bool:
    """Return True when *relative* has the shape of *family*'s canonical scheme."""
    scheme = SCHEMES[family]
    base = PurePosixPath(scheme.directory)
    try:
        rest = relative.relative_to(base)
    except ValueError:
        return False
    parts = rest.parts
    if len(parts) != 5:
        return False
    year, month, day, _leaf, filename = parts
    if not (len(year) == 4 and year.isdigit() and len(day) == 2 and day.isdigit()):
        return False
    if scheme.month_style is MonthStyle.NAME:
        month_ok = month in MONTH_NAMES
    else:
        month_ok = len(month) == 2 and month.isdigit() and 1 <= int(month) <= 12
    if not month_ok:
        return False
    if "{id}" in scheme.document:
        return scheme.id_from_filename(filename) is not None
    return filename == scheme.document
