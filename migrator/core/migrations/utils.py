"""Helpers for migration definitions: checksums, filenames, ordering, safety."""

import math
import re
import time
import zlib
from collections.abc import Iterable

from migrator.core.db.sql import mask_literals, split_statements

VERSION_PATTERN = re.compile(r"^\d{3}$")
FILENAME_PATTERN = re.compile(r"^(\d{3})_([a-z0-9_]+)\.sql$")
_LOOSE_FILENAME_PATTERN = re.compile(r"^([^_]+)_(.+)\.sql$")

# Unguarded destructive statements. Guarded forms (IF EXISTS, DELETE ... WHERE) do not match.
UNSAFE_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("DROP TABLE", re.compile(r"\bDROP\s+TABLE\s+(?!IF\s+EXISTS\b)", re.IGNORECASE)),
    ("DROP DATABASE", re.compile(r"\bDROP\s+(?:DATABASE|SCHEMA)\b", re.IGNORECASE)),
    ("TRUNCATE", re.compile(r"\bTRUNCATE\b", re.IGNORECASE)),
]
_DELETE_RE = re.compile(r"\bDELETE\s+FROM\b", re.IGNORECASE)
_UPDATE_RE = re.compile(r"^\s*UPDATE\b", re.IGNORECASE)
_WHERE_RE = re.compile(r"\bWHERE\b", re.IGNORECASE)


def now_ms() -> int:
    """Current time in milliseconds since the epoch."""
    return int(time.time() * 1000)


def calculate_checksum(up: str, down: str | None = None) -> str:
    """Compute the drift-detection checksum of a migration.

    CRC-32 (zlib polynomial) over the UTF-8 bytes of ``up + "\\x00" + down``,
    rendered as 8 lowercase hex digits. A missing down script counts as the
    empty string. This detects edits to a migration after it was applied; it
    is not an integrity or security guarantee.

    Args:
        up: Forward script.
        down: Reverse script, if any.

    Returns:
        8-character hex checksum.
    """
    payload = f"{up}\x00{down or ''}".encode("utf-8")
    return f"{zlib.crc32(payload) & 0xFFFFFFFF:08x}"


def validate_version(version: str) -> bool:
    """Check that a version is a 3-digit numeric string."""
    return isinstance(version, str) and bool(VERSION_PATTERN.match(version))


def slugify(name: str) -> str:
    """Lowercase a name and collapse non-alphanumeric runs to underscores."""
    return re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")


def generate_filename(version: str, name: str) -> str:
    """Build the on-disk filename for a migration.

    Args:
        version: 3-digit version string.
        name: Human name; lowercased, non-alphanumeric runs become ``_``.

    Returns:
        Filename like ``001_create_users.sql``.

    Raises:
        ValueError: If the version is malformed or the name has no usable characters.
    """
    if not validate_version(version):
        raise ValueError(f"Invalid migration version: {version!r}")
    slug = slugify(name)
    if not slug:
        raise ValueError(f"Invalid migration name: {name!r}")
    return f"{version}_{slug}.sql"


def parse_version_from_filename(filename: str) -> str | None:
    """Extract the version prefix from a migration filename.

    Returns:
        The 3-digit version, or None if the filename does not follow the convention.
    """
    match = FILENAME_PATTERN.match(filename)
    return match.group(1) if match else None


def parse_filename(filename: str) -> tuple[str, str] | None:
    """Split a ``{version}_{slug}.sql`` filename without checking the version format.

    Used by the loader so that malformed versions still reach the validator.
    """
    match = _LOOSE_FILENAME_PATTERN.match(filename)
    if not match:
        return None
    return match.group(1), match.group(2)


def version_key(version: str) -> tuple[int, str]:
    """Sort key ordering versions numerically; malformed ones sort last."""
    if version.isdigit():
        return int(version), version
    return math.inf, version  # type: ignore[return-value]


def sort_migrations_by_version(migrations: Iterable) -> list:
    """Return migrations sorted ascending by numeric version."""
    return sorted(migrations, key=lambda m: version_key(m.version))


def next_version(versions: Iterable[str]) -> str:
    """Return the version following the highest of ``versions``."""
    numbers = [int(v) for v in versions if validate_version(v)]
    candidate = max(numbers, default=0) + 1
    if candidate > 999:
        raise ValueError("Migration version space exhausted (max 999)")
    return f"{candidate:03d}"


def find_unsafe_operations(sql: str) -> list[str]:
    """List the unguarded destructive operations found in a script.

    Flags ``DROP TABLE`` without ``IF EXISTS``, ``DROP DATABASE``/``DROP SCHEMA``,
    ``TRUNCATE``, and ``DELETE FROM`` statements that have no ``WHERE`` clause.
    """
    found: list[str] = []
    for statement in split_statements(mask_literals(sql)):
        for label, pattern in UNSAFE_PATTERNS:
            if pattern.search(statement) and label not in found:
                found.append(label)
        if _DELETE_RE.search(statement) and not _WHERE_RE.search(statement):
            if "DELETE without WHERE" not in found:
                found.append("DELETE without WHERE")
    return found


def find_unguarded_updates(sql: str) -> list[str]:
    """List UPDATE statements with no WHERE clause."""
    return [s for s in split_statements(sql) if _UPDATE_RE.match(s) and not _WHERE_RE.search(mask_literals(s))]


def is_production_safe(migration) -> bool:
    """Check whether a migration's up script avoids unguarded destructive statements."""
    return not find_unsafe_operations(migration.up)


def estimate_execution_time(migration) -> int:
    """Rough execution time estimate in milliseconds.

    1 second base plus 10 ms per 100 characters of up script.
    """
    return 1000 + 10 * math.ceil(len(migration.up) / 100)
