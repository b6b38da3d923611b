"""Discovery of on-disk migration files.

A migration file is named ``{version}_{slug}.sql`` and looks like::

    -- description: Create the users table
    -- depends: 001
    -- migrate:up
    CREATE TABLE IF NOT EXISTS users (id TEXT PRIMARY KEY);
    -- migrate:down
    DROP TABLE IF EXISTS users;

A file without ``migrate:up``/``migrate:down`` markers is entirely "up".
"""

import logging
import re
from datetime import datetime
from pathlib import Path

from migrator.core.migrations.models import Migration
from migrator.core.migrations.utils import generate_filename, next_version, parse_filename, sort_migrations_by_version

logger = logging.getLogger(__name__)

UP_MARKER = re.compile(r"^\s*--\s*migrate:up\s*$", re.IGNORECASE | re.MULTILINE)
DOWN_MARKER = re.compile(r"^\s*--\s*migrate:down\s*$", re.IGNORECASE | re.MULTILINE)
DIRECTIVE = re.compile(r"^\s*--\s*(description|depends)\s*:\s*(.*?)\s*$", re.IGNORECASE)

TEMPLATE = """-- description: {description}
-- Created: {created}
-- migrate:up


-- migrate:down

"""


def parse_migration_text(content: str) -> tuple[str, str | None, str | None, list[str]]:
    """Split file content into up/down scripts and header directives.

    Returns:
        Tuple of (up, down, description, dependencies)
    """
    description = None
    dependencies: list[str] = []
    for line in content.splitlines():
        if not line.strip():
            continue
        if not line.lstrip().startswith("--"):
            break
        match = DIRECTIVE.match(line)
        if not match:
            continue
        key, value = match.group(1).lower(), match.group(2)
        if key == "description":
            description = value or None
        else:
            dependencies.extend(v.strip() for v in value.split(",") if v.strip())

    up_match = UP_MARKER.search(content)
    down_match = DOWN_MARKER.search(content)

    if not up_match and not down_match:
        return content.strip(), None, description, dependencies

    up_start = up_match.end() if up_match else 0
    if down_match and down_match.start() >= up_start:
        up = content[up_start : down_match.start()]
        down = content[down_match.end() :]
    elif down_match:
        # down section written first
        down = content[down_match.end() : up_match.start()] if up_match else content[down_match.end() :]
        up = content[up_start:]
    else:
        up = content[up_start:]
        down = None

    down = down.strip() if down else None
    return up.strip(), down or None, description, dependencies


def load_migration_file(path: Path) -> Migration | None:
    """Load one migration file.

    Returns:
        Migration, or None when the filename does not follow the convention.
    """
    parsed = parse_filename(path.name)
    if parsed is None:
        logger.debug(f"Skipping non-migration file - path={path}")
        return None

    version, name = parsed
    content = path.read_text(encoding="utf-8")
    up, down, description, dependencies = parse_migration_text(content)
    return Migration(
        version=version,
        name=name,
        description=description,
        up=up,
        down=down,
        dependencies=dependencies,
        created_at=int(path.stat().st_mtime * 1000),
        source=str(path),
    )


def load_migrations(directory: str | Path) -> list[Migration]:
    """Load every migration file from a directory, sorted by version.

    Args:
        directory: Directory holding ``{version}_{slug}.sql`` files.

    Returns:
        Migrations sorted ascending by version. A missing directory yields
        an empty list.
    """
    path = Path(directory)
    if not path.is_dir():
        logger.warning(f"Migrations directory not found - path={path}")
        return []

    migrations = []
    for file in sorted(path.glob("*.sql")):
        migration = load_migration_file(file)
        if migration is not None:
            migrations.append(migration)

    logger.debug(f"Loaded migrations - path={path}, count={len(migrations)}")
    return sort_migrations_by_version(migrations)


def new_migration_file(directory: str | Path, name: str, description: str | None = None) -> Path:
    """Write an empty migration template with the next free version.

    Args:
        directory: Migrations directory (created if missing).
        name: Human name, turned into the filename slug.
        description: Optional description header.

    Returns:
        Path of the new file.
    """
    path = Path(directory)
    path.mkdir(parents=True, exist_ok=True)
    existing = [parsed[0] for f in path.glob("*.sql") if (parsed := parse_filename(f.name))]
    version = next_version(existing)
    target = path / generate_filename(version, name)
    if target.exists():
        raise FileExistsError(f"Migration file already exists: {target}")
    target.write_text(
        TEMPLATE.format(description=description or name, created=datetime.now().isoformat(timespec="seconds")),
        encoding="utf-8",
    )
    logger.info(f"Migration file created - path={target}")
    return target
