"""Migration plan validation.

The validator turns a set of migration definitions plus the version table
into an ordered ``MigrationPlan``. Blocking problems are collected as errors
and the plan is fail-closed: callers must not execute a plan with errors.
"""

import heapq
import logging
import re
from collections import defaultdict
from collections.abc import Iterable

from migrator.core.db.sql import has_unbalanced_quotes, split_statements
from migrator.core.errors import (
    ChecksumMismatchError,
    CyclicDependencyError,
    DuplicateVersionError,
    InvalidScriptError,
    MalformedVersionError,
    MigrationError,
    MigrationValidationError,
    MissingDependencyError,
    RollbackRequiredError,
    UnsafeOperationError,
)
from migrator.core.migrations.models import (
    Migration,
    MigrationPlan,
    MigrationRecord,
    MigrationStatus,
    RollbackOptions,
    RunOptions,
)
from migrator.core.migrations.storage import MigrationStorage
from migrator.core.migrations.utils import (
    calculate_checksum,
    find_unguarded_updates,
    find_unsafe_operations,
    validate_version,
    version_key,
)

MAX_STATEMENT_LENGTH = 10000
MAX_SCRIPT_SIZE = 50000

_CREATE_TABLE_RE = re.compile(r"\bCREATE\s+TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?[\"`]?(\w+)", re.IGNORECASE)
_DROP_TABLE_RE = re.compile(r"\bDROP\s+TABLE\s+(?:IF\s+EXISTS\s+)?[\"`]?(\w+)", re.IGNORECASE)


class MigrationValidator:
    """Builds validated execution plans for apply and rollback."""

    def __init__(
        self,
        storage: MigrationStorage | None = None,
        validate_checksums: bool = True,
        require_rollback: bool = False,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        """Initialize validator.

        Args:
            storage: Version storage used to read applied records (optional).
            validate_checksums: Compare definitions against recorded checksums.
            require_rollback: Treat a missing down script as a blocking error.
            logger: Logger to use instead of the module logger.
        """
        self.storage = storage
        self.validate_checksums = validate_checksums
        self.require_rollback = require_rollback
        self.logger = logger or logging.getLogger(__name__)

    # Static checks

    def validate_migration(self, migration: Migration, force: bool = False) -> tuple[list[MigrationError], list[str]]:
        """Run the static checks for one definition.

        Args:
            migration: Definition to check.
            force: Downgrade unsafe-operation and missing-down errors to warnings.

        Returns:
            Tuple of (errors, warnings)
        """
        errors: list[MigrationError] = []
        warnings: list[str] = []
        v = migration.version

        if not validate_version(v):
            errors.append(MalformedVersionError(f"Version {v!r} is not a 3-digit number", version=v))

        if not migration.up.strip():
            errors.append(InvalidScriptError(f"Migration {v} has an empty up script", version=v))
        elif has_unbalanced_quotes(migration.up):
            errors.append(InvalidScriptError(f"Migration {v} up script has unbalanced quotes", version=v))

        if migration.down and has_unbalanced_quotes(migration.down):
            errors.append(InvalidScriptError(f"Migration {v} down script has unbalanced quotes", version=v))

        unsafe = find_unsafe_operations(migration.up)
        if unsafe:
            message = f"Migration {v} contains unguarded destructive operations: {', '.join(unsafe)}"
            if force:
                warnings.append(f"{message} (forced)")
            else:
                errors.append(UnsafeOperationError(message, version=v, details={"operations": unsafe}))

        for statement in find_unguarded_updates(migration.up):
            warnings.append(f"Migration {v} has UPDATE without WHERE clause: {statement[:60]}")

        if not migration.has_down:
            message = f"Migration {v} has no down script and cannot be rolled back"
            if self.require_rollback and not force:
                errors.append(RollbackRequiredError(message, version=v))
            else:
                warnings.append(message)
        else:
            warnings.extend(self.validate_rollback(migration))

        if len(migration.up) > MAX_SCRIPT_SIZE:
            warnings.append(f"Migration {v} up script is large ({len(migration.up)} chars); consider splitting it")

        for statement in split_statements(migration.up):
            if len(statement) > MAX_STATEMENT_LENGTH:
                warnings.append(f"Migration {v} has a statement longer than {MAX_STATEMENT_LENGTH} chars")
                break

        return errors, warnings

    def validate_rollback(self, migration: Migration) -> list[str]:
        """Warn about tables created by ``up`` that ``down`` never drops."""
        created = {m.lower() for m in _CREATE_TABLE_RE.findall(migration.up)}
        dropped = {m.lower() for m in _DROP_TABLE_RE.findall(migration.down or "")}
        return [
            f'Migration {migration.version}: table "{table}" is created but not dropped in rollback'
            for table in sorted(created - dropped)
        ]

    def check_duplicates(self, migrations: Iterable[Migration]) -> list[MigrationError]:
        by_version: dict[str, list[Migration]] = defaultdict(list)
        for migration in migrations:
            by_version[migration.version].append(migration)
        return [
            DuplicateVersionError(
                f"Version {version} is defined {len(items)} times: {', '.join(m.name for m in items)}",
                version=version,
                details={"names": [m.name for m in items]},
            )
            for version, items in sorted(by_version.items(), key=lambda kv: version_key(kv[0]))
            if len(items) > 1
        ]

    # Dependency graph

    def resolve_order(
        self, migrations: list[Migration], applied: set[str] | None = None
    ) -> tuple[list[Migration], list[MigrationError]]:
        """Topologically sort definitions by their dependencies.

        Ties are broken by ascending version, so without dependencies the
        result is plain version order.

        Args:
            migrations: Definitions with unique, well-formed versions.
            applied: Versions already applied (satisfy dependencies without a definition).

        Returns:
            Tuple of (ordered migrations, errors)
        """
        applied = applied or set()
        errors: list[MigrationError] = []
        by_version = {m.version: m for m in migrations}
        indegree = {v: 0 for v in by_version}
        dependents: dict[str, list[str]] = defaultdict(list)

        for migration in migrations:
            for dep in migration.dependencies:
                if dep == migration.version:
                    errors.append(
                        CyclicDependencyError(f"Migration {dep} depends on itself", version=dep, details={"cycle": [dep, dep]})
                    )
                elif dep in by_version:
                    indegree[migration.version] += 1
                    dependents[dep].append(migration.version)
                elif dep not in applied:
                    errors.append(
                        MissingDependencyError(
                            f"Migration {migration.version} depends on unknown migration {dep}",
                            version=migration.version,
                            details={"dependency": dep},
                        )
                    )

        ready = [(version_key(v), v) for v, degree in indegree.items() if degree == 0]
        heapq.heapify(ready)
        ordered: list[Migration] = []
        while ready:
            _, version = heapq.heappop(ready)
            ordered.append(by_version[version])
            for child in dependents[version]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    heapq.heappush(ready, (version_key(child), child))

        if len(ordered) < len(by_version):
            remaining = {v for v, degree in indegree.items() if degree > 0}
            cycle = self._find_cycle(remaining, by_version)
            errors.append(
                CyclicDependencyError(
                    f"Circular dependency detected: {' -> '.join(cycle)}",
                    version=cycle[0] if cycle else None,
                    details={"cycle": cycle},
                )
            )
        return ordered, errors

    @staticmethod
    def _find_cycle(remaining: set[str], by_version: dict[str, Migration]) -> list[str]:
        visiting: list[str] = []
        visited: set[str] = set()

        def visit(version: str) -> list[str] | None:
            if version in visiting:
                return visiting[visiting.index(version) :] + [version]
            if version in visited:
                return None
            visiting.append(version)
            for dep in by_version[version].dependencies:
                if dep in remaining:
                    found = visit(dep)
                    if found:
                        return found
            visiting.pop()
            visited.add(version)
            return None

        for version in sorted(remaining, key=version_key):
            found = visit(version)
            if found:
                return list(reversed(found))
        return sorted(remaining, key=version_key)

    # Plans

    async def _load_records(self) -> dict[str, MigrationRecord]:
        if self.storage is None:
            return {}
        return {record.version: record for record in await self.storage.get_records()}

    def _check_checksum(self, migration: Migration, record: MigrationRecord, force: bool, plan: MigrationPlan) -> None:
        if not self.validate_checksums or record.status == MigrationStatus.ROLLED_BACK:
            return
        current = calculate_checksum(migration.up, migration.down)
        if current == record.checksum:
            return
        message = (
            f"Checksum mismatch for migration {migration.version}: "
            f"recorded {record.checksum}, current {current}"
        )
        if force:
            plan.warnings.append(f"{message} (forced)")
        else:
            plan.errors.append(
                ChecksumMismatchError(
                    message,
                    version=migration.version,
                    details={"recorded": record.checksum, "current": current},
                )
            )

    def _well_formed(self, migrations: list[Migration], plan: MigrationPlan) -> list[Migration]:
        """Drop malformed and duplicate definitions, recording errors for them."""
        valid = []
        for migration in migrations:
            if validate_version(migration.version):
                valid.append(migration)
            else:
                plan.errors.append(
                    MalformedVersionError(
                        f"Version {migration.version!r} of {migration.name} is not a 3-digit number",
                        version=migration.version,
                    )
                )

        duplicates = self.check_duplicates(valid)
        plan.errors.extend(duplicates)
        duplicate_versions = {e.version for e in duplicates}
        return [m for m in valid if m.version not in duplicate_versions]

    async def build_plan(
        self,
        migrations: Iterable[Migration],
        options: RunOptions | None = None,
        records: dict[str, MigrationRecord] | None = None,
    ) -> MigrationPlan:
        """Build the ordered plan of pending migrations.

        Args:
            migrations: Every known definition.
            options: Run options (force, dry_run, target_version).
            records: Version rows keyed by version (read from storage when omitted).

        Returns:
            MigrationPlan whose ``migrations`` are the pending ones in execution order.
        """
        options = options or RunOptions()
        plan = MigrationPlan(direction="up", dry_run=options.dry_run, target_version=options.target_version)
        migrations = list(migrations)

        if options.target_version is not None and not validate_version(options.target_version):
            plan.errors.append(
                MalformedVersionError(f"Target version {options.target_version!r} is not a 3-digit number")
            )
            return plan

        candidates = self._well_formed(migrations, plan)
        if records is None:
            records = await self._load_records()
        applied = {v for v, r in records.items() if r.status == MigrationStatus.COMPLETED}

        ordered, graph_errors = self.resolve_order(candidates, applied)
        plan.errors.extend(graph_errors)

        for migration in candidates:
            record = records.get(migration.version)
            if record is not None:
                self._check_checksum(migration, record, options.force, plan)

        pending = [m for m in ordered if m.version not in applied]
        if options.target_version is not None:
            target_key = version_key(options.target_version)
            pending = [m for m in pending if version_key(m.version) <= target_key]

        scheduled: set[str] = set()
        for migration in pending:
            for dep in migration.dependencies:
                if dep not in applied and dep not in scheduled and dep != migration.version:
                    if any(dep == m.version for m in candidates):
                        plan.errors.append(
                            MissingDependencyError(
                                f"Migration {migration.version} depends on {dep}, which is not applied or scheduled earlier",
                                version=migration.version,
                                details={"dependency": dep},
                            )
                        )
            scheduled.add(migration.version)

            errors, warnings = self.validate_migration(migration, force=options.force)
            plan.errors.extend(e for e in errors if not isinstance(e, MalformedVersionError))
            plan.warnings.extend(warnings)

        plan.migrations = pending
        self._log_plan(plan)
        return plan

    async def build_rollback_plan(
        self,
        migrations: Iterable[Migration],
        options: RollbackOptions | None = None,
        records: dict[str, MigrationRecord] | None = None,
    ) -> MigrationPlan:
        """Select applied migrations to roll back, newest version first.

        ``options.to`` selects every applied version greater than it,
        ``options.steps`` the last N applied versions, and neither the latest one.
        A missing down script is not a plan error: the runner reports it per
        migration so that ``force`` can skip it.
        """
        options = options or RollbackOptions()
        plan = MigrationPlan(direction="down", dry_run=options.dry_run, target_version=options.to)

        if options.to is not None and not validate_version(options.to):
            plan.errors.append(MalformedVersionError(f"Rollback target {options.to!r} is not a 3-digit number"))
            return plan
        if options.steps is not None and options.steps < 1:
            plan.errors.append(MigrationValidationError(f"Rollback steps must be positive, got {options.steps}"))
            return plan

        definitions = {m.version: m for m in self._well_formed(list(migrations), plan)}
        if records is None:
            records = await self._load_records()
        applied = sorted(
            (v for v, r in records.items() if r.status == MigrationStatus.COMPLETED),
            key=version_key,
        )

        if options.to is not None:
            target_key = version_key(options.to)
            selected = [v for v in applied if version_key(v) > target_key]
        else:
            selected = applied[-(options.steps or 1) :] if applied else []
        selected.reverse()

        remaining = set(applied) - set(selected)
        for version in selected:
            migration = definitions.get(version)
            if migration is None:
                plan.errors.append(
                    MigrationValidationError(
                        f"Applied migration {version} has no definition; cannot roll it back",
                        version=version,
                    )
                )
                continue
            self._check_checksum(migration, records[version], options.force, plan)
            if not migration.has_down:
                plan.warnings.append(f"Migration {version} has no down script")
            plan.migrations.append(migration)

        for version in sorted(remaining, key=version_key):
            migration = definitions.get(version)
            if migration is None:
                continue
            for dep in migration.dependencies:
                if dep in selected:
                    message = f"Applied migration {version} depends on {dep}, which would be rolled back"
                    if options.force:
                        plan.warnings.append(f"{message} (forced)")
                    else:
                        plan.errors.append(
                            MissingDependencyError(message, version=version, details={"dependency": dep})
                        )

        self._log_plan(plan)
        return plan

    def _log_plan(self, plan: MigrationPlan) -> None:
        self.logger.debug(
            f"Plan built - direction={plan.direction}, migrations={len(plan.migrations)}, "
            f"errors={len(plan.errors)}, warnings={len(plan.warnings)}"
        )
        for error in plan.errors:
            self.logger.warning(f"Plan validation error - code={error.code}, message={error}")
