"""Unit tests for MigrationValidator."""

import pytest

from migrator.core.errors import (
    ChecksumMismatchError,
    CyclicDependencyError,
    DuplicateVersionError,
    InvalidScriptError,
    MalformedVersionError,
    MissingDependencyError,
    RollbackRequiredError,
    UnsafeOperationError,
)
from migrator.core.migrations.models import (
    MigrationRecord,
    MigrationStatus,
    RollbackOptions,
    RunOptions,
    create_migration,
)
from migrator.core.migrations.validator import MigrationValidator


def _record(migration, status=MigrationStatus.COMPLETED, checksum=None):
    return MigrationRecord(
        version=migration.version,
        name=migration.name,
        checksum=checksum or migration.checksum,
        status=status,
        applied_at=1_700_000_000_000,
        execution_time_ms=5,
    )


@pytest.fixture
def validator():
    return MigrationValidator(storage=None)


class TestStaticChecks:
    """Tests for validate_migration."""

    def test_clean_migration(self, validator, users_migration):
        errors, warnings = validator.validate_migration(users_migration)
        assert errors == []
        assert warnings == []

    def test_empty_up_script(self, validator):
        errors, _ = validator.validate_migration(create_migration("001", "empty", up="   "))
        assert [type(e) for e in errors] == [InvalidScriptError]

    def test_unbalanced_quotes(self, validator):
        errors, _ = validator.validate_migration(create_migration("001", "q", up="INSERT INTO t VALUES ('x);"))
        assert any(isinstance(e, InvalidScriptError) for e in errors)

    def test_unsafe_operation_blocks_unless_forced(self, validator):
        """Unguarded DROP TABLE is an error, a warning with force."""
        migration = create_migration("001", "drop", up="DROP TABLE users;", down="SELECT 1;")

        errors, _ = validator.validate_migration(migration)
        assert isinstance(errors[0], UnsafeOperationError)
        assert errors[0].details["operations"] == ["DROP TABLE"]

        errors, warnings = validator.validate_migration(migration, force=True)
        assert errors == []
        assert any("forced" in w for w in warnings)

    def test_missing_down_is_warning(self, validator):
        _, warnings = validator.validate_migration(create_migration("001", "a", up="SELECT 1;"))
        assert any("no down script" in w for w in warnings)

    def test_missing_down_required(self):
        validator = MigrationValidator(require_rollback=True)
        errors, _ = validator.validate_migration(create_migration("001", "a", up="SELECT 1;"))
        assert isinstance(errors[0], RollbackRequiredError)

    def test_rollback_leaves_table(self, validator):
        """A created table the down script never drops is reported."""
        migration = create_migration(
            "001", "two", up="CREATE TABLE a (id INT); CREATE TABLE b (id INT);", down="DROP TABLE IF EXISTS a;"
        )
        assert validator.validate_rollback(migration) == [
            'Migration 001: table "b" is created but not dropped in rollback'
        ]

    def test_long_statement_warning(self, validator):
        migration = create_migration("001", "big", up="SELECT '" + "x" * 10001 + "';", down="SELECT 1;")
        _, warnings = validator.validate_migration(migration)
        assert any("longer than 10000" in w for w in warnings)


class TestDependencyOrder:
    """Tests for resolve_order."""

    def test_version_order_without_dependencies(self, validator):
        items = [create_migration(v, f"m{v}", up="SELECT 1;") for v in ("003", "001", "002")]
        ordered, errors = validator.resolve_order(items)
        assert errors == []
        assert [m.version for m in ordered] == ["001", "002", "003"]

    def test_dependency_reorders(self, validator):
        """A dependency on a higher version moves the dependent after it."""
        items = [
            create_migration("001", "a", up="SELECT 1;", dependencies=["002"]),
            create_migration("002", "b", up="SELECT 1;"),
            create_migration("003", "c", up="SELECT 1;"),
        ]
        ordered, errors = validator.resolve_order(items)
        assert errors == []
        assert [m.version for m in ordered] == ["002", "001", "003"]

    def test_cycle_detected(self, validator):
        items = [
            create_migration("001", "a", up="SELECT 1;", dependencies=["002"]),
            create_migration("002", "b", up="SELECT 1;", dependencies=["001"]),
        ]
        ordered, errors = validator.resolve_order(items)
        assert ordered == []
        assert isinstance(errors[0], CyclicDependencyError)
        assert set(errors[0].details["cycle"]) == {"001", "002"}

    def test_self_dependency(self, validator):
        _, errors = validator.resolve_order([create_migration("001", "a", up="SELECT 1;", dependencies=["001"])])
        assert any(isinstance(e, CyclicDependencyError) for e in errors)

    def test_unknown_dependency(self, validator):
        _, errors = validator.resolve_order([create_migration("002", "b", up="SELECT 1;", dependencies=["001"])])
        assert isinstance(errors[0], MissingDependencyError)

    def test_applied_dependency_satisfies(self, validator):
        """A dependency that is already applied needs no definition."""
        _, errors = validator.resolve_order(
            [create_migration("002", "b", up="SELECT 1;", dependencies=["001"])], applied={"001"}
        )
        assert errors == []


class TestBuildPlan:
    """Tests for build_plan."""

    @pytest.mark.asyncio
    async def test_pending_only(self, validator, migrations, users_migration):
        """Completed versions are not planned again."""
        plan = await validator.build_plan(migrations, records={"001": _record(users_migration)})
        assert plan.is_valid
        assert plan.versions == ["002", "003"]

    @pytest.mark.asyncio
    async def test_failed_and_rolled_back_are_pending(self, validator, migrations, users_migration, posts_migration):
        records = {
            "001": _record(users_migration, MigrationStatus.ROLLED_BACK),
            "002": _record(posts_migration, MigrationStatus.FAILED),
        }
        plan = await validator.build_plan(migrations, records=records)
        assert plan.versions == ["001", "002", "003"]

    @pytest.mark.asyncio
    async def test_checksum_drift_blocks(self, validator, migrations, users_migration):
        """An applied migration edited afterwards blocks the plan."""
        records = {"001": _record(users_migration, checksum="00000000")}
        plan = await validator.build_plan(migrations, records=records)
        assert not plan.is_valid
        assert isinstance(plan.errors[0], ChecksumMismatchError)
        assert plan.errors[0].code == "CHECKSUM_MISMATCH"

    @pytest.mark.asyncio
    async def test_checksum_drift_forced(self, validator, migrations, users_migration):
        records = {"001": _record(users_migration, checksum="00000000")}
        plan = await validator.build_plan(migrations, RunOptions(force=True), records=records)
        assert plan.is_valid
        assert any("Checksum mismatch" in w for w in plan.warnings)

    @pytest.mark.asyncio
    async def test_checksum_ignored_for_rolled_back(self, validator, migrations, users_migration):
        records = {"001": _record(users_migration, MigrationStatus.ROLLED_BACK, checksum="00000000")}
        plan = await validator.build_plan(migrations, records=records)
        assert plan.is_valid

    @pytest.mark.asyncio
    async def test_checksum_validation_disabled(self, migrations, users_migration):
        validator = MigrationValidator(validate_checksums=False)
        records = {"001": _record(users_migration, checksum="00000000")}
        plan = await validator.build_plan(migrations, records=records)
        assert plan.is_valid

    @pytest.mark.asyncio
    async def test_duplicate_and_malformed_versions(self, validator):
        items = [
            create_migration("001", "a", up="SELECT 1;"),
            create_migration("001", "b", up="SELECT 2;"),
            create_migration("1", "c", up="SELECT 3;"),
        ]
        plan = await validator.build_plan(items, records={})
        codes = sorted(type(e).__name__ for e in plan.errors)
        assert codes == [DuplicateVersionError.__name__, MalformedVersionError.__name__]
        assert plan.migrations == []

    @pytest.mark.asyncio
    async def test_target_version(self, validator, migrations):
        plan = await validator.build_plan(migrations, RunOptions(target_version="002"), records={})
        assert plan.versions == ["001", "002"]

    @pytest.mark.asyncio
    async def test_malformed_target_version(self, validator, migrations):
        plan = await validator.build_plan(migrations, RunOptions(target_version="2"), records={})
        assert isinstance(plan.errors[0], MalformedVersionError)

    @pytest.mark.asyncio
    async def test_target_excluding_dependency(self, validator):
        """A dependency beyond the target cannot be scheduled."""
        items = [
            create_migration("001", "a", up="SELECT 1;", dependencies=["003"]),
            create_migration("003", "c", up="SELECT 1;"),
        ]
        plan = await validator.build_plan(items, RunOptions(target_version="001"), records={})
        assert any(isinstance(e, MissingDependencyError) for e in plan.errors)

    @pytest.mark.asyncio
    async def test_reads_storage_when_records_omitted(self, migrations, users_migration):
        """Without explicit records the validator reads the version table."""

        class FakeStorage:
            async def get_records(self):
                return [_record(users_migration)]

        validator = MigrationValidator(storage=FakeStorage())
        plan = await validator.build_plan(migrations, RunOptions(dry_run=True))
        assert plan.dry_run is True
        assert plan.versions == ["002", "003"]


class TestBuildRollbackPlan:
    """Tests for build_rollback_plan."""

    @pytest.fixture
    def applied(self, migrations):
        return {m.version: _record(m) for m in migrations}

    @pytest.mark.asyncio
    async def test_default_is_latest(self, validator, migrations, applied):
        plan = await validator.build_rollback_plan(migrations, records=applied)
        assert plan.direction == "down"
        assert plan.versions == ["003"]

    @pytest.mark.asyncio
    async def test_to_selects_descending(self, validator, migrations, applied):
        """Every applied version above the target, highest first."""
        plan = await validator.build_rollback_plan(migrations, RollbackOptions(to="001"), records=applied)
        assert plan.versions == ["003", "002"]

    @pytest.mark.asyncio
    async def test_steps(self, validator, migrations, applied):
        plan = await validator.build_rollback_plan(migrations, RollbackOptions(steps=2), records=applied)
        assert plan.versions == ["003", "002"]

    @pytest.mark.asyncio
    async def test_invalid_steps(self, validator, migrations, applied):
        plan = await validator.build_rollback_plan(migrations, RollbackOptions(steps=0), records=applied)
        assert not plan.is_valid

    @pytest.mark.asyncio
    async def test_dependency_conflict(self, validator):
        """Rolling back a version that a remaining applied version depends on is blocked."""
        lower = create_migration("001", "a", up="SELECT 1;", down="SELECT 1;", dependencies=["002"])
        upper = create_migration("002", "b", up="SELECT 2;", down="SELECT 2;")
        records = {"001": _record(lower), "002": _record(upper)}

        plan = await validator.build_rollback_plan([lower, upper], RollbackOptions(steps=1), records=records)
        assert plan.versions == ["002"]
        assert isinstance(plan.errors[0], MissingDependencyError)

        plan = await validator.build_rollback_plan(
            [lower, upper], RollbackOptions(steps=1, force=True), records=records
        )
        assert plan.is_valid
        assert any("would be rolled back" in w for w in plan.warnings)

    @pytest.mark.asyncio
    async def test_dependency_rolled_back_together(self, validator):
        lower = create_migration("001", "a", up="SELECT 1;", down="SELECT 1;", dependencies=["002"])
        upper = create_migration("002", "b", up="SELECT 2;", down="SELECT 2;")
        records = {"001": _record(lower), "002": _record(upper)}
        plan = await validator.build_rollback_plan([lower, upper], RollbackOptions(to="000"), records=records)
        assert plan.is_valid
        assert plan.versions == ["002", "001"]
    @pytest.mark.asyncio
    async def test_missing_definition(self, validator, migrations, applied):
        applied["004"] = _record(create_migration("004", "gone", up="SELECT 1;"))
        plan = await validator.build_rollback_plan(migrations, records=applied)
        assert not plan.is_valid
        assert "no definition" in str(plan.errors[0])

    @pytest.mark.asyncio
    async def test_missing_down_is_warning(self, validator):
        migration = create_migration("001", "a", up="SELECT 1;")
        plan = await validator.build_rollback_plan([migration], records={"001": _record(migration)})
        assert plan.is_valid
        assert plan.versions == ["001"]
        assert any("no down script" in w for w in plan.warnings)
