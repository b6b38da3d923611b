"""Unit tests for migration helpers."""

import zlib

import pytest

from migrator.core.migrations.models import Migration, create_migration
from migrator.core.migrations.utils import (
    calculate_checksum,
    estimate_execution_time,
    find_unguarded_updates,
    find_unsafe_operations,
    generate_filename,
    is_production_safe,
    next_version,
    parse_filename,
    parse_version_from_filename,
    sort_migrations_by_version,
    validate_version,
)


class TestChecksum:
    """Tests for calculate_checksum."""

    def test_checksum_is_crc32_hex(self):
        """Checksum is CRC-32 of up, NUL, down as 8 hex digits."""
        payload = "CREATE TABLE a (id INT);\x00DROP TABLE a;".encode("utf-8")
        expected = format(zlib.crc32(payload) & 0xFFFFFFFF, "08x")
        assert calculate_checksum("CREATE TABLE a (id INT);", "DROP TABLE a;") == expected
        assert len(expected) == 8

    def test_missing_down_equals_empty_down(self):
        """A missing down script counts as the empty string."""
        assert calculate_checksum("SELECT 1;") == calculate_checksum("SELECT 1;", "")

    def test_checksum_changes_with_down(self):
        """Editing only the down script changes the checksum."""
        assert calculate_checksum("SELECT 1;", "A") != calculate_checksum("SELECT 1;", "B")

    def test_migration_checksum_is_derived(self):
        """A supplied checksum is replaced by the derived one."""
        migration = create_migration("001", "x", up="SELECT 1;")
        forged = Migration.model_validate(
            {"version": "001", "name": "x", "up": "SELECT 1;", "checksum": "deadbeef"}
        )
        assert forged.checksum == calculate_checksum("SELECT 1;")
        assert migration.checksum == forged.checksum


class TestFilenames:
    """Tests for filename generation and parsing."""

    def test_generate_filename(self):
        """Names are lowercased and non-alphanumeric runs become underscores."""
        assert generate_filename("001", "Create Users!") == "001_create_users.sql"
        assert generate_filename("042", "add--posts  index") == "042_add_posts_index.sql"

    def test_generate_filename_rejects_bad_version(self):
        """Versions must be 3 digits."""
        with pytest.raises(ValueError, match="Invalid migration version"):
            generate_filename("1", "x")

    def test_generate_filename_rejects_empty_name(self):
        """A name without usable characters is rejected."""
        with pytest.raises(ValueError, match="Invalid migration name"):
            generate_filename("001", "!!!")

    def test_parse_version_round_trip(self):
        """The version is recovered from a generated filename."""
        assert parse_version_from_filename(generate_filename("007", "Seed Data")) == "007"

    def test_parse_version_rejects_other_files(self):
        """Files outside the convention yield None."""
        assert parse_version_from_filename("README.md") is None
        assert parse_version_from_filename("1_short.sql") is None
        assert parse_version_from_filename("001_Upper.sql") is None

    def test_parse_filename_keeps_malformed_versions(self):
        """The loose parser hands malformed versions on to validation."""
        assert parse_filename("1_short.sql") == ("1", "short")
        assert parse_filename("notes.txt") is None


class TestOrdering:
    """Tests for version ordering helpers."""

    def test_validate_version(self):
        assert validate_version("001")
        assert not validate_version("01")
        assert not validate_version("abc")
        assert not validate_version("0001")

    def test_sort_is_numeric(self):
        """Sorting is ascending by numeric version, malformed versions last."""
        items = [create_migration(v, f"m{v}", up="SELECT 1;") for v in ("010", "x1", "002", "001")]
        assert [m.version for m in sort_migrations_by_version(items)] == ["001", "002", "010", "x1"]

    def test_next_version(self):
        assert next_version([]) == "001"
        assert next_version(["001", "009", "bad"]) == "010"

    def test_next_version_exhausted(self):
        with pytest.raises(ValueError, match="exhausted"):
            next_version(["999"])


class TestSafety:
    """Tests for destructive-operation detection."""

    @pytest.mark.parametrize(
        "sql,expected",
        [
            ("DROP TABLE users;", ["DROP TABLE"]),
            ("drop database app;", ["DROP DATABASE"]),
            ("TRUNCATE users;", ["TRUNCATE"]),
            ("DELETE FROM users;", ["DELETE without WHERE"]),
        ],
    )
    def test_unsafe_operations_found(self, sql, expected):
        """Unguarded destructive statements are reported."""
        assert find_unsafe_operations(sql) == expected

    @pytest.mark.parametrize(
        "sql",
        [
            "DROP TABLE IF EXISTS users;",
            "DELETE FROM users WHERE id = 1;",
            "CREATE TABLE t (id INT); -- DROP TABLE t;",
            "INSERT INTO notes (body) VALUES ('TRUNCATE everything');",
        ],
    )
    def test_guarded_operations_pass(self, sql):
        """Guarded forms, comments and string literals are not flagged."""
        assert find_unsafe_operations(sql) == []

    def test_is_production_safe(self):
        assert is_production_safe(create_migration("001", "a", up="CREATE TABLE a (id INT);"))
        assert not is_production_safe(create_migration("002", "b", up="DROP TABLE a;"))

    def test_drop_after_backslash_literal_is_flagged(self):
        """A literal ending in a backslash does not mask the statement after it."""
        sql = "INSERT INTO t VALUES ('a\\'); DROP TABLE users; INSERT INTO t VALUES ('b'); -- '"
        assert find_unsafe_operations(sql) == ["DROP TABLE"]
        assert not is_production_safe(create_migration("003", "c", up=sql))

    def test_unguarded_update(self):
        """UPDATE without WHERE is reported per statement."""
        found = find_unguarded_updates("UPDATE users SET active = 1; UPDATE users SET x = 2 WHERE id = 3;")
        assert found == ["UPDATE users SET active = 1"]


def test_estimate_execution_time():
    """Estimate is 1s plus 10ms per started 100 characters."""
    assert estimate_execution_time(create_migration("001", "a", up="x" * 100)) == 1010
    assert estimate_execution_time(create_migration("001", "a", up="x" * 101)) == 1020
