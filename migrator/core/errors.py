"""Exception hierarchy for the migration engine."""

from typing import Any


class MigrationError(Exception):
    """Base exception for migration engine errors."""

    code = "MIGRATION_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ConfigurationError(MigrationError):
    """Raised when the engine configuration is invalid."""

    code = "CONFIGURATION_ERROR"


class RollbackDisabledError(MigrationError):
    """Raised when a rollback is requested but rollback is disabled."""

    code = "ROLLBACK_DISABLED"


# Validation errors (blocking, raised or collected before any execution)


class MigrationValidationError(MigrationError):
    """Base exception for plan validation errors."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, version: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message, details)
        self.version = version


class ChecksumMismatchError(MigrationValidationError):
    """Raised when an applied migration's definition changed on disk."""

    code = "CHECKSUM_MISMATCH"


class CyclicDependencyError(MigrationValidationError):
    """Raised when migration dependencies form a cycle."""

    code = "CYCLIC_DEPENDENCY"


class UnsafeOperationError(MigrationValidationError):
    """Raised when an up script contains an unguarded destructive statement."""

    code = "UNSAFE_OPERATION"


class MissingDependencyError(MigrationValidationError):
    """Raised when a dependency is neither applied nor scheduled earlier."""

    code = "MISSING_DEPENDENCY"


class DuplicateVersionError(MigrationValidationError):
    """Raised when two definitions share a version."""

    code = "DUPLICATE_VERSION"


class MalformedVersionError(MigrationValidationError):
    """Raised when a version is not a 3-digit numeric string."""

    code = "MALFORMED_VERSION"


class InvalidScriptError(MigrationValidationError):
    """Raised when a script fails static checks (empty, unbalanced quotes)."""

    code = "INVALID_SCRIPT"


class RollbackRequiredError(MigrationValidationError):
    """Raised when rollback scripts are required and one is missing."""

    code = "ROLLBACK_REQUIRED"


class PlanValidationError(MigrationError):
    """Raised when a migration plan has blocking errors."""

    code = "PLAN_INVALID"

    def __init__(self, plan: Any):
        errors = list(plan.errors)
        summary = "; ".join(str(e) for e in errors[:5])
        if len(errors) > 5:
            summary += f" (+{len(errors) - 5} more)"
        super().__init__(
            f"Migration plan has {len(errors)} blocking error(s): {summary}",
            details={"errors": [e.to_dict() for e in errors]},
        )
        self.plan = plan
        self.errors = errors


# Execution errors (per migration)


class MigrationExecutionError(MigrationError):
    """Base exception for per-migration execution failures."""

    code = "EXECUTION_ERROR"

    def __init__(self, message: str, version: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message, details)
        self.version = version


class MigrationTimeoutError(MigrationExecutionError):
    """Raised when a script did not finish within the configured timeout."""

    code = "TIMEOUT"


class DriverError(MigrationExecutionError):
    """Raised when the database driver rejects a statement."""

    code = "DRIVER_ERROR"

    def __init__(
        self,
        message: str,
        version: str | None = None,
        transient: bool = False,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, version, details)
        self.transient = transient


class MissingDownScriptError(MigrationExecutionError):
    """Raised when rolling back a migration that has no down script."""

    code = "MISSING_DOWN_SCRIPT"


class HookAbortedError(MigrationExecutionError):
    """Raised when an opted-in hook aborted the migration."""

    code = "HOOK_ABORTED"


# Storage errors (always fatal to the current call)


class StorageError(MigrationError):
    """Base exception for version-history persistence failures."""

    code = "STORAGE_ERROR"


class ConnectivityError(StorageError):
    """Raised when the database cannot be reached."""

    code = "CONNECTIVITY_FAILURE"


class SchemaCorruptionError(StorageError):
    """Raised when the version table is missing rows or has an unexpected shape."""

    code = "SCHEMA_CORRUPTION"
