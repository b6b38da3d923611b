"""Custom exceptions for API error handling."""

from typing import Any

from fastapi import HTTPException, status

from migrator.core.errors import (
    ConfigurationError,
    MigrationError,
    PlanValidationError,
    RollbackDisabledError,
    StorageError,
)


class APIException(HTTPException):
    """Custom exception for API errors with standard format.

    Example:
        raise APIException(
            code="PLAN_INVALID",
            message="Migration plan has 1 blocking error(s)",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY
        )
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize API exception.

        Args:
            code: Error code (e.g., 'PLAN_INVALID', 'CONNECTIVITY_FAILURE').
            message: Human-readable error message.
            status_code: HTTP status code (default: 400).
            details: Optional additional error details.
        """
        super().__init__(
            status_code=status_code,
            detail={"error": {"code": code, "message": message, "details": details}},
        )
        self.code = code
        self.message = message
        self.details = details


def status_for(error: MigrationError) -> int:
    """HTTP status code for a migration engine error."""
    if isinstance(error, PlanValidationError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(error, RollbackDisabledError):
        return status.HTTP_409_CONFLICT
    if isinstance(error, StorageError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(error, ConfigurationError):
        return status.HTTP_500_INTERNAL_SERVER_ERROR
    return status.HTTP_400_BAD_REQUEST


def raise_migration_error(error: MigrationError) -> None:
    """Re-raise a migration engine error as an APIException.

    Args:
        error: Error raised by the migration service.

    Raises:
        APIException: With the error's code, message and details.
    """
    raise APIException(
        code=error.code,
        message=error.message,
        status_code=status_for(error),
        details=error.details or None,
    ) from error
