"""
Persistence-layer exceptions.

Repositories translate storage faults into these types (chaining the
original exception) and the API layer maps them to HTTP status codes.
A lookup that finds nothing is not an error: repositories return None.
"""

from typing import Any


class PersistenceError(Exception):
    """Base exception for all persistence errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class NotFoundError(PersistenceError):
    """
    Raised by callers that require an entity to be present.

    HTTP Status: 404 Not Found
    """

    pass


class InvalidOperationError(PersistenceError):
    """
    Raised when an operation cannot be executed as requested.

    Examples:
    - Unknown attribute in a sort key or eager-load path
    - Negative skip/take
    - Deleting an entity that was never persisted
    - Malformed predicate rejected by the database

    HTTP Status: 400 Bad Request
    """

    pass


class ConstraintViolationError(PersistenceError):
    """
    Raised when the database rejects a write with an integrity error.

    Never retried.

    HTTP Status: 409 Conflict
    """

    pass


class TransientStorageError(PersistenceError):
    """
    Raised when a transient failure survives every retry attempt.

    HTTP Status: 503 Service Unavailable
    """

    pass


class StartupError(PersistenceError):
    """
    Raised when a lifecycle hook fails during application startup.

    Fatal: the host aborts startup rather than serving against an
    unreachable or unmigrated store.
    """

    pass


class ServiceNotRegisteredError(PersistenceError):
    """Raised when the service registry has no registration for a key."""

    pass


ERROR_STATUS_MAP = {
    NotFoundError: 404,
    InvalidOperationError: 400,
    ConstraintViolationError: 409,
    TransientStorageError: 503,
    StartupError: 500,
    ServiceNotRegisteredError: 500,
}


def get_status_code(error: Exception) -> int:
    """
    Get the HTTP status code for a given exception.

    Args:
        error: The exception instance

    Returns:
        HTTP status code (defaults to 500 for unknown errors)
    """
    return ERROR_STATUS_MAP.get(type(error), 500)
