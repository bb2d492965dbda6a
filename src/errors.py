"""
Error taxonomy for the operator.

Store errors describe what happened to a read or write against the object
store. Hook errors are business-rule failures reported by kind-specific
hooks. FatalConfigError aborts startup before any reconciliation runs.
"""

from typing import Optional


class OperatorError(Exception):
    """Base class for all operator errors."""


class StoreError(OperatorError):
    """Base class for object store failures."""


class NotFoundError(StoreError):
    """The object does not exist (or no longer exists)."""


class ConflictError(StoreError):
    """The object changed concurrently; the write was based on a stale version."""

    def __init__(self, message: str, current_version: str = ""):
        self.current_version = current_version
        super().__init__(message)


class UnavailableError(StoreError):
    """Transient connectivity failure talking to the store."""


class AlreadyExistsError(StoreError):
    """An object with the same identity already exists."""


class HookError(OperatorError):
    """
    Raised by a business hook when a business rule fails.

    The reason is surfaced as the reason of the Fulfilled condition. When
    omitted the engine picks one based on the operation that failed.
    """

    def __init__(self, message: str, reason: Optional[str] = None):
        self.message = message
        self.reason = reason
        super().__init__(message)


class FatalConfigError(OperatorError):
    """Startup configuration or kind registration failure."""
