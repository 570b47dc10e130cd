"""
System failure error classifications for unrecoverable errors.

These exceptions represent storage-level failures that cannot be resolved by
the caller retrying the same operation.
"""

from typing import Any, Optional


class SystemFailureError(Exception):
    """Base class for unrecoverable system failures."""

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}
        self.recoverable = False


class PersistenceError(SystemFailureError):
    """Database persistence failures."""

    def __init__(self, message: str, operation: Optional[str] = None,
                 target: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.operation = operation
        self.target = target


class ConcurrencyConflictError(SystemFailureError):
    """Conditional update kept losing to concurrent writers."""

    def __init__(self, message: str, analysis_id: Optional[str] = None,
                 attempts: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.analysis_id = analysis_id
        self.attempts = attempts


class LockReleaseError(SystemFailureError):
    """Order lock could not be cleared after an execution attempt."""

    def __init__(self, message: str, analysis_id: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.analysis_id = analysis_id
