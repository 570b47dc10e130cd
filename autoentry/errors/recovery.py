"""
Recovery strategy classifications for error handling.

These mixins help categorize errors by their recovery characteristics
and guide the error handling strategy.
"""

from typing import Optional


class RecoverableError(Exception):
    """Mixin for errors that can be recovered from automatically."""

    def __init__(self, message: str, retry_count: int = 0,
                 max_retries: int = 3, **kwargs):
        super().__init__(message)
        self.retry_count = retry_count
        self.max_retries = max_retries
        self.recoverable = True


class RetryExhaustedError(RecoverableError):
    """Transient broker failures persisted through every backoff attempt."""

    def __init__(self, message: str, analysis_id: Optional[str] = None,
                 strategy_id: Optional[str] = None,
                 last_error: Optional[Exception] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.analysis_id = analysis_id
        self.strategy_id = strategy_id
        self.last_error = last_error
