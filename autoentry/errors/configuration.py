"""
Configuration error classifications for malformed strategies.

A strategy that fails validation cannot be fixed by retrying; it has to be
regenerated upstream. The ``code`` attribute carries the failure code reported
to callers (``no_triggers``, ``invalid_triggers``, ``missing_entry_price`` ...).
"""

from typing import Any, Optional


class StrategyConfigurationError(Exception):
    """Strategy, trigger or invalidation definition is malformed."""

    def __init__(self, message: str, code: str = "invalid_strategy",
                 field: Optional[str] = None,
                 details: Optional[list[dict[str, Any]]] = None,
                 context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.field = field
        self.details = details or []
        self.context = context or {}
        self.recoverable = False


class InvalidReferenceError(StrategyConfigurationError):
    """Operand reference name is not one of the known reference kinds."""

    def __init__(self, message: str, reference: Optional[str] = None, **kwargs):
        kwargs.setdefault("code", "invalid_triggers")
        super().__init__(message, **kwargs)
        self.reference = reference
