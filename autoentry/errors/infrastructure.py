"""
Infrastructure error classifications for broker and market data access.

These errors are transient: they are retried with backoff, or, for credential
expiry, cause monitoring to pause until the user re-authenticates.
"""

from typing import Any, Optional


class InfrastructureError(Exception):
    """Base class for recoverable infrastructure failures."""

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}
        self.recoverable = True


class BrokerError(InfrastructureError):
    """Broker API call returned a failure envelope."""

    def __init__(self, message: str, error_code: Optional[str] = None,
                 operation: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.error_code = error_code or "unknown"
        self.operation = operation


class BrokerAuthError(BrokerError):
    """Broker credentials expired or missing; requires re-authentication."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", "auth_expired")
        super().__init__(message, **kwargs)


class BrokerTimeoutError(BrokerError):
    """Broker call did not complete within its timeout."""

    def __init__(self, message: str, timeout_seconds: Optional[float] = None, **kwargs):
        kwargs.setdefault("error_code", "timeout")
        super().__init__(message, **kwargs)
        self.timeout_seconds = timeout_seconds


class BrokerRateLimitError(BrokerError):
    """Broker rejected the call because of rate limiting."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", "rate_limited")
        super().__init__(message, **kwargs)


class MarketDataUnavailableError(InfrastructureError):
    """Fresh market data could not be obtained for the requested timeframes."""

    def __init__(self, message: str, instrument: Optional[str] = None,
                 timeframes: Optional[list[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.instrument = instrument
        self.timeframes = timeframes or []
