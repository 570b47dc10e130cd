"""
Error classification system for strategy evaluation and order execution.

Separates configuration errors (never retried), infrastructure errors
(retried or paused) and system failures. Expected business outcomes such as
unmet triggers or an already placed order are result values, not exceptions.
"""

from .configuration import (
    StrategyConfigurationError,
    InvalidReferenceError,
)
from .infrastructure import (
    InfrastructureError,
    BrokerError,
    BrokerAuthError,
    BrokerTimeoutError,
    BrokerRateLimitError,
    MarketDataUnavailableError,
)
from .system_failures import (
    SystemFailureError,
    PersistenceError,
    ConcurrencyConflictError,
    LockReleaseError,
)
from .recovery import (
    RecoverableError,
    RetryExhaustedError,
)

__all__ = [
    # Configuration Errors
    "StrategyConfigurationError",
    "InvalidReferenceError",
    # Infrastructure Errors
    "InfrastructureError",
    "BrokerError",
    "BrokerAuthError",
    "BrokerTimeoutError",
    "BrokerRateLimitError",
    "MarketDataUnavailableError",
    # System Failures
    "SystemFailureError",
    "PersistenceError",
    "ConcurrencyConflictError",
    "LockReleaseError",
    # Recovery Categories
    "RecoverableError",
    "RetryExhaustedError",
]
