"""Narrow broker interface used by the market data accessor and the coordinator."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from autoentry.errors import (
    BrokerAuthError,
    BrokerError,
    BrokerRateLimitError,
    BrokerTimeoutError,
)

# error_code values a broker adapter may report
ERROR_CODES = ("auth_expired", "timeout", "rate_limited", "rejected", "unknown")


@dataclass(frozen=True)
class BrokerResponse:
    """Envelope returned by every broker call."""
    success: bool
    data: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None) -> "BrokerResponse":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, error_code: str = "unknown") -> "BrokerResponse":
        return cls(success=False, error=error, error_code=error_code)


def raise_for_response(response: BrokerResponse, operation: str) -> Any:
    """
    Return ``response.data`` or raise the matching ``BrokerError`` subclass.

    Args:
        response: Broker envelope
        operation: Name of the broker call, attached to the exception

    Raises:
        BrokerAuthError, BrokerTimeoutError, BrokerRateLimitError, BrokerError
    """
    if response.success:
        return response.data

    message = response.error or f"Broker {operation} failed"
    if response.error_code == "auth_expired":
        raise BrokerAuthError(message, operation=operation)
    if response.error_code == "timeout":
        raise BrokerTimeoutError(message, operation=operation)
    if response.error_code == "rate_limited":
        raise BrokerRateLimitError(message, operation=operation)
    raise BrokerError(message, error_code=response.error_code, operation=operation)


class BrokerClient(ABC):
    """Broker API collaborator. Implementations own the wire protocol."""

    @abstractmethod
    def is_connected(self) -> bool:
        """True when the broker session has valid credentials."""

    @abstractmethod
    def place_order(self, payload: dict[str, Any]) -> BrokerResponse:
        """Submit an order; ``data`` carries ``{"order_id", "status"}``."""

    @abstractmethod
    def cancel_orders(self, tag: str) -> BrokerResponse:
        """Cancel every open order carrying ``tag``."""

    @abstractmethod
    def get_order_details(self, order_id: str) -> BrokerResponse:
        """Fetch the broker's view of one order."""

    @abstractmethod
    def get_quote(self, instrument: str) -> BrokerResponse:
        """Last traded price; ``data`` carries ``{"price", "timestamp"}``."""

    @abstractmethod
    def get_candles(self, instrument: str, timeframe: str, count: int) -> BrokerResponse:
        """Most recent ``count`` OHLCV bars in chronological order."""
