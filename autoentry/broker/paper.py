"""In-memory broker used for dry runs and tests."""

import itertools
import threading
from typing import Any, Optional

import structlog

from .base import BrokerClient, BrokerResponse

logger = structlog.get_logger(__name__)


class PaperBroker(BrokerClient):
    """
    Broker that fills nothing and records everything.

    Quotes and candles are whatever was loaded with ``set_quote`` and
    ``set_candles``. ``fail_next`` queues failure envelopes for the next
    ``place_order`` calls so retry paths can be exercised.
    """

    def __init__(self, connected: bool = True):
        self.connected = connected
        self.orders: dict[str, dict[str, Any]] = {}
        self.placed: list[dict[str, Any]] = []
        self._quotes: dict[str, dict[str, Any]] = {}
        self._candles: dict[tuple[str, str], list] = {}
        self._failures: list[BrokerResponse] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def set_quote(self, instrument: str, price: float, timestamp: Optional[str] = None) -> None:
        self._quotes[instrument] = {"price": price, "timestamp": timestamp}

    def set_candles(self, instrument: str, timeframe: str, candles: list) -> None:
        self._candles[(instrument, timeframe)] = list(candles)

    def fail_next(self, error: str, error_code: str = "unknown", times: int = 1) -> None:
        with self._lock:
            self._failures.extend(BrokerResponse.fail(error, error_code) for _ in range(times))

    def is_connected(self) -> bool:
        return self.connected

    def place_order(self, payload: dict[str, Any]) -> BrokerResponse:
        with self._lock:
            if not self.connected:
                return BrokerResponse.fail("Broker session expired", "auth_expired")
            if self._failures:
                return self._failures.pop(0)

            order_id = f"PAPER{next(self._ids):06d}"
            order = dict(payload, order_id=order_id, status="open")
            self.orders[order_id] = order
            self.placed.append(order)

        logger.info("Paper order placed", order_id=order_id, tag=payload.get("tag"),
                    order_type=payload.get("order_type"),
                    transaction_type=payload.get("transaction_type"))
        return BrokerResponse.ok({"order_id": order_id, "status": "open"})

    def cancel_orders(self, tag: str) -> BrokerResponse:
        cancelled = []
        with self._lock:
            for order_id, order in self.orders.items():
                if order.get("tag") == tag and order["status"] == "open":
                    order["status"] = "cancelled"
                    cancelled.append(order_id)
        return BrokerResponse.ok({"order_ids": cancelled})

    def get_order_details(self, order_id: str) -> BrokerResponse:
        order = self.orders.get(order_id)
        if order is None:
            return BrokerResponse.fail(f"Order {order_id} not found", "rejected")
        return BrokerResponse.ok(dict(order))

    def get_quote(self, instrument: str) -> BrokerResponse:
        if not self.connected:
            return BrokerResponse.fail("Broker session expired", "auth_expired")
        quote = self._quotes.get(instrument)
        if quote is None:
            return BrokerResponse.fail(f"No quote for {instrument}", "unknown")
        return BrokerResponse.ok(dict(quote))

    def get_candles(self, instrument: str, timeframe: str, count: int) -> BrokerResponse:
        if not self.connected:
            return BrokerResponse.fail("Broker session expired", "auth_expired")
        candles = self._candles.get((instrument, timeframe))
        if candles is None:
            return BrokerResponse.fail(f"No {timeframe} candles for {instrument}", "unknown")
        return BrokerResponse.ok(candles[-count:])
