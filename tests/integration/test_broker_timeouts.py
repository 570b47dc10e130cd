"""
Integration tests for broker calls that outlast their timeout.
"""

import threading

import pytest

from autoentry.broker.paper import PaperBroker
from autoentry.config.defaults import ExecutionParams
from autoentry.data.models import Timeframe
from autoentry.errors import BrokerTimeoutError, MarketDataUnavailableError, RetryExhaustedError
from autoentry.execution.coordinator import OrderExecutionCoordinator
from autoentry.market.accessor import MarketDataAccessor

INSTRUMENT = "NSE_EQ|INE002A01018"


class SlowBroker(PaperBroker):
    """Paper broker whose order and candle calls block until released."""

    def __init__(self):
        super().__init__()
        self.release = threading.Event()
        self.slow_orders = True
        self.slow_candles = True

    def place_order(self, payload):
        if self.slow_orders:
            self.release.wait(timeout=5)
        return super().place_order(payload)

    def get_candles(self, instrument, timeframe, count):
        if self.slow_candles:
            self.release.wait(timeout=5)
        return super().get_candles(instrument, timeframe, count)


@pytest.fixture
def slow_broker(make_candles, market_now):
    broker = SlowBroker()
    broker.set_quote(INSTRUMENT, 101.0, timestamp=market_now.isoformat())
    broker.set_candles(INSTRUMENT, "1d", make_candles(101.0))
    yield broker
    broker.release.set()


@pytest.fixture
def slow_market_data(slow_broker):
    accessor = MarketDataAccessor(slow_broker, timeout_seconds=0.05)
    yield accessor
    accessor.close()


@pytest.fixture
def slow_coordinator(analysis_store, slow_broker, slow_market_data, market_now):
    params = ExecutionParams(broker_retry_attempts=2, backoff_min_seconds=0,
                             backoff_max_seconds=0, broker_timeout_seconds=0.05)
    coord = OrderExecutionCoordinator(analysis_store, slow_broker, slow_market_data,
                                      params=params, clock=lambda: market_now)
    yield coord
    coord.close()


class TestOrderTimeout:
    """place_order is abandoned after broker_timeout_seconds."""

    def test_submit_raises_after_timeouts(self, slow_coordinator, analysis):
        with pytest.raises(RetryExhaustedError) as exc_info:
            slow_coordinator.submit_order({"tag": "BRC_S1_slow"}, "A1", "S1")

        assert isinstance(exc_info.value.__cause__, BrokerTimeoutError)

    def test_execution_fails_retryable(self, slow_coordinator, analysis, analysis_store,
                                       slow_broker):
        result = slow_coordinator.execute_strategy("A1", "S1", "U1", bypass_triggers=True)

        assert result.error == "order_execution_failed"
        assert result.retryable is True
        assert "timed out" in result.message
        stored = analysis_store.get("A1")
        assert stored.order_processing is False
        assert stored.placed_orders == []


class TestMarketDataTimeout:
    """Quote and candle fetches are abandoned after timeout_seconds."""

    def test_slow_candles(self, slow_market_data):
        with pytest.raises(MarketDataUnavailableError, match="timed out"):
            slow_market_data.get_snapshot(INSTRUMENT, [Timeframe.parse("1d")])

    def test_fast_broker_unaffected(self, slow_market_data, slow_broker):
        slow_broker.slow_candles = False

        snapshot = slow_market_data.get_snapshot(INSTRUMENT, [Timeframe.parse("1d")])

        assert snapshot.current_price == 101.0

    def test_trigger_check_reports_retryable(self, slow_coordinator, analysis, slow_broker):
        slow_broker.slow_orders = False

        result = slow_coordinator.execute_strategy("A1", "S1", "U1")

        assert result.error == "order_execution_failed"
        assert result.retryable is True
        assert slow_broker.placed == []
