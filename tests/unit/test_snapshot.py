"""Tests for snapshot normalization and the market data accessor."""

from datetime import datetime, timezone

import pytest

from autoentry.broker.paper import PaperBroker
from autoentry.data.models import Reference, ReferenceKind, Timeframe
from autoentry.errors import BrokerAuthError, MarketDataUnavailableError
from autoentry.market.accessor import MarketDataAccessor, parse_candle
from autoentry.market.snapshot import MarketSnapshot, normalize_snapshot


class TestNormalizeSnapshot:
    """Field names are canonicalized at the boundary."""

    def test_canonical_fields(self):
        snapshot = normalize_snapshot({
            "current_price": "101.5",
            "as_of": "2024-01-10T05:00:00Z",
            "timeframes": {
                "1D": {"close": 101, "EMA20": 99.5, "RSI": 55, "timestamp": 1704862800000},
            },
        })

        data = snapshot.get(Timeframe.D1)
        assert snapshot.current_price == 101.5
        assert snapshot.as_of == datetime(2024, 1, 10, 5, 0, tzinfo=timezone.utc)
        assert data.close == 101
        assert data.indicators == {"ema20": 99.5, "rsi14": 55}
        assert data.timestamp == datetime(2024, 1, 10, 5, 0, tzinfo=timezone.utc)

    def test_cross_timeframe_field_filed_under_its_timeframe(self):
        snapshot = normalize_snapshot({
            "timeframes": {"15m": {"close": 100, "ema20_1h": 98.0}},
        })

        assert snapshot.get(Timeframe.H1).indicators["ema20"] == 98.0
        assert "ema20" not in snapshot.get(Timeframe.M15).indicators

    def test_unknown_timeframes_and_fields_dropped(self):
        snapshot = normalize_snapshot({
            "timeframes": {"4h": {"close": 1}, "1h": {"close": 2, "supertrend": 3, "note": "x"}},
        })

        assert list(snapshot.timeframes) == [Timeframe.H1]
        assert snapshot.get(Timeframe.H1).indicators == {}

    def test_price_field_sets_current_price(self):
        snapshot = normalize_snapshot({"timeframes": {"1m": {"ltp": 100.25}}})
        assert snapshot.current_price == 100.25

    def test_snapshot_passthrough(self):
        snapshot = MarketSnapshot(current_price=1.0)
        assert normalize_snapshot(snapshot) is snapshot


class TestParseCandle:
    """Candle rows from brokers."""

    def test_dict(self):
        candle = parse_candle({"timestamp": "2024-01-10T05:00:00Z", "open": 1, "high": 2,
                               "low": 0.5, "close": 1.5, "volume": 10})
        assert candle.close == 1.5

    def test_row(self):
        candle = parse_candle([1704862800, 1, 2, 0.5, 1.5, 10])
        assert candle.ts == datetime(2024, 1, 10, 5, 0, tzinfo=timezone.utc)

    def test_bad_row(self):
        assert parse_candle({"open": 1}) is None


class TestMarketDataAccessor:
    """Snapshots assembled from broker candles and quotes."""

    def test_snapshot_with_requested_periods(self, broker, market_now):
        accessor = MarketDataAccessor(broker)
        try:
            snapshot = accessor.get_snapshot(
                "NSE_EQ|INE002A01018", [Timeframe.D1],
                [Reference(ReferenceKind.EMA, period=5)],
            )
        finally:
            accessor.close()

        data = snapshot.get(Timeframe.D1)
        assert snapshot.current_price == 101.0
        assert snapshot.as_of == market_now
        assert data.close == 101.0
        assert data.indicators["ema5"] is not None
        assert data.indicators["rsi14"] is not None

    def test_auth_error_propagates(self, make_candles):
        broker = PaperBroker(connected=False)
        accessor = MarketDataAccessor(broker)
        try:
            with pytest.raises(BrokerAuthError):
                accessor.get_snapshot("X", [Timeframe.D1])
        finally:
            accessor.close()

    def test_missing_candles_unavailable(self, broker):
        accessor = MarketDataAccessor(broker)
        try:
            with pytest.raises(MarketDataUnavailableError) as exc_info:
                accessor.get_snapshot("NSE_EQ|INE002A01018", [Timeframe.D1, Timeframe.M5])
        finally:
            accessor.close()
        assert "5m" in exc_info.value.timeframes
