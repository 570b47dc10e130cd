"""
Tests for time utilities and market-time semantics.
"""

from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from autoentry.utils.time import (
    ensure_aware,
    format_market_time,
    get_market_time,
    is_market_open,
    parse_timestamp,
    time_elapsed_seconds,
    trading_date,
)


class TestGetMarketTime:
    """Test get_market_time function."""

    def test_uses_market_time_when_available(self):
        market_ts = datetime(2024, 1, 10, 5, 0, tzinfo=timezone.utc)
        assert get_market_time(market_ts) == market_ts

    def test_falls_back_to_wall_clock_time(self):
        with patch("autoentry.utils.time.datetime") as mock_datetime:
            mock_now = datetime(2024, 1, 10, 5, 0, tzinfo=timezone.utc)
            mock_datetime.now.return_value = mock_now

            assert get_market_time(None) == mock_now
            mock_datetime.now.assert_called_once_with(timezone.utc)

    def test_naive_treated_as_utc(self):
        assert ensure_aware(datetime(2024, 1, 10)).tzinfo == timezone.utc


class TestParseTimestamp:
    """Timestamps arrive as datetimes, ISO strings or epoch numbers."""

    @pytest.mark.parametrize("value", [
        "2024-01-10T05:00:00Z",
        "2024-01-10T10:30:00+05:30",
        1704862800,
        1704862800000,
        datetime(2024, 1, 10, 5, 0),
    ])
    def test_formats(self, value):
        assert parse_timestamp(value) == datetime(2024, 1, 10, 5, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [None, "yesterday", True])
    def test_unparseable(self, value):
        assert parse_timestamp(value) is None


class TestTradingSessions:
    """Session dates and market hours in the market timezone."""

    def test_trading_date_crosses_utc_midnight(self):
        late_utc = datetime(2024, 1, 10, 20, 0, tzinfo=timezone.utc)
        assert trading_date(late_utc) == date(2024, 1, 11)
        assert trading_date(late_utc, "UTC") == date(2024, 1, 10)

    def test_open_during_session(self):
        assert is_market_open(datetime(2024, 1, 10, 5, 0, tzinfo=timezone.utc))

    def test_closed_before_open(self):
        # 09:00 IST
        assert not is_market_open(datetime(2024, 1, 10, 3, 30, tzinfo=timezone.utc))

    def test_close_is_exclusive(self):
        # 15:30 IST
        assert not is_market_open(datetime(2024, 1, 10, 10, 0, tzinfo=timezone.utc))

    def test_closed_on_weekend(self):
        assert not is_market_open(datetime(2024, 1, 13, 5, 0, tzinfo=timezone.utc))


class TestElapsed:
    """Elapsed time and formatting."""

    def test_elapsed_seconds(self):
        start = datetime(2024, 1, 10, 5, 0, tzinfo=timezone.utc)
        assert time_elapsed_seconds(start, start + timedelta(minutes=5)) == 300

    def test_format_market_time(self):
        assert format_market_time(datetime(2024, 1, 10, 5, 0)) == "2024-01-10T05:00:00+00:00"
