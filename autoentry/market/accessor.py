"""
Market data accessor building snapshots from broker quotes and candles.

Quotes and candles are blocking broker calls; every fetch runs on a worker
thread and is abandoned once ``timeout_seconds`` has elapsed, so a slow
broker never stalls a monitoring tick.
"""

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime
from typing import Any, Iterable, Optional

import structlog

from autoentry.broker.base import BrokerClient, raise_for_response
from autoentry.data.models import Reference, ReferenceKind, Timeframe
from autoentry.errors import BrokerAuthError, BrokerError, MarketDataUnavailableError
from autoentry.utils.time import get_market_time, parse_timestamp

from . import indicators
from .snapshot import Candle, MarketSnapshot, TimeframeData

logger = structlog.get_logger(__name__)

DEFAULT_EMA_PERIODS = (9, 20, 50, 200)
DEFAULT_SMA_PERIODS = (20, 50, 200)


def parse_candle(raw: Any) -> Optional[Candle]:
    """Parse a candle from a dict or a ``[ts, open, high, low, close, volume]`` row."""
    try:
        if isinstance(raw, dict):
            ts = parse_timestamp(raw.get("timestamp", raw.get("ts", raw.get("time"))))
            values = [raw["open"], raw["high"], raw["low"], raw["close"], raw.get("volume", 0)]
        else:
            ts = parse_timestamp(raw[0])
            values = list(raw[1:6])
        if ts is None:
            return None
        o, h, low, c, v = (float(x or 0) for x in values)
    except (KeyError, IndexError, TypeError, ValueError):
        return None
    return Candle(ts=ts, open=o, high=h, low=low, close=c, volume=v)


def build_timeframe_data(candles: list[Candle], periods: dict[ReferenceKind, set[int]]) -> TimeframeData:
    """Latest bar plus indicator values keyed by canonical field name."""
    last = candles[-1]
    data = TimeframeData(
        open=last.open, high=last.high, low=last.low,
        close=last.close, volume=last.volume, timestamp=last.ts,
    )
    closes = [c.close for c in candles]
    values: dict[str, Optional[float]] = {}

    for period in periods.get(ReferenceKind.EMA, set()) | set(DEFAULT_EMA_PERIODS):
        values[f"ema{period}"] = indicators.calculate_ema(closes, period)
    for period in periods.get(ReferenceKind.SMA, set()) | set(DEFAULT_SMA_PERIODS):
        values[f"sma{period}"] = indicators.calculate_sma(closes, period)
    for period in periods.get(ReferenceKind.RSI, set()) | {14}:
        values[f"rsi{period}"] = indicators.calculate_rsi(closes, period)
    for period in periods.get(ReferenceKind.ATR, set()) | {14}:
        values[f"atr{period}"] = indicators.calculate_atr(candles, period)
    for period in periods.get(ReferenceKind.ADX, set()) | {14}:
        values[f"adx{period}"] = indicators.calculate_adx(candles, period)

    values["vwap"] = indicators.calculate_vwap(candles)

    macd = indicators.calculate_macd(closes)
    if macd is not None:
        values["macd"], values["macd_signal"], values["macd_histogram"] = macd

    bands = indicators.calculate_bollinger(closes)
    if bands is not None:
        values["bb_upper"], values["bb_middle"], values["bb_lower"] = bands

    stoch = indicators.calculate_stochastic(candles)
    if stoch is not None:
        values["stoch_k"], values["stoch_d"] = stoch

    data.indicators = {k: v for k, v in values.items() if v is not None}
    return data


class MarketDataAccessor:
    """Fetches quotes and candles and assembles a ``MarketSnapshot``."""

    def __init__(self, broker: BrokerClient, candle_count: int = 100,
                 timeout_seconds: float = 10.0, max_workers: int = 4):
        self.broker = broker
        self.candle_count = candle_count
        self.timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix="market-data")

    def get_snapshot(
        self,
        instrument: str,
        timeframes: Iterable[Timeframe],
        references: Iterable[Reference] = (),
        as_of: Optional[datetime] = None,
    ) -> MarketSnapshot:
        """
        Build a snapshot for ``instrument`` covering ``timeframes``.

        Args:
            instrument: Broker instrument key
            timeframes: Timeframes to fetch candles for
            references: Market references whose periods must be computed
            as_of: Snapshot time, defaults to the quote time or now

        Raises:
            BrokerAuthError: broker credentials expired
            MarketDataUnavailableError: data not obtained within the timeout
        """
        timeframes = sorted(set(timeframes), key=lambda tf: tf.minutes)
        periods: dict[ReferenceKind, set[int]] = {}
        for ref in references:
            if ref.period is not None:
                periods.setdefault(ref.kind, set()).add(ref.period)

        quote_future = self._executor.submit(self.broker.get_quote, instrument)
        candle_futures = {
            tf: self._executor.submit(self.broker.get_candles, instrument, tf.value, self.candle_count)
            for tf in timeframes
        }

        quote = self._wait(quote_future, instrument, timeframes, "get_quote")
        snapshot = MarketSnapshot(
            current_price=float(quote["price"]) if quote and quote.get("price") is not None else None,
        )

        for tf, future in candle_futures.items():
            rows = self._wait(future, instrument, timeframes, "get_candles") or []
            candles = [c for c in (parse_candle(r) for r in rows) if c is not None]
            if not candles:
                raise MarketDataUnavailableError(
                    f"No {tf.value} candles for {instrument}",
                    instrument=instrument, timeframes=[t.value for t in timeframes],
                )
            snapshot.timeframes[tf] = build_timeframe_data(candles, periods)

        quote_ts = parse_timestamp(quote.get("timestamp")) if quote else None
        snapshot.as_of = get_market_time(as_of or quote_ts)
        logger.debug("Snapshot built", instrument=instrument,
                     timeframes=[tf.value for tf in timeframes],
                     current_price=snapshot.current_price)
        return snapshot

    def _wait(self, future, instrument: str, timeframes: list[Timeframe], operation: str) -> Any:
        try:
            response = future.result(timeout=self.timeout_seconds)
        except FutureTimeout:
            future.cancel()
            raise MarketDataUnavailableError(
                f"Broker {operation} timed out after {self.timeout_seconds}s",
                instrument=instrument, timeframes=[t.value for t in timeframes],
            ) from None

        try:
            return raise_for_response(response, operation)
        except BrokerAuthError:
            raise
        except BrokerError as e:
            raise MarketDataUnavailableError(
                f"Broker {operation} failed: {e}",
                instrument=instrument, timeframes=[t.value for t in timeframes],
            ) from e

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
