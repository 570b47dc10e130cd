"""Technical indicator calculations over chronological candle lists.

Every function returns the value for the most recent candle, or None if
there is not enough history.
"""

from typing import Optional

from .snapshot import Candle


def calculate_sma(values: list[float], period: int) -> Optional[float]:
    """Simple moving average of the last ``period`` values."""
    if period <= 0 or len(values) < period:
        return None
    window = values[-period:]
    return sum(window) / period


def _ema_series(values: list[float], period: int) -> list[float]:
    """EMA series seeded with the SMA of the first ``period`` values."""
    if period <= 0 or len(values) < period:
        return []
    alpha = 2.0 / (period + 1)
    ema = sum(values[:period]) / period
    series = [ema]
    for value in values[period:]:
        ema = alpha * value + (1 - alpha) * ema
        series.append(ema)
    return series


def calculate_ema(values: list[float], period: int) -> Optional[float]:
    """Exponential moving average."""
    series = _ema_series(values, period)
    return series[-1] if series else None


def calculate_rsi(closes: list[float], period: int = 14) -> Optional[float]:
    """Relative Strength Index with Wilder smoothing."""
    if len(closes) < period + 1:
        return None

    gains, losses = [], []
    for prev, curr in zip(closes, closes[1:]):
        change = curr - prev
        gains.append(max(change, 0.0))
        losses.append(max(-change, 0.0))

    avg_gain = sum(gains[:period]) / period
    avg_loss = sum(losses[:period]) / period
    for gain, loss in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period

    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def calculate_true_range(current: Candle, previous: Optional[Candle] = None) -> float:
    """
    Calculate True Range for a single candle

    TR = max(high - low, abs(high - prev_close), abs(low - prev_close))
    """
    if previous is None:
        return current.high - current.low

    return max(
        current.high - current.low,
        abs(current.high - previous.close),
        abs(current.low - previous.close),
    )


def calculate_atr(candles: list[Candle], period: int = 14) -> Optional[float]:
    """
    Calculate Average True Range using Simple Moving Average

    Args:
        candles: List of candles (must be in chronological order)
        period: ATR period (default 14)

    Returns:
        ATR value or None if insufficient data
    """
    if len(candles) < period:
        return None

    true_ranges = [
        calculate_true_range(candles[i], candles[i - 1] if i > 0 else None)
        for i in range(len(candles))
    ]
    recent = true_ranges[-period:]
    return sum(recent) / len(recent)


def calculate_vwap(candles: list[Candle]) -> Optional[float]:
    """Volume weighted average price over the latest candle's trading day."""
    if not candles:
        return None
    day = candles[-1].ts.date()
    session = [c for c in candles if c.ts.date() == day]
    volume = sum(c.volume for c in session)
    if volume <= 0:
        return None
    return sum((c.high + c.low + c.close) / 3.0 * c.volume for c in session) / volume


def calculate_macd(closes: list[float], fast: int = 12, slow: int = 26,
                   signal: int = 9) -> Optional[tuple[float, float, float]]:
    """MACD line, signal line and histogram."""
    fast_series = _ema_series(closes, fast)
    slow_series = _ema_series(closes, slow)
    if not slow_series:
        return None
    # align the fast series to the slow one, both end on the latest close
    offset = len(fast_series) - len(slow_series)
    macd_series = [f - s for f, s in zip(fast_series[offset:], slow_series)]
    signal_series = _ema_series(macd_series, signal)
    if not signal_series:
        return None
    macd_line, signal_line = macd_series[-1], signal_series[-1]
    return macd_line, signal_line, macd_line - signal_line


def calculate_bollinger(closes: list[float], period: int = 20,
                        width: float = 2.0) -> Optional[tuple[float, float, float]]:
    """Upper, middle and lower Bollinger bands."""
    middle = calculate_sma(closes, period)
    if middle is None:
        return None
    window = closes[-period:]
    std = (sum((c - middle) ** 2 for c in window) / period) ** 0.5
    return middle + width * std, middle, middle - width * std


def calculate_stochastic(candles: list[Candle], k_period: int = 14,
                         d_period: int = 3) -> Optional[tuple[float, float]]:
    """Stochastic %K and its ``d_period`` SMA %D."""
    if len(candles) < k_period + d_period - 1:
        return None
    k_values = []
    for end in range(len(candles) - d_period + 1, len(candles) + 1):
        window = candles[end - k_period:end]
        highest = max(c.high for c in window)
        lowest = min(c.low for c in window)
        span = highest - lowest
        k_values.append(50.0 if span == 0 else 100.0 * (window[-1].close - lowest) / span)
    return k_values[-1], sum(k_values) / len(k_values)


def calculate_adx(candles: list[Candle], period: int = 14) -> Optional[float]:
    """Average Directional Index with Wilder smoothing."""
    if len(candles) < 2 * period + 1:
        return None

    trs, plus_dm, minus_dm = [], [], []
    for prev, curr in zip(candles, candles[1:]):
        up = curr.high - prev.high
        down = prev.low - curr.low
        plus_dm.append(up if up > down and up > 0 else 0.0)
        minus_dm.append(down if down > up and down > 0 else 0.0)
        trs.append(calculate_true_range(curr, prev))

    tr_s = sum(trs[:period])
    plus_s = sum(plus_dm[:period])
    minus_s = sum(minus_dm[:period])
    dxs = []
    for i in range(period, len(trs) + 1):
        if i > period:
            tr_s = tr_s - tr_s / period + trs[i - 1]
            plus_s = plus_s - plus_s / period + plus_dm[i - 1]
            minus_s = minus_s - minus_s / period + minus_dm[i - 1]
        if tr_s == 0:
            dxs.append(0.0)
            continue
        plus_di = 100.0 * plus_s / tr_s
        minus_di = 100.0 * minus_s / tr_s
        total = plus_di + minus_di
        dxs.append(0.0 if total == 0 else 100.0 * abs(plus_di - minus_di) / total)

    if len(dxs) < period:
        return None
    adx = sum(dxs[:period]) / period
    for dx in dxs[period:]:
        adx = (adx * (period - 1) + dx) / period
    return adx
