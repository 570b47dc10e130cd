"""
Market snapshot model and boundary normalization.

Snapshots arrive either from the market data accessor or directly from a
caller as ``{current_price, as_of, timeframes: {tf -> {...}}}``. Field names
are normalized once, here, to the canonical ``<name><period>`` keys used by
``Reference.key``; a field suffixed with a timeframe (``ema20_1d``) is filed
under that timeframe.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import structlog

from autoentry.data.models import Reference, ReferenceKind, Timeframe
from autoentry.data.strategy_normalizer import parse_reference
from autoentry.errors import InvalidReferenceError
from autoentry.utils.time import parse_timestamp

logger = structlog.get_logger(__name__)

OHLCV_FIELDS = ("open", "high", "low", "close", "volume")
_METADATA_FIELDS = {"timestamp", "time", "ts", "as_of"}


@dataclass(frozen=True)
class Candle:
    """Normalized candlestick data with UTC timestamps."""
    ts: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass
class TimeframeData:
    """Latest bar and indicator values for one timeframe."""
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    close: Optional[float] = None
    volume: Optional[float] = None
    timestamp: Optional[datetime] = None
    indicators: dict[str, float] = field(default_factory=dict)

    def value(self, ref: Reference) -> Optional[float]:
        """Raw value for a market reference, without offset."""
        if ref.kind in (ReferenceKind.OPEN, ReferenceKind.HIGH, ReferenceKind.LOW,
                        ReferenceKind.CLOSE, ReferenceKind.VOLUME):
            return getattr(self, ref.kind.value)
        return self.indicators.get(ref.key)


@dataclass
class MarketSnapshot:
    """Point-in-time market view across timeframes."""
    current_price: Optional[float] = None
    as_of: Optional[datetime] = None
    timeframes: dict[Timeframe, TimeframeData] = field(default_factory=dict)

    def get(self, timeframe: Timeframe) -> Optional[TimeframeData]:
        return self.timeframes.get(timeframe)


def _number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _canonical_field(name: str) -> Optional[Reference]:
    try:
        return parse_reference(name)
    except InvalidReferenceError:
        return None


def normalize_snapshot(raw: Any) -> MarketSnapshot:
    """
    Normalize a raw snapshot dict into a ``MarketSnapshot``.

    Unknown timeframe labels and unparseable field names are dropped with a
    debug log; they can never be referenced by a normalized strategy anyway.
    """
    if isinstance(raw, MarketSnapshot):
        return raw

    raw = raw or {}
    snapshot = MarketSnapshot(
        current_price=_number(raw.get("current_price", raw.get("price"))),
        as_of=parse_timestamp(raw.get("as_of")),
    )
    # fields addressed to another timeframe, applied after every bucket exists
    cross_frame: list[tuple[Timeframe, str, float]] = []

    for label, fields in (raw.get("timeframes") or {}).items():
        try:
            timeframe = Timeframe.parse(label)
        except ValueError:
            logger.debug("Dropping unsupported timeframe", timeframe=label)
            continue
        if not isinstance(fields, dict):
            continue

        data = snapshot.timeframes.setdefault(timeframe, TimeframeData())
        for name, value in fields.items():
            if name in _METADATA_FIELDS:
                if data.timestamp is None:
                    data.timestamp = parse_timestamp(value)
                continue
            number = _number(value)
            if number is None:
                continue
            ref = _canonical_field(name)
            if ref is None or ref.kind.is_strategy_level:
                logger.debug("Dropping unrecognised snapshot field", timeframe=label, field=name)
                continue
            if ref.timeframe is not None and ref.timeframe != timeframe:
                cross_frame.append((ref.timeframe, ref.key, number))
                continue
            if ref.kind == ReferenceKind.PRICE:
                if snapshot.current_price is None:
                    snapshot.current_price = number
            elif ref.kind.value in OHLCV_FIELDS:
                setattr(data, ref.kind.value, number)
            else:
                data.indicators[ref.key] = number

    for timeframe, key, number in cross_frame:
        data = snapshot.timeframes.setdefault(timeframe, TimeframeData())
        if key in OHLCV_FIELDS:
            if getattr(data, key) is None:
                setattr(data, key, number)
        else:
            data.indicators.setdefault(key, number)

    return snapshot
