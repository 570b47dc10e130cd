"""
Market data access, snapshot normalization and indicator calculations.
"""
from .snapshot import Candle, MarketSnapshot, TimeframeData, normalize_snapshot

__all__ = ["Candle", "MarketSnapshot", "TimeframeData", "normalize_snapshot"]
