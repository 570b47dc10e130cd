"""
Adaptive polling frequency derived from trigger timeframes.

The interval is the greatest common divisor of all trigger timeframes in
minutes, clamped to [min, max] minutes, so every timeframe's bar boundaries
are visited without polling faster than the shortest one needs.
"""

import math
from dataclasses import dataclass
from functools import reduce
from typing import Iterable

from autoentry.data.models import Timeframe


@dataclass(frozen=True)
class MonitoringFrequency:
    """Polling interval and attempt budget for one monitoring job."""
    interval_minutes: int
    max_attempts: int
    timeframes: tuple[str, ...]

    @property
    def seconds(self) -> int:
        return self.interval_minutes * 60

    @property
    def description(self) -> str:
        return f"every {self.interval_minutes} minute(s) for {', '.join(self.timeframes)}"


def gcd_minutes(timeframes: Iterable[Timeframe]) -> int:
    """Greatest common divisor of the timeframes' lengths in minutes; 0 for none."""
    minutes = [tf.minutes for tf in set(timeframes)]
    return reduce(math.gcd, minutes, 0)


def interval_minutes(timeframes: Iterable[Timeframe], min_minutes: int = 1,
                     max_minutes: int = 15) -> int:
    """GCD of the timeframes clamped to ``[min_minutes, max_minutes]``."""
    gcd = gcd_minutes(timeframes)
    if gcd == 0:
        return max_minutes
    return max(min_minutes, min(max_minutes, gcd))


def max_attempts_for(interval_seconds: int, horizon_sessions: int = 5,
                     session_hours: float = 7.0) -> int:
    """Checks that fit in ``horizon_sessions`` sessions of ``session_hours`` market hours."""
    if interval_seconds <= 0:
        raise ValueError("interval_seconds must be positive")
    return max(1, math.floor(horizon_sessions * session_hours * 3600 / interval_seconds))


def calculate_frequency(timeframes: Iterable[Timeframe], min_minutes: int = 1,
                        max_minutes: int = 15, horizon_sessions: int = 5,
                        session_hours: float = 7.0) -> MonitoringFrequency:
    """
    Build the monitoring frequency for a set of trigger timeframes.

    Example: {5m, 1h} -> gcd(5, 60) = 5 -> every 5 minutes, 420 attempts.
    """
    timeframes = sorted(set(timeframes), key=lambda tf: tf.minutes)
    minutes = interval_minutes(timeframes, min_minutes, max_minutes)
    return MonitoringFrequency(
        interval_minutes=minutes,
        max_attempts=max_attempts_for(minutes * 60, horizon_sessions, session_hours),
        timeframes=tuple(tf.value for tf in timeframes),
    )
