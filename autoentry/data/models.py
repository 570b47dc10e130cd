"""
Canonical strategy models consumed by the condition engine.

Raw strategies arrive as loosely structured dicts from the upstream analysis
engine; ``strategy_normalizer`` turns them into the immutable structures
defined here. Reference names are parsed once into a closed set of kinds so
the evaluator never has to guess key spellings.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union


class Timeframe(str, Enum):
    """Supported bar timeframes."""
    M1 = "1m"
    M5 = "5m"
    M15 = "15m"
    M30 = "30m"
    H1 = "1h"
    D1 = "1d"

    @property
    def minutes(self) -> int:
        return _TIMEFRAME_MINUTES[self]

    @classmethod
    def parse(cls, value: Union[str, "Timeframe"]) -> "Timeframe":
        """
        Parse a timeframe label such as ``15m``, ``1H``, ``60min`` or ``1D``.

        Raises:
            ValueError: for labels outside the supported set
        """
        if isinstance(value, Timeframe):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Unsupported timeframe: {value!r}")
        label = _TIMEFRAME_ALIASES.get(value.strip().lower())
        if label is None:
            raise ValueError(f"Unsupported timeframe: {value!r}")
        return cls(label)


_TIMEFRAME_MINUTES = {
    Timeframe.M1: 1,
    Timeframe.M5: 5,
    Timeframe.M15: 15,
    Timeframe.M30: 30,
    Timeframe.H1: 60,
    Timeframe.D1: 1440,
}

_TIMEFRAME_ALIASES = {
    "1m": "1m", "1min": "1m", "minute": "1m",
    "5m": "5m", "5min": "5m", "5minute": "5m",
    "15m": "15m", "15min": "15m", "15minute": "15m",
    "30m": "30m", "30min": "30m", "30minute": "30m",
    "1h": "1h", "60m": "1h", "60min": "1h", "60minute": "1h", "hour": "1h",
    "1d": "1d", "day": "1d", "daily": "1d",
}


class Direction(str, Enum):
    LONG = "long"
    SHORT = "short"


class EntryType(str, Enum):
    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"
    STOP_LIMIT = "stop-limit"


class Operator(str, Enum):
    """Comparison operators allowed in conditions."""
    GT = ">"
    GTE = ">="
    LT = "<"
    LTE = "<="
    EQ = "=="
    NE = "!="


class ReferenceKind(str, Enum):
    """Closed set of quantities an operand can refer to."""
    PRICE = "price"
    OPEN = "open"
    HIGH = "high"
    LOW = "low"
    CLOSE = "close"
    VOLUME = "volume"
    EMA = "ema"
    SMA = "sma"
    RSI = "rsi"
    ATR = "atr"
    ADX = "adx"
    VWAP = "vwap"
    MACD = "macd"
    MACD_SIGNAL = "macd_signal"
    MACD_HISTOGRAM = "macd_histogram"
    BB_UPPER = "bb_upper"
    BB_MIDDLE = "bb_middle"
    BB_LOWER = "bb_lower"
    STOCH_K = "stoch_k"
    STOCH_D = "stoch_d"
    ENTRY = "entry"
    STOP_LOSS = "stop_loss"
    TARGET = "target"

    @property
    def is_strategy_level(self) -> bool:
        return self in (ReferenceKind.ENTRY, ReferenceKind.STOP_LOSS, ReferenceKind.TARGET)

    @property
    def takes_period(self) -> bool:
        return self in _PERIOD_KINDS


_PERIOD_KINDS = frozenset({
    ReferenceKind.EMA,
    ReferenceKind.SMA,
    ReferenceKind.RSI,
    ReferenceKind.ATR,
    ReferenceKind.ADX,
})


class InvalidationScope(str, Enum):
    PRE_ENTRY = "pre_entry"
    POST_ENTRY = "post_entry"


class Action(str, Enum):
    """Condition engine outcomes."""
    EXECUTE_ORDER = "execute_order"
    CONTINUE_MONITORING = "continue_monitoring"
    CANCEL_ENTRY = "cancel_entry"
    CLOSE_POSITION = "close_position"
    CANCEL_MONITORING = "cancel_monitoring"


DEFAULT_ACTIONS = {
    InvalidationScope.PRE_ENTRY: Action.CANCEL_ENTRY,
    InvalidationScope.POST_ENTRY: Action.CLOSE_POSITION,
}


@dataclass(frozen=True)
class Reference:
    """Operand naming a market quantity or a strategy level."""
    kind: ReferenceKind
    period: Optional[int] = None
    timeframe: Optional[Timeframe] = None   # Overrides the condition timeframe
    offset: float = 0.0

    @property
    def key(self) -> str:
        """Snapshot field name, e.g. ``ema20`` or ``close``."""
        if self.period is not None:
            return f"{self.kind.value}{self.period}"
        return self.kind.value

    @property
    def canonical_name(self) -> str:
        """``<name><period>_<timeframe>`` when a timeframe override is present."""
        if self.timeframe is not None:
            return f"{self.key}_{self.timeframe.value}"
        return self.key


@dataclass(frozen=True)
class Literal:
    """Constant operand."""
    value: float


Operand = Union[Reference, Literal]


def describe_operand(operand: Operand) -> str:
    if isinstance(operand, Literal):
        return f"{operand.value:g}"
    name = operand.canonical_name
    if operand.offset:
        name = f"{name}{operand.offset:+g}"
    return name


@dataclass(frozen=True)
class Occurrences:
    """How many bar observations must satisfy a trigger."""
    count: int = 1
    consecutive: bool = True


@dataclass(frozen=True)
class Condition:
    """Plain comparison on a timeframe, used by warnings."""
    timeframe: Timeframe
    left: Operand
    operator: Operator
    right: Operand

    def describe(self) -> str:
        return f"{describe_operand(self.left)} {self.operator.value} {describe_operand(self.right)}"


@dataclass(frozen=True)
class Trigger:
    """Entry condition that must hold before an order is placed."""
    id: str
    timeframe: Timeframe
    left: Operand
    operator: Operator
    right: Operand
    expiry_bars: int = 20
    within_sessions: int = 5
    occurrences: Occurrences = field(default_factory=Occurrences)
    description: str = ""

    def describe(self) -> str:
        return f"{describe_operand(self.left)} {self.operator.value} {describe_operand(self.right)}"


@dataclass(frozen=True)
class Invalidation:
    """Condition that voids the setup before entry or forces an exit after it."""
    id: str
    scope: InvalidationScope
    timeframe: Timeframe
    left: Operand
    operator: Operator
    right: Operand
    action: Action

    def describe(self) -> str:
        return f"{describe_operand(self.left)} {self.operator.value} {describe_operand(self.right)}"


@dataclass(frozen=True)
class StrategyWarning:
    """Advisory reported when all of its conditions hold."""
    code: str
    severity: str
    text: str
    applies_when: tuple[Condition, ...] = ()
    mitigation: tuple[str, ...] = ()


@dataclass(frozen=True)
class Strategy:
    """Immutable trade plan produced by the upstream analysis engine."""
    id: str
    direction: Direction
    entry_price: float
    stop_loss: float
    target: float
    entry_type: EntryType = EntryType.LIMIT
    triggers: tuple[Trigger, ...] = ()
    invalidations: tuple[Invalidation, ...] = ()
    warnings: tuple[StrategyWarning, ...] = ()
    quantity: int = 1
    name: str = ""

    @property
    def trigger_timeframes(self) -> set[Timeframe]:
        return {t.timeframe for t in self.triggers}

    @property
    def required_timeframes(self) -> set[Timeframe]:
        """Every timeframe the engine needs in a snapshot for this strategy."""
        timeframes: set[Timeframe] = set()
        conditions = list(self.triggers) + list(self.invalidations)
        for warning in self.warnings:
            conditions.extend(warning.applies_when)
        for condition in conditions:
            timeframes.add(condition.timeframe)
            for operand in (condition.left, condition.right):
                if isinstance(operand, Reference) and operand.timeframe is not None:
                    timeframes.add(operand.timeframe)
        return timeframes

    def level(self, kind: ReferenceKind) -> Optional[float]:
        """Resolve a strategy-level reference."""
        if kind == ReferenceKind.ENTRY:
            return self.entry_price
        if kind == ReferenceKind.STOP_LOSS:
            return self.stop_loss
        if kind == ReferenceKind.TARGET:
            return self.target
        return None

    @property
    def references(self) -> list[Reference]:
        """All market references used by conditions, strategy levels excluded."""
        conditions = list(self.triggers) + list(self.invalidations)
        for warning in self.warnings:
            conditions.extend(warning.applies_when)
        refs = []
        for condition in conditions:
            for operand in (condition.left, condition.right):
                if isinstance(operand, Reference) and not operand.kind.is_strategy_level:
                    refs.append(operand)
        return refs
