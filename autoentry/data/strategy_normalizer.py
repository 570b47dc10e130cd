"""
Strategy normalization from raw upstream dicts to canonical models.

Raw strategies use several spellings for the same field (``stopLoss`` vs
``stop_loss``, ``op`` vs ``operator``) and free-form reference names such as
``ema20_1D`` or ``rsi14_1h``. Everything is resolved here, once, so the
condition engine only ever sees typed ``Reference`` and ``Literal`` operands.
"""

import math
import re
from dataclasses import dataclass
from typing import Any, Optional

import structlog

from autoentry.errors import InvalidReferenceError, StrategyConfigurationError

from .models import (
    DEFAULT_ACTIONS,
    Action,
    Condition,
    Direction,
    EntryType,
    Invalidation,
    InvalidationScope,
    Literal,
    Occurrences,
    Operand,
    Operator,
    Reference,
    ReferenceKind,
    Strategy,
    StrategyWarning,
    Timeframe,
    Trigger,
)

logger = structlog.get_logger(__name__)

# Every accepted spelling of a reference name, lowercased, without period or timeframe
REFERENCE_ALIASES: dict[str, ReferenceKind] = {
    "price": ReferenceKind.PRICE,
    "ltp": ReferenceKind.PRICE,
    "last_price": ReferenceKind.PRICE,
    "current_price": ReferenceKind.PRICE,
    "open": ReferenceKind.OPEN,
    "high": ReferenceKind.HIGH,
    "low": ReferenceKind.LOW,
    "close": ReferenceKind.CLOSE,
    "volume": ReferenceKind.VOLUME,
    "vol": ReferenceKind.VOLUME,
    "ema": ReferenceKind.EMA,
    "sma": ReferenceKind.SMA,
    "ma": ReferenceKind.SMA,
    "rsi": ReferenceKind.RSI,
    "atr": ReferenceKind.ATR,
    "adx": ReferenceKind.ADX,
    "vwap": ReferenceKind.VWAP,
    "macd": ReferenceKind.MACD,
    "macd_signal": ReferenceKind.MACD_SIGNAL,
    "macdsignal": ReferenceKind.MACD_SIGNAL,
    "macd_hist": ReferenceKind.MACD_HISTOGRAM,
    "macd_histogram": ReferenceKind.MACD_HISTOGRAM,
    "macdhist": ReferenceKind.MACD_HISTOGRAM,
    "bb_upper": ReferenceKind.BB_UPPER,
    "bbupper": ReferenceKind.BB_UPPER,
    "bollinger_upper": ReferenceKind.BB_UPPER,
    "bb_middle": ReferenceKind.BB_MIDDLE,
    "bbmiddle": ReferenceKind.BB_MIDDLE,
    "bb_mid": ReferenceKind.BB_MIDDLE,
    "bollinger_middle": ReferenceKind.BB_MIDDLE,
    "bb_lower": ReferenceKind.BB_LOWER,
    "bblower": ReferenceKind.BB_LOWER,
    "bollinger_lower": ReferenceKind.BB_LOWER,
    "stoch_k": ReferenceKind.STOCH_K,
    "stochk": ReferenceKind.STOCH_K,
    "stoch_d": ReferenceKind.STOCH_D,
    "stochd": ReferenceKind.STOCH_D,
    "entry": ReferenceKind.ENTRY,
    "entry_price": ReferenceKind.ENTRY,
    "stoploss": ReferenceKind.STOP_LOSS,
    "stop_loss": ReferenceKind.STOP_LOSS,
    "sl": ReferenceKind.STOP_LOSS,
    "target": ReferenceKind.TARGET,
    "target_price": ReferenceKind.TARGET,
}

DEFAULT_PERIODS: dict[ReferenceKind, int] = {
    ReferenceKind.RSI: 14,
    ReferenceKind.ATR: 14,
    ReferenceKind.ADX: 14,
}

_NAME_PATTERN = re.compile(r"^([a-z]+(?:_[a-z]+)*)_?(\d+)?$")
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z])(?=[A-Z])")


def parse_reference(name: str, offset: float = 0.0) -> Reference:
    """
    Parse a reference name into a typed ``Reference``.

    Accepted shapes are ``<name>``, ``<name><period>`` and either of those
    followed by ``_<timeframe>``, e.g. ``close``, ``ema20``, ``rsi14_1h``,
    ``stopLoss``.

    Raises:
        InvalidReferenceError: if the name does not map to a known kind
    """
    if not isinstance(name, str) or not name.strip():
        raise InvalidReferenceError(f"Reference name must be a non-empty string: {name!r}",
                                    reference=str(name))

    text = _CAMEL_BOUNDARY.sub("_", name.strip()).lower()
    tokens = text.split("_")
    timeframe: Optional[Timeframe] = None

    if len(tokens) > 1:
        try:
            timeframe = Timeframe.parse(tokens[-1])
            tokens = tokens[:-1]
        except ValueError:
            timeframe = None

    match = _NAME_PATTERN.match("_".join(tokens))
    if match is None:
        raise InvalidReferenceError(f"Unrecognised reference: {name}", reference=name)

    base, period_text = match.group(1), match.group(2)
    kind = REFERENCE_ALIASES.get(base)
    if kind is None:
        # camelCase aliases such as stopLoss were split above; try the joined form
        kind = REFERENCE_ALIASES.get(base.replace("_", ""))
    if kind is None:
        raise InvalidReferenceError(f"Unknown reference kind: {name}", reference=name)

    period = int(period_text) if period_text else None
    if period is not None and not kind.takes_period:
        raise InvalidReferenceError(f"Reference {name} does not take a period", reference=name)
    if kind.takes_period and period is None:
        period = DEFAULT_PERIODS.get(kind)
        if period is None:
            raise InvalidReferenceError(f"Reference {name} requires a period", reference=name)
    if period is not None and period <= 0:
        raise InvalidReferenceError(f"Reference {name} has a non-positive period", reference=name)
    if kind.is_strategy_level and timeframe is not None:
        raise InvalidReferenceError(f"Strategy level {name} cannot carry a timeframe", reference=name)

    return Reference(kind=kind, period=period, timeframe=timeframe, offset=offset)


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_count(value: Any, default: int, field: str) -> int:
    """Whole-number trigger setting; missing or zero falls back to ``default``."""
    number = _to_float(value)
    if value is not None and number is None:
        raise StrategyConfigurationError(f"{field} must be a number, got {value!r}",
                                         code="invalid_triggers", field=field)
    if number is None:
        return default
    if not math.isfinite(number):
        raise StrategyConfigurationError(f"{field} must be finite",
                                         code="invalid_triggers", field=field)
    return int(number) or default


def parse_operand(raw: Any) -> Operand:
    """
    Parse a raw operand: a number, a reference name or a ``{"ref", "value", "offset"}`` dict.

    Raises:
        StrategyConfigurationError: for operands that are neither a literal nor a reference
    """
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return Literal(float(raw))

    if isinstance(raw, str):
        number = _to_float(raw)
        if number is not None:
            return Literal(number)
        return parse_reference(raw)

    if isinstance(raw, dict):
        offset = _to_float(raw.get("offset", 0)) or 0.0
        ref = raw.get("ref")
        if ref is None or ref == "value":
            value = _to_float(raw.get("value"))
            if value is None:
                raise StrategyConfigurationError(
                    f"Literal operand has no numeric value: {raw!r}",
                    code="invalid_triggers",
                )
            return Literal(value + offset)
        return parse_reference(ref, offset=offset)

    raise StrategyConfigurationError(f"Unsupported operand: {raw!r}", code="invalid_triggers")


def parse_operator(raw: Any) -> Operator:
    try:
        return Operator(str(raw).strip())
    except ValueError:
        raise StrategyConfigurationError(f"Unsupported operator: {raw!r}",
                                         code="invalid_triggers") from None


@dataclass
class StrategyNormalizationResult:
    """Result of strategy normalization."""
    strategy: Optional[Strategy] = None
    success: bool = True
    error_code: Optional[str] = None
    error_msg: Optional[str] = None
    details: Optional[list[dict[str, Any]]] = None

    @classmethod
    def ok(cls, strategy: Strategy):
        """Create successful result with normalized strategy."""
        return cls(strategy=strategy, success=True)

    @classmethod
    def error(cls, error_code: str, error_msg: str,
              details: Optional[list[dict[str, Any]]] = None):
        """Create error result."""
        return cls(
            success=False,
            error_code=error_code,
            error_msg=error_msg,
            details=details or [],
        )


class StrategyNormalizer:
    """
    Strategy normalization pipeline.

    Validation order mirrors the failure codes callers act on: direction,
    triggers present, triggers well formed, then entry, stop-loss and target.
    """

    def __init__(self, default_expiry_bars: int = 20, default_max_sessions: int = 5):
        self.default_expiry_bars = default_expiry_bars
        self.default_max_sessions = default_max_sessions

    def normalize_strategy(self, raw: dict[str, Any]) -> StrategyNormalizationResult:
        """
        Normalize a raw strategy dict.

        Args:
            raw: Strategy as stored on the analysis

        Returns:
            StrategyNormalizationResult with the strategy or a failure code
        """
        if not isinstance(raw, dict):
            return StrategyNormalizationResult.error("strategy_not_found", "Strategy is not a mapping")

        strategy_id = str(raw.get("id") or raw.get("strategy_id") or "")
        if not strategy_id:
            return StrategyNormalizationResult.error("strategy_not_found", "Strategy has no id")

        direction = self._parse_direction(raw)
        if direction is None:
            return StrategyNormalizationResult.error(
                "invalid_direction",
                f"Invalid direction: {raw.get('direction', raw.get('type'))!r}",
            )

        raw_triggers = raw.get("triggers") or []
        if not isinstance(raw_triggers, list) or not raw_triggers:
            return StrategyNormalizationResult.error("no_triggers", "Strategy defines no triggers")

        triggers = []
        issues = []
        for index, raw_trigger in enumerate(raw_triggers):
            try:
                triggers.append(self._parse_trigger(raw_trigger, index))
            except StrategyConfigurationError as e:
                trigger_id = raw_trigger.get("id") if isinstance(raw_trigger, dict) else None
                issues.append({"trigger_id": trigger_id or f"T{index + 1}", "issue": str(e)})

        invalidations = []
        for index, raw_invalidation in enumerate(raw.get("invalidations") or []):
            try:
                invalidations.append(self._parse_invalidation(raw_invalidation, index))
            except StrategyConfigurationError as e:
                issues.append({"invalidation": index, "issue": str(e)})

        if issues:
            return StrategyNormalizationResult.error(
                "invalid_triggers",
                "Some conditions are not properly configured",
                details=issues,
            )

        entry_price = _to_float(raw.get("entry", raw.get("entry_price", raw.get("entryPrice"))))
        if entry_price is None or entry_price <= 0:
            return StrategyNormalizationResult.error("missing_entry_price", "Entry price not defined")

        stop_loss = _to_float(raw.get("stopLoss", raw.get("stop_loss")))
        if stop_loss is None or stop_loss <= 0:
            return StrategyNormalizationResult.error("missing_stoploss", "Stop loss not defined")

        target = _to_float(raw.get("target", raw.get("target_price")))
        if target is None or target <= 0:
            return StrategyNormalizationResult.error("missing_target", "Target price not defined")

        entry_type_raw = str(raw.get("entryType", raw.get("entry_type", "limit")) or "limit").lower()
        try:
            entry_type = EntryType(entry_type_raw.replace("_", "-"))
        except ValueError:
            logger.warning("Unknown entry type, using limit",
                           strategy_id=strategy_id, entry_type=entry_type_raw)
            entry_type = EntryType.LIMIT

        quantity = _to_float(raw.get("suggested_qty", raw.get("quantity"))) or 1
        if not math.isfinite(quantity):
            quantity = 1
        strategy = Strategy(
            id=strategy_id,
            direction=direction,
            entry_price=entry_price,
            stop_loss=stop_loss,
            target=target,
            entry_type=entry_type,
            triggers=tuple(triggers),
            invalidations=tuple(invalidations),
            warnings=tuple(self._parse_warnings(raw.get("warnings") or [], strategy_id)),
            quantity=max(1, int(quantity)),
            name=str(raw.get("name") or raw.get("title") or ""),
        )
        return StrategyNormalizationResult.ok(strategy)

    def normalize_or_raise(self, raw: dict[str, Any]) -> Strategy:
        """Normalize a strategy, raising ``StrategyConfigurationError`` on failure."""
        result = self.normalize_strategy(raw)
        if not result.success:
            raise StrategyConfigurationError(result.error_msg or "Invalid strategy",
                                             code=result.error_code or "invalid_strategy",
                                             details=result.details)
        return result.strategy

    @staticmethod
    def _parse_direction(raw: dict[str, Any]) -> Optional[Direction]:
        value = raw.get("direction")
        if value is None:
            value = {"BUY": "long", "SELL": "short"}.get(str(raw.get("type", "")).upper())
        try:
            return Direction(str(value).lower())
        except ValueError:
            return None

    @staticmethod
    def _parse_timeframe(raw: dict[str, Any]) -> Timeframe:
        if not raw.get("timeframe"):
            raise StrategyConfigurationError("Missing timeframe", code="invalid_triggers",
                                             field="timeframe")
        try:
            return Timeframe.parse(raw["timeframe"])
        except ValueError as e:
            raise StrategyConfigurationError(str(e), code="invalid_triggers",
                                             field="timeframe") from None

    def _parse_sides(self, raw: dict[str, Any]) -> tuple[Operand, Operator, Operand]:
        if raw.get("left") is None:
            raise StrategyConfigurationError("Missing left operand", code="invalid_triggers",
                                             field="left")
        if raw.get("right") is None:
            raise StrategyConfigurationError("Missing right operand", code="invalid_triggers",
                                             field="right")
        operator_raw = raw.get("op", raw.get("operator"))
        if operator_raw is None:
            raise StrategyConfigurationError("Missing operator", code="invalid_triggers",
                                             field="op")
        return parse_operand(raw["left"]), parse_operator(operator_raw), parse_operand(raw["right"])

    def _parse_trigger(self, raw: Any, index: int) -> Trigger:
        if not isinstance(raw, dict):
            raise StrategyConfigurationError("Trigger must be a mapping", code="invalid_triggers")

        timeframe = self._parse_timeframe(raw)
        left, operator, right = self._parse_sides(raw)

        occurrences_raw = raw.get("occurrences") or {}
        if not isinstance(occurrences_raw, dict):
            raise StrategyConfigurationError("occurrences must be a mapping",
                                             code="invalid_triggers", field="occurrences")
        count = _to_count(occurrences_raw.get("count"), 1, "occurrences.count")
        occurrences = Occurrences(
            count=max(1, count),
            consecutive=bool(occurrences_raw.get("consecutive", True)),
        )

        expiry_bars = _to_count(raw.get("expiry_bars"), self.default_expiry_bars, "expiry_bars")
        within_sessions = _to_count(raw.get("within_sessions"), self.default_max_sessions,
                                    "within_sessions")
        if expiry_bars <= 0 or within_sessions <= 0:
            raise StrategyConfigurationError("expiry_bars and within_sessions must be positive",
                                             code="invalid_triggers")

        return Trigger(
            id=str(raw.get("id") or f"T{index + 1}"),
            timeframe=timeframe,
            left=left,
            operator=operator,
            right=right,
            expiry_bars=expiry_bars,
            within_sessions=within_sessions,
            occurrences=occurrences,
            description=str(raw.get("description") or raw.get("condition") or ""),
        )

    def _parse_invalidation(self, raw: Any, index: int) -> Invalidation:
        if not isinstance(raw, dict):
            raise StrategyConfigurationError("Invalidation must be a mapping", code="invalid_triggers")

        try:
            scope = InvalidationScope(raw.get("scope") or InvalidationScope.PRE_ENTRY.value)
        except ValueError:
            raise StrategyConfigurationError(f"Unknown invalidation scope: {raw.get('scope')!r}",
                                             code="invalid_triggers", field="scope") from None

        action = DEFAULT_ACTIONS[scope]
        if raw.get("action"):
            try:
                action = Action(raw["action"])
            except ValueError:
                raise StrategyConfigurationError(f"Unknown invalidation action: {raw['action']!r}",
                                                 code="invalid_triggers", field="action") from None
            if action not in (Action.CANCEL_ENTRY, Action.CLOSE_POSITION):
                raise StrategyConfigurationError(f"Invalid invalidation action: {action.value}",
                                                 code="invalid_triggers", field="action")

        left, operator, right = self._parse_sides(raw)
        return Invalidation(
            id=str(raw.get("id") or f"I{index + 1}"),
            scope=scope,
            timeframe=self._parse_timeframe(raw),
            left=left,
            operator=operator,
            right=right,
            action=action,
        )

    def _parse_warnings(self, raw_warnings: list, strategy_id: str) -> list[StrategyWarning]:
        warnings = []
        for raw in raw_warnings:
            if not isinstance(raw, dict) or not raw.get("applies_when"):
                continue
            try:
                conditions = tuple(self._parse_condition(c) for c in raw["applies_when"])
            except (StrategyConfigurationError, AttributeError) as e:
                # Warnings are advisory, a malformed one is dropped rather than failing the strategy
                logger.warning("Dropping malformed warning", strategy_id=strategy_id,
                               code=raw.get("code"), error=str(e))
                continue
            mitigation = raw.get("mitigation") or ()
            if isinstance(mitigation, str):
                mitigation = (mitigation,)
            warnings.append(StrategyWarning(
                code=str(raw.get("code") or "WARNING"),
                severity=str(raw.get("severity") or "low"),
                text=str(raw.get("text") or ""),
                applies_when=conditions,
                mitigation=tuple(mitigation),
            ))
        return warnings

    def _parse_condition(self, raw: dict[str, Any]) -> Condition:
        left, operator, right = self._parse_sides(raw)
        return Condition(timeframe=self._parse_timeframe(raw), left=left,
                         operator=operator, right=right)
