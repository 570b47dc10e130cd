"""Tests for strategy normalization and reference parsing."""

import copy

import pytest

from autoentry.data.models import (
    Action,
    Direction,
    EntryType,
    InvalidationScope,
    Literal,
    Operator,
    ReferenceKind,
    Timeframe,
)
from autoentry.data.strategy_normalizer import parse_operand, parse_reference
from autoentry.errors import InvalidReferenceError, StrategyConfigurationError


class TestParseReference:
    """One alias table, parsed once."""

    def test_plain_name(self):
        ref = parse_reference("close")
        assert ref.kind == ReferenceKind.CLOSE
        assert ref.period is None
        assert ref.timeframe is None

    def test_period_and_timeframe(self):
        ref = parse_reference("ema20_1D")
        assert ref.kind == ReferenceKind.EMA
        assert ref.period == 20
        assert ref.timeframe == Timeframe.D1
        assert ref.canonical_name == "ema20_1d"

    def test_default_period(self):
        assert parse_reference("rsi").period == 14

    def test_camel_case_strategy_level(self):
        assert parse_reference("stopLoss").kind == ReferenceKind.STOP_LOSS

    def test_alias(self):
        assert parse_reference("ltp").kind == ReferenceKind.PRICE
        assert parse_reference("macd_hist").kind == ReferenceKind.MACD_HISTOGRAM

    @pytest.mark.parametrize("name", ["foo", "close5", "ema", "entry_1h", ""])
    def test_rejected(self, name):
        with pytest.raises(InvalidReferenceError):
            parse_reference(name)


class TestParseOperand:
    """Operands are literals or references."""

    def test_number(self):
        assert parse_operand(42) == Literal(42.0)

    def test_numeric_string(self):
        assert parse_operand("101.5") == Literal(101.5)

    def test_value_dict_with_offset(self):
        assert parse_operand({"ref": "value", "value": 100, "offset": 2}) == Literal(102.0)

    def test_reference_dict(self):
        ref = parse_operand({"ref": "sma50", "offset": -1.5})
        assert ref.kind == ReferenceKind.SMA
        assert ref.offset == -1.5

    def test_invalid(self):
        with pytest.raises(StrategyConfigurationError):
            parse_operand({"ref": "value"})


class TestStrategyNormalizer:
    """Normalization and failure codes."""

    def test_normalizes_aliases(self, raw_strategy, normalizer):
        result = normalizer.normalize_strategy(raw_strategy)

        assert result.success
        strategy = result.strategy
        assert strategy.direction == Direction.LONG
        assert strategy.entry_price == 100.5
        assert strategy.stop_loss == 95.0
        assert strategy.target == 110.0
        assert strategy.entry_type == EntryType.LIMIT
        assert strategy.quantity == 10
        assert strategy.triggers[0].operator == Operator.GT
        assert strategy.triggers[0].expiry_bars == 20
        assert strategy.invalidations[0].scope == InvalidationScope.PRE_ENTRY
        assert strategy.invalidations[0].action == Action.CANCEL_ENTRY

    def test_snake_case_fields(self, raw_strategy, normalizer):
        raw = copy.deepcopy(raw_strategy)
        for key in ("type", "entry", "stopLoss", "target", "entryType"):
            raw.pop(key)
        raw.update(direction="short", entry_price=100, stop_loss=105, target_price=90,
                   entry_type="stop_limit")
        raw["triggers"][0]["operator"] = raw["triggers"][0].pop("op")

        strategy = normalizer.normalize_or_raise(raw)

        assert strategy.direction == Direction.SHORT
        assert strategy.entry_type == EntryType.STOP_LIMIT
        assert strategy.target == 90

    def test_required_timeframes_include_overrides(self, raw_strategy, normalizer):
        raw = copy.deepcopy(raw_strategy)
        raw["triggers"].append({"timeframe": "15m", "left": "close", "op": ">",
                                "right": "ema20_1h"})
        strategy = normalizer.normalize_or_raise(raw)

        assert strategy.trigger_timeframes == {Timeframe.D1, Timeframe.M15}
        assert strategy.required_timeframes == {Timeframe.D1, Timeframe.M15, Timeframe.H1}
        assert strategy.triggers[1].id == "T2"

    @pytest.mark.parametrize("change,code", [
        ({"id": None}, "strategy_not_found"),
        ({"type": "HOLD"}, "invalid_direction"),
        ({"triggers": []}, "no_triggers"),
        ({"entry": None}, "missing_entry_price"),
        ({"stopLoss": 0}, "missing_stoploss"),
        ({"target": "n/a"}, "missing_target"),
    ])
    def test_failure_codes(self, raw_strategy, normalizer, change, code):
        raw = copy.deepcopy(raw_strategy)
        raw.update(change)

        result = normalizer.normalize_strategy(raw)

        assert not result.success
        assert result.error_code == code

    def test_invalid_triggers_reports_details(self, raw_strategy, normalizer):
        raw = copy.deepcopy(raw_strategy)
        raw["triggers"][0]["left"] = {"ref": "supertrend"}

        result = normalizer.normalize_strategy(raw)

        assert result.error_code == "invalid_triggers"
        assert result.details[0]["trigger_id"] == "T1"

    def test_invalid_invalidation_is_invalid_triggers(self, raw_strategy, normalizer):
        raw = copy.deepcopy(raw_strategy)
        raw["invalidations"][0]["scope"] = "sometime"

        assert normalizer.normalize_strategy(raw).error_code == "invalid_triggers"

    @pytest.mark.parametrize("field,value", [
        ("occurrences", 2),
        ("occurrences", [2, True]),
        ("occurrences", {"count": "twice"}),
        ("occurrences", {"count": float("inf")}),
        ("expiry_bars", "soon"),
        ("within_sessions", float("nan")),
    ])
    def test_malformed_trigger_settings(self, raw_strategy, normalizer, field, value):
        raw = copy.deepcopy(raw_strategy)
        raw["triggers"][0][field] = value

        result = normalizer.normalize_strategy(raw)

        assert result.error_code == "invalid_triggers"
        assert result.details[0]["trigger_id"] == "T1"

    def test_occurrence_count_parsed(self, raw_strategy, normalizer):
        raw = copy.deepcopy(raw_strategy)
        raw["triggers"][0]["occurrences"] = {"count": "3", "consecutive": False}

        occurrences = normalizer.normalize_or_raise(raw).triggers[0].occurrences

        assert occurrences.count == 3
        assert occurrences.consecutive is False

    def test_triggers_checked_before_levels(self, raw_strategy, normalizer):
        raw = copy.deepcopy(raw_strategy)
        raw["triggers"][0]["op"] = "~"
        raw["entry"] = None

        assert normalizer.normalize_strategy(raw).error_code == "invalid_triggers"

    def test_malformed_warning_dropped(self, raw_strategy, normalizer):
        raw = copy.deepcopy(raw_strategy)
        raw["warnings"] = [{"code": "BAD", "applies_when": [{"timeframe": "1d", "left": "nope",
                                                            "op": ">", "right": 1}]}]

        strategy = normalizer.normalize_or_raise(raw)

        assert strategy.warnings == ()

    def test_normalize_or_raise(self, raw_strategy, normalizer):
        raw = copy.deepcopy(raw_strategy)
        raw["triggers"] = []

        with pytest.raises(StrategyConfigurationError) as exc_info:
            normalizer.normalize_or_raise(raw)
        assert exc_info.value.code == "no_triggers"
