"""Tests for the condition engine: action selection, sessions, staleness and occurrences."""

import copy
from datetime import timedelta

import pytest

from autoentry.data.models import Action
from autoentry.engine.conditions import ConditionEngine


@pytest.fixture
def engine():
    return ConditionEngine()


def _with(raw_strategy, normalizer, **changes):
    raw = copy.deepcopy(raw_strategy)
    raw.update(changes)
    return normalizer.normalize_or_raise(raw)


class TestActionSelection:
    """One action per check, chosen in a fixed priority order."""

    def test_all_triggers_met_executes(self, engine, strategy, make_snapshot):
        """close 101 > 100 with no invalidation hit -> execute_order."""
        result = engine.check_triggers("A1", strategy, make_snapshot(101))

        assert result.action == Action.EXECUTE_ORDER
        assert result.failed_triggers == []
        assert [t.id for t in result.triggers] == ["T1"]
        assert result.triggers[0].passed is True
        assert result.triggers[0].left_value == 101

    def test_unmet_trigger_continues_with_exactly_that_trigger(self, engine, strategy, make_snapshot):
        result = engine.check_triggers("A1", strategy, make_snapshot(99))

        assert result.action == Action.CONTINUE_MONITORING
        assert [t.id for t in result.failed_triggers] == ["T1"]
        assert result.failed_triggers[0].left_value == 99
        assert result.failed_triggers[0].right_value == 100

    def test_pre_entry_invalidation_cancels_entry(self, engine, strategy, make_snapshot):
        result = engine.check_triggers("A1", strategy, make_snapshot(85))

        assert result.action == Action.CANCEL_ENTRY
        assert result.invalidation["id"] == "I1"
        assert result.invalidation["scope"] == "pre_entry"
        assert result.invalidation["left_value"] == 85
        assert result.is_terminal

    def test_post_entry_invalidation_closes_open_position(self, engine, raw_strategy,
                                                          normalizer, make_snapshot):
        invalidations = raw_strategy["invalidations"] + [{
            "id": "I2",
            "scope": "post_entry",
            "timeframe": "1d",
            "left": {"ref": "close"},
            "op": "<",
            "right": {"ref": "stopLoss"},
        }]
        strategy = _with(raw_strategy, normalizer, invalidations=invalidations)

        result = engine.check_triggers("A1", strategy, make_snapshot(85), position_open=True)

        assert result.action == Action.CLOSE_POSITION
        assert result.invalidation["id"] == "I2"

    def test_post_entry_invalidation_ignored_without_position(self, engine, raw_strategy,
                                                              normalizer, make_snapshot):
        strategy = _with(raw_strategy, normalizer, invalidations=[{
            "scope": "post_entry",
            "timeframe": "1d",
            "left": "close",
            "op": "<",
            "right": "stop_loss",
        }])

        result = engine.check_triggers("A1", strategy, make_snapshot(94))

        assert result.action == Action.CONTINUE_MONITORING

    def test_terminal_action_discards_session(self, engine, strategy, make_snapshot):
        engine.check_triggers("A1", strategy, make_snapshot(99))
        assert len(engine.sessions) == 1

        engine.check_triggers("A1", strategy, make_snapshot(85))
        assert len(engine.sessions) == 0

    def test_equality_uses_tolerance(self, engine, raw_strategy, normalizer, make_snapshot):
        raw = copy.deepcopy(raw_strategy)
        raw["triggers"][0]["op"] = "=="
        strategy = normalizer.normalize_or_raise(raw)

        assert engine.check_triggers("A1", strategy, make_snapshot(100.005)).action == \
            Action.EXECUTE_ORDER
        assert engine.check_triggers("A2", strategy, make_snapshot(100.5)).action == \
            Action.CONTINUE_MONITORING


class TestWarnings:
    """Warnings are reported but never change the action."""

    def test_unresolved_reference_is_warning_and_failure(self, engine, raw_strategy,
                                                         normalizer, make_snapshot):
        raw = copy.deepcopy(raw_strategy)
        raw["triggers"][0]["right"] = {"ref": "ema20"}
        strategy = normalizer.normalize_or_raise(raw)

        result = engine.check_triggers("A1", strategy, make_snapshot(101))

        assert result.action == Action.CONTINUE_MONITORING
        assert result.failed_triggers[0].evaluable is False
        assert any(w["code"] == "UNRESOLVED_REFERENCE" for w in result.warnings)

    def test_active_strategy_warning_reported(self, engine, raw_strategy, normalizer,
                                              make_snapshot):
        strategy = _with(raw_strategy, normalizer, warnings=[{
            "code": "OVERBOUGHT",
            "severity": "medium",
            "text": "RSI above 70",
            "applies_when": [{"timeframe": "1d", "left": "rsi14", "op": ">", "right": 70}],
            "mitigation": "Reduce size",
        }])

        result = engine.check_triggers("A1", strategy, make_snapshot(101, extra={"rsi14": 75}))

        assert result.action == Action.EXECUTE_ORDER
        assert result.warnings == [{
            "code": "OVERBOUGHT",
            "severity": "medium",
            "text": "RSI above 70",
            "mitigation": ["Reduce size"],
        }]

    def test_inactive_strategy_warning_not_reported(self, engine, raw_strategy, normalizer,
                                                    make_snapshot):
        strategy = _with(raw_strategy, normalizer, warnings=[{
            "code": "OVERBOUGHT",
            "applies_when": [{"timeframe": "1d", "left": "rsi14", "op": ">", "right": 70}],
        }])

        result = engine.check_triggers("A1", strategy, make_snapshot(101, extra={"rsi14": 55}))

        assert result.warnings == []


class TestSessionsAndStaleness:
    """Trading-session budget and per-trigger bar expiry."""

    def test_session_limit_cancels_monitoring(self, engine, raw_strategy, normalizer,
                                              make_snapshot, market_now):
        raw = copy.deepcopy(raw_strategy)
        raw["triggers"][0]["within_sessions"] = 2
        strategy = normalizer.normalize_or_raise(raw)

        day1 = engine.check_triggers("A1", strategy, make_snapshot(99, as_of=market_now))
        day2 = engine.check_triggers("A1", strategy,
                                     make_snapshot(99, as_of=market_now + timedelta(days=1)))
        day3 = engine.check_triggers("A1", strategy,
                                     make_snapshot(99, as_of=market_now + timedelta(days=2)))

        assert day1.action == Action.CONTINUE_MONITORING
        assert day2.action == Action.CONTINUE_MONITORING
        assert day3.action == Action.CANCEL_MONITORING
        assert "Session limit" in day3.reason

    def test_same_trading_day_is_one_session(self, engine, raw_strategy, normalizer,
                                             make_snapshot, market_now):
        raw = copy.deepcopy(raw_strategy)
        raw["triggers"][0]["within_sessions"] = 1
        strategy = normalizer.normalize_or_raise(raw)

        for minutes in (0, 60, 240):
            result = engine.check_triggers(
                "A1", strategy, make_snapshot(99, as_of=market_now + timedelta(minutes=minutes)))
            assert result.action == Action.CONTINUE_MONITORING

    def test_stale_trigger_cancels_monitoring(self, engine, raw_strategy, normalizer,
                                              make_snapshot, market_now):
        raw = copy.deepcopy(raw_strategy)
        raw["triggers"][0].update(timeframe="5m", expiry_bars=3)
        raw["invalidations"] = []
        strategy = normalizer.normalize_or_raise(raw)

        actions = [
            engine.check_triggers(
                "A1", strategy,
                make_snapshot(99, as_of=market_now + timedelta(minutes=5 * i), timeframe="5m"),
            )
            for i in range(3)
        ]

        assert [a.action for a in actions[:2]] == [Action.CONTINUE_MONITORING] * 2
        assert actions[2].action == Action.CANCEL_MONITORING
        assert actions[2].expired_trigger == "T1"


class TestOccurrences:
    """Occurrence counting across bars."""

    @pytest.fixture
    def twice_in_a_row(self, raw_strategy, normalizer):
        raw = copy.deepcopy(raw_strategy)
        raw["triggers"][0].update(timeframe="5m",
                                  occurrences={"count": 2, "consecutive": True})
        raw["invalidations"] = []
        return normalizer.normalize_or_raise(raw)

    def test_consecutive_bars_required(self, engine, twice_in_a_row, make_snapshot, market_now):
        first = engine.check_triggers("A1", twice_in_a_row,
                                      make_snapshot(101, as_of=market_now, timeframe="5m"))
        second = engine.check_triggers(
            "A1", twice_in_a_row,
            make_snapshot(101, as_of=market_now + timedelta(minutes=5), timeframe="5m"))

        assert first.action == Action.CONTINUE_MONITORING
        assert first.triggers[0].condition_met is True
        assert second.action == Action.EXECUTE_ORDER

    def test_repeat_check_within_bar_counts_once(self, engine, twice_in_a_row, make_snapshot,
                                                 market_now):
        engine.check_triggers("A1", twice_in_a_row,
                              make_snapshot(101, as_of=market_now, timeframe="5m"))
        again = engine.check_triggers(
            "A1", twice_in_a_row,
            make_snapshot(101, as_of=market_now + timedelta(minutes=1), timeframe="5m"))

        assert again.action == Action.CONTINUE_MONITORING

    def test_broken_streak_resets(self, engine, twice_in_a_row, make_snapshot, market_now):
        for i, close in enumerate((101, 99, 101)):
            result = engine.check_triggers(
                "A1", twice_in_a_row,
                make_snapshot(close, as_of=market_now + timedelta(minutes=5 * i), timeframe="5m"))

        assert result.action == Action.CONTINUE_MONITORING
