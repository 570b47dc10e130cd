"""
Condition engine orchestrating triggers, invalidations and warnings.

``check_triggers`` returns exactly one action per call:

1. session limit exceeded            -> cancel_monitoring
2. post-entry invalidation hit        -> close_position (only with an open position)
3. pre-entry invalidation hit         -> cancel_entry
4. every trigger evaluated, state updated
5. unmet trigger older than its expiry -> cancel_monitoring
6. all triggers met                   -> execute_order
7. otherwise                          -> continue_monitoring with the unmet triggers

Market time comes from the snapshot's ``as_of``; the injected clock is only
used when a snapshot carries none.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from autoentry.data.models import (
    Action,
    InvalidationScope,
    Strategy,
    Timeframe,
)
from autoentry.logging.config import (
    get_engine_logger,
    log_condition_decision,
)
from autoentry.market.snapshot import MarketSnapshot, normalize_snapshot
from autoentry.utils.time import (
    DEFAULT_MARKET_TIMEZONE,
    ensure_aware,
    now_utc,
    trading_date,
)

from .evaluator import DEFAULT_TOLERANCE, ConditionResult, evaluate_condition
from .session import EvaluationSession, SessionRegistry

engine_logger = get_engine_logger(__name__)

TERMINAL_ACTIONS = frozenset({
    Action.CANCEL_ENTRY,
    Action.CLOSE_POSITION,
    Action.CANCEL_MONITORING,
})


@dataclass
class EngineResult:
    """Outcome of one ``check_triggers`` call."""
    action: Action
    triggers: list[ConditionResult] = field(default_factory=list)
    warnings: list[dict[str, Any]] = field(default_factory=list)
    session: Optional[EvaluationSession] = None
    reason: str = ""
    invalidation: Optional[dict[str, Any]] = None
    expired_trigger: Optional[str] = None
    failed_triggers: list[ConditionResult] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.action in TERMINAL_ACTIONS

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "reason": self.reason,
            "triggers": [t.to_dict() for t in self.triggers],
            "failed_triggers": [t.to_dict() for t in self.failed_triggers],
            "warnings": list(self.warnings),
            "invalidation": self.invalidation,
            "expired_trigger": self.expired_trigger,
            "session": self.session.to_dict() if self.session else None,
        }


def _bar_key(snapshot: MarketSnapshot, timeframe: Timeframe, now: datetime) -> str:
    """Identity of the current bar: its timestamp, else the elapsed-time bucket."""
    data = snapshot.get(timeframe)
    if data is not None and data.timestamp is not None:
        return data.timestamp.isoformat()
    bucket = int(now.timestamp() // (timeframe.minutes * 60))
    return f"{timeframe.value}#{bucket}"


class ConditionEngine:
    """Evaluates a strategy against snapshots, one session per (analysis, strategy)."""

    def __init__(
        self,
        tolerance: float = DEFAULT_TOLERANCE,
        market_timezone: str = DEFAULT_MARKET_TIMEZONE,
        default_max_sessions: int = 5,
        clock: Optional[Callable[[], datetime]] = None,
        sessions: Optional[SessionRegistry] = None,
    ):
        self.tolerance = tolerance
        self.market_timezone = market_timezone
        self.default_max_sessions = default_max_sessions
        self.clock = clock or now_utc
        self.sessions = sessions or SessionRegistry()

    def max_sessions_for(self, strategy: Strategy) -> int:
        if not strategy.triggers:
            return self.default_max_sessions
        return min(t.within_sessions for t in strategy.triggers)

    def discard_session(self, analysis_id: str, strategy_id: str) -> None:
        """Drop the session after a terminal outcome decided outside the engine."""
        if self.sessions.discard(analysis_id, strategy_id) is not None:
            engine_logger.debug("Session discarded", analysis_id=analysis_id,
                                strategy_id=strategy_id)

    def check_triggers(
        self,
        analysis_id: str,
        strategy: Strategy,
        snapshot: Any,
        *,
        position_open: bool = False,
    ) -> EngineResult:
        """
        Evaluate ``strategy`` against ``snapshot``.

        Args:
            analysis_id: Owning analysis
            strategy: Normalized strategy
            snapshot: ``MarketSnapshot`` or raw snapshot dict
            position_open: Whether an entry has filled; enables post-entry invalidations

        Returns:
            EngineResult carrying the single action to take
        """
        snapshot = normalize_snapshot(snapshot)
        now = ensure_aware(snapshot.as_of) if snapshot.as_of else self.clock()
        trading_day = trading_date(now, self.market_timezone)

        session, created = self.sessions.get_or_create(
            analysis_id, strategy.id, created_at=now,
            max_sessions=self.max_sessions_for(strategy), trading_day=trading_day,
        )
        if created:
            engine_logger.info("Evaluation session created", analysis_id=analysis_id,
                               strategy_id=strategy.id, max_sessions=session.max_sessions)

        with session.lock:
            result = self._evaluate(analysis_id, strategy, snapshot, session, now,
                                    trading_day, position_open)

        if result.is_terminal:
            self.sessions.discard(analysis_id, strategy.id)

        engine_logger.info(
            "Triggers checked",
            analysis_id=analysis_id,
            strategy_id=strategy.id,
            action=result.action.value,
            reason=result.reason,
            failed=[t.id for t in result.failed_triggers],
            attempt=session.attempt_count,
        )
        return result

    def _evaluate(self, analysis_id: str, strategy: Strategy, snapshot: MarketSnapshot,
                  session: EvaluationSession, now: datetime, trading_day,
                  position_open: bool) -> EngineResult:
        session.attempt_count += 1

        # 1. trading-session limit
        if not session.advance_to(trading_day):
            return EngineResult(
                action=Action.CANCEL_MONITORING,
                session=session,
                reason=f"Session limit exceeded ({session.max_sessions} sessions)",
            )

        warnings: list[dict[str, Any]] = []

        # 2-3. invalidations, post-entry first
        scopes = [InvalidationScope.POST_ENTRY] if position_open else [InvalidationScope.PRE_ENTRY]
        for scope in scopes:
            for invalidation in (i for i in strategy.invalidations if i.scope == scope):
                outcome = evaluate_condition(invalidation, snapshot, strategy,
                                             tolerance=self.tolerance)
                log_condition_decision(engine_logger, invalidation.id, outcome.passed,
                                       analysis_id, strategy.id,
                                       reason=f"invalidation {outcome.description}")
                if not outcome.evaluable:
                    warnings.append(self._unresolved_warning(outcome))
                    continue
                if outcome.passed:
                    return EngineResult(
                        action=invalidation.action,
                        warnings=warnings,
                        session=session,
                        reason=f"Invalidation condition met: {scope.value}",
                        invalidation={
                            "id": invalidation.id,
                            "scope": scope.value,
                            "condition": outcome.description,
                            "timeframe": invalidation.timeframe.value,
                            "left_value": outcome.left_value,
                            "right_value": outcome.right_value,
                        },
                    )

        warnings.extend(self._active_warnings(strategy, snapshot))

        # 4. triggers
        results: list[ConditionResult] = []
        expired: Optional[tuple[str, int, int]] = None
        for trigger in strategy.triggers:
            outcome = evaluate_condition(trigger, snapshot, strategy, tolerance=self.tolerance)
            state = session.trigger_state(trigger.id)
            window = trigger.occurrences.count if trigger.occurrences.consecutive \
                else max(trigger.occurrences.count, trigger.expiry_bars)
            state.observe(_bar_key(snapshot, trigger.timeframe, now), outcome.condition_met, window)

            passed = outcome.condition_met and state.occurrences_satisfied(trigger.occurrences)
            bars = state.bars_elapsed(session.created_at, now, trigger.timeframe)
            state.last_passed = passed
            state.last_evaluated_at = now
            if passed and state.first_passed_at is None:
                state.first_passed_at = now

            outcome = ConditionResult(
                id=trigger.id,
                description=outcome.description,
                timeframe=outcome.timeframe,
                passed=passed,
                evaluable=outcome.evaluable,
                left_value=outcome.left_value,
                right_value=outcome.right_value,
                warning=outcome.warning,
                condition_met=outcome.condition_met,
                bars_elapsed=bars,
            )
            results.append(outcome)
            if not outcome.evaluable:
                warnings.append(self._unresolved_warning(outcome))

            log_condition_decision(engine_logger, trigger.id, passed, analysis_id, strategy.id,
                                   reason=outcome.description,
                                   context={"bars": bars, "max_bars": trigger.expiry_bars,
                                            "left": outcome.left_value,
                                            "right": outcome.right_value})

            # 5. staleness
            if not passed and bars >= trigger.expiry_bars and expired is None:
                expired = (trigger.id, bars, trigger.expiry_bars)

        failed = [r for r in results if not r.passed]

        if expired is not None:
            trigger_id, bars, limit = expired
            return EngineResult(
                action=Action.CANCEL_MONITORING,
                triggers=results,
                warnings=warnings,
                session=session,
                reason=f"Trigger {trigger_id} expired after {bars} bars (limit {limit})",
                expired_trigger=trigger_id,
                failed_triggers=failed,
            )

        # 6-7.
        if not failed:
            return EngineResult(
                action=Action.EXECUTE_ORDER,
                triggers=results,
                warnings=warnings,
                session=session,
                reason="All triggers satisfied",
            )

        return EngineResult(
            action=Action.CONTINUE_MONITORING,
            triggers=results,
            warnings=warnings,
            session=session,
            reason=f"{len(failed)} of {len(results)} triggers not satisfied",
            failed_triggers=failed,
        )

    def _active_warnings(self, strategy: Strategy, snapshot: MarketSnapshot) -> list[dict[str, Any]]:
        active = []
        for warning in strategy.warnings:
            outcomes = [evaluate_condition(c, snapshot, strategy, condition_id=warning.code,
                                           tolerance=self.tolerance)
                        for c in warning.applies_when]
            if outcomes and all(o.evaluable and o.passed for o in outcomes):
                active.append({
                    "code": warning.code,
                    "severity": warning.severity,
                    "text": warning.text,
                    "mitigation": list(warning.mitigation),
                })
        return active

    @staticmethod
    def _unresolved_warning(outcome: ConditionResult) -> dict[str, Any]:
        return {
            "code": "UNRESOLVED_REFERENCE",
            "severity": "low",
            "text": outcome.warning,
            "condition_id": outcome.id,
        }
