"""
Per-(analysis, strategy) evaluation sessions.

A session remembers what the engine saw on previous checks: per-trigger pass
state, bar counts for staleness and occurrence history. Sessions live in an
in-process registry and are discarded on any terminal outcome.
"""

import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional

from autoentry.data.models import Occurrences, Timeframe


@dataclass
class BarObservation:
    """Whether a trigger held on one bar."""
    bar_key: str
    satisfied: bool


@dataclass
class TriggerState:
    """Running state of one trigger."""
    trigger_id: str
    last_passed: bool = False
    first_passed_at: Optional[datetime] = None
    last_evaluated_at: Optional[datetime] = None
    bars_seen: int = 0
    last_bar_key: Optional[str] = None
    history: list[BarObservation] = field(default_factory=list)

    def observe(self, bar_key: str, satisfied: bool, window: int) -> bool:
        """
        Record the condition result for ``bar_key``.

        Repeated checks within one bar overwrite that bar's observation.
        Returns True when ``bar_key`` is a bar not seen before.
        """
        is_new_bar = bar_key != self.last_bar_key
        if is_new_bar:
            self.bars_seen += 1
            self.last_bar_key = bar_key
            self.history.append(BarObservation(bar_key, satisfied))
            if len(self.history) > window:
                del self.history[:-window]
        else:
            self.history[-1].satisfied = satisfied
        return is_new_bar

    def occurrences_satisfied(self, occurrences: Occurrences) -> bool:
        if len(self.history) < occurrences.count:
            return False
        if occurrences.consecutive:
            return all(obs.satisfied for obs in self.history[-occurrences.count:])
        return sum(1 for obs in self.history if obs.satisfied) >= occurrences.count

    def bars_elapsed(self, created_at: datetime, now: datetime, timeframe: Timeframe) -> int:
        """Bars since the session began, by observed bars or by elapsed market time."""
        elapsed_minutes = max(0.0, (now - created_at).total_seconds() / 60.0)
        return max(self.bars_seen, int(elapsed_minutes // timeframe.minutes))


@dataclass
class EvaluationSession:
    """Evaluation state for one (analysis, strategy) pair."""
    analysis_id: str
    strategy_id: str
    created_at: datetime
    max_sessions: int
    last_session_date: date
    current_session: int = 1
    attempt_count: int = 0
    trigger_states: dict[str, TriggerState] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def key(self) -> tuple[str, str]:
        return (self.analysis_id, self.strategy_id)

    def trigger_state(self, trigger_id: str) -> TriggerState:
        state = self.trigger_states.get(trigger_id)
        if state is None:
            state = self.trigger_states[trigger_id] = TriggerState(trigger_id)
        return state

    def advance_to(self, trading_day: date) -> bool:
        """
        Count a new trading session when ``trading_day`` is later than the last one.

        Returns False once the session limit is exceeded.
        """
        if trading_day > self.last_session_date:
            self.current_session += 1
            self.last_session_date = trading_day
        return self.current_session <= self.max_sessions

    def to_dict(self) -> dict:
        return {
            "analysis_id": self.analysis_id,
            "strategy_id": self.strategy_id,
            "created_at": self.created_at.isoformat(),
            "current_session": self.current_session,
            "max_sessions": self.max_sessions,
            "last_session_date": self.last_session_date.isoformat(),
            "attempt_count": self.attempt_count,
            "triggers": {
                tid: {
                    "last_passed": s.last_passed,
                    "first_passed_at": s.first_passed_at.isoformat() if s.first_passed_at else None,
                    "bars_seen": s.bars_seen,
                }
                for tid, s in self.trigger_states.items()
            },
        }


class SessionRegistry:
    """Thread-safe in-process map of evaluation sessions."""

    def __init__(self):
        self._sessions: dict[tuple[str, str], EvaluationSession] = {}
        self._lock = threading.Lock()

    def get(self, analysis_id: str, strategy_id: str) -> Optional[EvaluationSession]:
        with self._lock:
            return self._sessions.get((analysis_id, strategy_id))

    def get_or_create(self, analysis_id: str, strategy_id: str, created_at: datetime,
                      max_sessions: int, trading_day: date) -> tuple[EvaluationSession, bool]:
        """Return the session and whether it was created by this call."""
        with self._lock:
            session = self._sessions.get((analysis_id, strategy_id))
            if session is not None:
                return session, False
            session = EvaluationSession(
                analysis_id=analysis_id,
                strategy_id=strategy_id,
                created_at=created_at,
                max_sessions=max_sessions,
                last_session_date=trading_day,
            )
            self._sessions[session.key] = session
            return session, True

    def discard(self, analysis_id: str, strategy_id: str) -> Optional[EvaluationSession]:
        with self._lock:
            return self._sessions.pop((analysis_id, strategy_id), None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
