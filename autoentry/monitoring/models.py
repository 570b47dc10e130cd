"""Monitoring job records and their lifecycle states."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from autoentry.utils.time import now_utc


class JobStatus(str, Enum):
    """Job lifecycle: scheduled -> active -> one terminal state, or paused."""
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    SUCCESS = "success"
    INVALIDATED = "invalidated"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    FAILED = "failed"
    PAUSED = "paused"


TERMINAL_STATUSES = frozenset({
    JobStatus.SUCCESS,
    JobStatus.INVALIDATED,
    JobStatus.EXPIRED,
    JobStatus.CANCELLED,
    JobStatus.FAILED,
})

# allowed transitions, enforced by MonitoringJob.check_transition
TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.SCHEDULED: frozenset({JobStatus.ACTIVE, JobStatus.PAUSED} | TERMINAL_STATUSES),
    JobStatus.ACTIVE: frozenset({JobStatus.PAUSED} | TERMINAL_STATUSES),
    JobStatus.PAUSED: frozenset({JobStatus.ACTIVE, JobStatus.CANCELLED, JobStatus.EXPIRED}),
}


def job_key(analysis_id: str, strategy_id: str) -> str:
    """Deterministic job identifier for an (analysis, strategy) pair."""
    return f"monitor_{analysis_id}_{strategy_id}"


@dataclass
class MonitoringJob:
    """Durable record of a recurring trigger check."""
    analysis_id: str
    strategy_id: str
    user_id: str
    frequency_seconds: int
    max_attempts: int
    attempt_count: int = 0
    status: JobStatus = JobStatus.SCHEDULED
    timeframes: list[str] = field(default_factory=list)
    paused_reason: Optional[str] = None
    last_checked_at: Optional[datetime] = None
    last_result: Optional[dict[str, Any]] = None
    created_at: datetime = field(default_factory=now_utc)
    updated_at: datetime = field(default_factory=now_utc)

    @property
    def job_id(self) -> str:
        return job_key(self.analysis_id, self.strategy_id)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempt_count >= self.max_attempts

    def can_transition(self, to_status: JobStatus) -> bool:
        return to_status in TRANSITIONS.get(self.status, frozenset())

    def check_transition(self, to_status: JobStatus) -> None:
        """Raise ValueError for a move the lifecycle does not allow."""
        if not self.can_transition(to_status):
            raise ValueError(f"Job {self.job_id} cannot move from "
                             f"{self.status.value} to {to_status.value}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "analysis_id": self.analysis_id,
            "strategy_id": self.strategy_id,
            "user_id": self.user_id,
            "frequency_seconds": self.frequency_seconds,
            "attempt_count": self.attempt_count,
            "max_attempts": self.max_attempts,
            "status": self.status.value,
            "timeframes": list(self.timeframes),
            "paused_reason": self.paused_reason,
            "last_checked_at": self.last_checked_at.isoformat() if self.last_checked_at else None,
            "last_result": self.last_result,
        }
