"""
Monitoring scheduler.

One recurring APScheduler job per (analysis, strategy) pair checks the
strategy's triggers at an adaptive interval and hands over to the execution
coordinator once they are met. Job records live in the durable ``JobStore``;
the APScheduler registry is only a cache that ``reconcile`` rebuilds.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from autoentry.config.defaults import MonitoringParams
from autoentry.data.models import Action, Strategy
from autoentry.data.strategy_normalizer import StrategyNormalizer
from autoentry.delivery.base import Notification, NotificationStatus, ResultSink
from autoentry.engine.conditions import ConditionEngine
from autoentry.errors import (
    BrokerAuthError,
    MarketDataUnavailableError,
    PersistenceError,
    StrategyConfigurationError,
)
from autoentry.execution.coordinator import OrderExecutionCoordinator
from autoentry.logging.config import get_state_logger, log_state_transition
from autoentry.market.accessor import MarketDataAccessor
from autoentry.persistence.analysis_store import AnalysisStore
from autoentry.utils.time import DEFAULT_MARKET_TIMEZONE, is_market_open, now_utc

from .frequency import MonitoringFrequency, calculate_frequency
from .job_store import JobStore
from .models import JobStatus, MonitoringJob, job_key

state_logger = get_state_logger(__name__)

RUNNABLE_STATUSES = (JobStatus.SCHEDULED, JobStatus.ACTIVE)


@dataclass
class TickResult:
    """What one monitoring tick did."""
    job_id: str
    outcome: str                # skipped, continue, aborted, paused or the terminal status
    status: Optional[JobStatus] = None
    reason: str = ""
    data: dict[str, Any] = field(default_factory=dict)


class MonitoringScheduler:
    """Starts, stops and runs monitoring jobs."""

    def __init__(
        self,
        job_store: JobStore,
        analysis_store: AnalysisStore,
        engine: ConditionEngine,
        market_data: MarketDataAccessor,
        coordinator: OrderExecutionCoordinator,
        sink: ResultSink,
        normalizer: Optional[StrategyNormalizer] = None,
        params: Optional[MonitoringParams] = None,
        market_timezone: str = DEFAULT_MARKET_TIMEZONE,
        scheduler: Optional[BackgroundScheduler] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.job_store = job_store
        self.analysis_store = analysis_store
        self.engine = engine
        self.market_data = market_data
        self.coordinator = coordinator
        self.sink = sink
        self.normalizer = normalizer or StrategyNormalizer()
        self.params = params or MonitoringParams()
        self.market_timezone = market_timezone
        self.clock = clock or now_utc
        self.scheduler = scheduler or BackgroundScheduler(
            executors={"default": ThreadPoolExecutor(self.params.worker_count)},
            job_defaults={"coalesce": True, "max_instances": 1},
            timezone=market_timezone,
        )

    # lifecycle

    def startup(self) -> int:
        """Start the worker pool and re-register persisted jobs."""
        if not self.scheduler.running:
            self.scheduler.start()
        restored = self.reconcile()
        state_logger.info("Monitoring scheduler started", restored_jobs=restored,
                          worker_count=self.params.worker_count)
        return restored

    def shutdown(self, wait: bool = False) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
        state_logger.info("Monitoring scheduler stopped")

    def reconcile(self) -> int:
        """Register every scheduled or active job from the durable store."""
        restored = 0
        for job in self.job_store.list_jobs(RUNNABLE_STATUSES):
            if self.scheduler.get_job(job.job_id) is None:
                self._register(job)
                restored += 1
        return restored

    # control

    def start(self, analysis_id: str, strategy_id: str, user_id: str,
              frequency: Optional[MonitoringFrequency] = None) -> MonitoringJob:
        """
        Begin monitoring a strategy. Starting an existing job returns it unchanged.

        Raises:
            PersistenceError: analysis does not exist
            StrategyConfigurationError: strategy missing or malformed
        """
        analysis = self.analysis_store.get(analysis_id)
        if analysis is None:
            raise PersistenceError(f"Analysis {analysis_id} not found",
                                   operation="start", target="analyses")
        raw = analysis.get_strategy(strategy_id)
        if raw is None:
            raise StrategyConfigurationError(f"Strategy {strategy_id} not found",
                                             code="strategy_not_found")
        strategy = self.normalizer.normalize_or_raise(raw)

        if frequency is None:
            frequency = calculate_frequency(
                strategy.trigger_timeframes,
                min_minutes=self.params.min_interval_minutes,
                max_minutes=self.params.max_interval_minutes,
                horizon_sessions=self.params.horizon_sessions,
                session_hours=self.params.session_hours,
            )

        job, created = self.job_store.create(MonitoringJob(
            analysis_id=analysis_id,
            strategy_id=strategy_id,
            user_id=user_id,
            frequency_seconds=frequency.seconds,
            max_attempts=frequency.max_attempts,
            timeframes=list(frequency.timeframes),
        ))
        if not created:
            state_logger.info("Monitoring already running", job_id=job.job_id,
                              analysis_id=analysis_id, strategy_id=strategy_id,
                              status=job.status.value)
            if job.status in RUNNABLE_STATUSES and self.scheduler.get_job(job.job_id) is None:
                self._register(job)
            return job

        self._register(job)
        return self.job_store.get(job.job_id) or job

    def stop(self, analysis_id: str, strategy_id: str, reason: str = "stopped") -> bool:
        """Cancel monitoring. Returns False when no job exists."""
        job = self.job_store.get_for(analysis_id, strategy_id)
        if job is None:
            self._unregister(job_key(analysis_id, strategy_id))
            return False
        self._finish(job, JobStatus.CANCELLED, reason)
        return True

    def pause(self, analysis_id: str, strategy_id: str, reason: str = "user_request") -> bool:
        job = self.job_store.get_for(analysis_id, strategy_id)
        if job is None or not job.can_transition(JobStatus.PAUSED):
            return False
        self._pause(job, reason)
        return True

    def resume(self, analysis_id: str, strategy_id: str) -> bool:
        job = self.job_store.get_for(analysis_id, strategy_id)
        if job is None or job.status != JobStatus.PAUSED:
            return False

        job.check_transition(JobStatus.ACTIVE)
        self.job_store.set_status(job.job_id, JobStatus.ACTIVE)
        log_state_transition(state_logger, job.job_id, job.status.value,
                             JobStatus.ACTIVE.value, "resume",
                             context={"analysis_id": analysis_id, "strategy_id": strategy_id})
        if self.scheduler.get_job(job.job_id) is not None:
            self.scheduler.resume_job(job.job_id)
        else:
            self._register(job, transition=False)
        return True

    def get_status(self, analysis_id: str, strategy_id: str) -> dict[str, Any]:
        key = job_key(analysis_id, strategy_id)
        job = self.job_store.get(key)
        if job is None:
            return {"job_id": key, "status": "inactive", "registered": False}
        status = job.to_dict()
        status["registered"] = self.scheduler.get_job(key) is not None
        return status

    # tick

    def run_tick(self, analysis_id: str, strategy_id: str) -> TickResult:
        """One monitoring check for the pair; APScheduler calls this on every interval."""
        key = job_key(analysis_id, strategy_id)
        job = self.job_store.get(key)
        if job is None or job.status not in RUNNABLE_STATUSES:
            # stopped or paused while queued
            return TickResult(key, "aborted", job.status if job else None)

        now = self.clock()
        log = state_logger.bind(job_id=key, analysis_id=analysis_id, strategy_id=strategy_id)

        analysis = self.analysis_store.get(analysis_id)
        if analysis is None:
            return self._finish(job, JobStatus.CANCELLED, "analysis_not_found")
        if analysis.is_expired(now):
            return self._finish(job, JobStatus.EXPIRED, "analysis_expired",
                                NotificationStatus.EXPIRED)
        if analysis.has_active_order:
            return self._finish(job, JobStatus.CANCELLED, "orders_already_placed")

        if analysis.order_processing:
            if analysis.lock_is_fresh(self.params.stale_lock_seconds, now):
                log.debug("Order in flight, skipping cycle")
                return TickResult(key, "skipped", job.status, "order_in_progress")
            self.analysis_store.clear_stale_lock(analysis_id, self.params.stale_lock_seconds, now)

        if self.params.respect_market_hours and not is_market_open(
                now, self.market_timezone, self.params.market_open, self.params.market_close):
            log.debug("Market closed, skipping cycle")
            return TickResult(key, "skipped", job.status, "market_closed")

        attempt = self.job_store.increment_attempts(key)
        if attempt is None:
            return TickResult(key, "aborted", None)
        if attempt > job.max_attempts:
            return self._finish(job, JobStatus.EXPIRED, "max_attempts_reached",
                                NotificationStatus.EXPIRED, {"attempts": attempt - 1})
        if job.status == JobStatus.SCHEDULED:
            self._transition(job, JobStatus.ACTIVE, "first_check")

        normalized = self.normalizer.normalize_strategy(analysis.get_strategy(strategy_id))
        if not normalized.success:
            return self._finish(job, JobStatus.FAILED, normalized.error_code,
                                NotificationStatus.ORDER_FAILED,
                                {"error": normalized.error_code, "message": normalized.error_msg})
        strategy = normalized.strategy

        try:
            snapshot = self.market_data.get_snapshot(
                analysis.instrument, strategy.required_timeframes, strategy.references,
            )
        except BrokerAuthError:
            self._pause(job, "broker_session_expired", NotificationStatus.SESSION_EXPIRED)
            return TickResult(key, "paused", JobStatus.PAUSED, "broker_session_expired")
        except MarketDataUnavailableError as e:
            log.warning("Market data unavailable, continuing", error=str(e), attempt=attempt)
            self.job_store.record_check(key, {"action": Action.CONTINUE_MONITORING.value,
                                              "reason": "market_data_unavailable"})
            return self._continue_or_expire(job, attempt, "market_data_unavailable")

        result = self.engine.check_triggers(analysis_id, strategy, snapshot,
                                            position_open=analysis.has_open_position)
        self.job_store.record_check(key, result.to_dict())

        if result.action == Action.EXECUTE_ORDER:
            return self._execute(job, strategy)
        if result.action in (Action.CANCEL_ENTRY, Action.CLOSE_POSITION):
            return self._finish(job, JobStatus.INVALIDATED, result.reason,
                                NotificationStatus.INVALIDATED,
                                {"action": result.action.value, "invalidation": result.invalidation})
        if result.action == Action.CANCEL_MONITORING:
            return self._finish(job, JobStatus.EXPIRED, result.reason,
                                NotificationStatus.EXPIRED,
                                {"expired_trigger": result.expired_trigger})

        log.debug("Triggers not met", attempt=attempt,
                  failed=[t.id for t in result.failed_triggers])
        return self._continue_or_expire(
            job, attempt, result.reason,
            {"failed_triggers": [t.id for t in result.failed_triggers]},
        )

    def _continue_or_expire(self, job: MonitoringJob, attempt: int, reason: str,
                            data: Optional[dict[str, Any]] = None) -> TickResult:
        if attempt >= job.max_attempts:
            return self._finish(job, JobStatus.EXPIRED, "max_attempts_reached",
                                NotificationStatus.EXPIRED, {"attempts": attempt})
        return TickResult(job.job_id, "continue", JobStatus.ACTIVE, reason, data or {})

    def _execute(self, job: MonitoringJob, strategy: Strategy) -> TickResult:
        outcome = self.coordinator.execute_strategy(
            job.analysis_id, job.strategy_id, job.user_id,
            bypass_triggers=True, strategy=strategy,
        )
        if outcome.success:
            return self._finish(job, JobStatus.SUCCESS, "order_placed",
                                NotificationStatus.ORDER_PLACED, outcome.data)
        if outcome.error == "orders_already_placed":
            return self._finish(job, JobStatus.CANCELLED, "orders_already_placed")
        if outcome.error == "broker_not_connected":
            self._pause(job, "broker_session_expired", NotificationStatus.SESSION_EXPIRED)
            return TickResult(job.job_id, "paused", JobStatus.PAUSED, "broker_session_expired")
        if outcome.retryable:
            state_logger.warning("Execution failed, retrying next cycle", job_id=job.job_id,
                                 analysis_id=job.analysis_id, strategy_id=job.strategy_id,
                                 error=outcome.error, message=outcome.message)
            return TickResult(job.job_id, "continue", JobStatus.ACTIVE, outcome.message)
        return self._finish(job, JobStatus.FAILED, outcome.error or "order_execution_failed",
                            NotificationStatus.ORDER_FAILED,
                            {"error": outcome.error, "message": outcome.message})

    # internals

    def _register(self, job: MonitoringJob, transition: bool = True) -> None:
        self.scheduler.add_job(
            self.run_tick,
            IntervalTrigger(seconds=job.frequency_seconds),
            args=[job.analysis_id, job.strategy_id],
            id=job.job_id,
            name=f"Monitor {job.analysis_id}/{job.strategy_id}",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if transition and job.status == JobStatus.SCHEDULED:
            self._transition(job, JobStatus.ACTIVE, "registered")

    def _unregister(self, job_id: str) -> None:
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            pass

    def _transition(self, job: MonitoringJob, to_status: JobStatus, trigger: str) -> None:
        job.check_transition(to_status)
        self.job_store.set_status(job.job_id, to_status)
        log_state_transition(state_logger, job.job_id, job.status.value, to_status.value,
                             trigger, context={"analysis_id": job.analysis_id,
                                               "strategy_id": job.strategy_id})
        job.status = to_status

    def _pause(self, job: MonitoringJob, reason: str,
               notify: Optional[NotificationStatus] = None) -> None:
        job.check_transition(JobStatus.PAUSED)
        self.job_store.set_status(job.job_id, JobStatus.PAUSED, paused_reason=reason)
        try:
            self.scheduler.pause_job(job.job_id)
        except JobLookupError:
            pass
        log_state_transition(state_logger, job.job_id, job.status.value,
                             JobStatus.PAUSED.value, reason,
                             context={"analysis_id": job.analysis_id,
                                      "strategy_id": job.strategy_id})
        job.status = JobStatus.PAUSED
        if notify is not None:
            self._notify(job, notify, {"reason": reason})

    def _finish(self, job: MonitoringJob, status: JobStatus, reason: str,
                notify: Optional[NotificationStatus] = None,
                data: Optional[dict[str, Any]] = None) -> TickResult:
        """Terminal transition: drop the recurring job, its record and its session."""
        job.check_transition(status)
        self._unregister(job.job_id)
        self.job_store.delete(job.job_id)
        self.engine.discard_session(job.analysis_id, job.strategy_id)
        log_state_transition(state_logger, job.job_id, job.status.value, status.value, reason,
                             context={"analysis_id": job.analysis_id,
                                      "strategy_id": job.strategy_id,
                                      "attempts": job.attempt_count})
        if notify is not None:
            self._notify(job, notify, dict(data or {}, reason=reason))
        return TickResult(job.job_id, status.value, status, reason, data or {})

    def _notify(self, job: MonitoringJob, status: NotificationStatus,
                data: dict[str, Any]) -> None:
        self.sink.notify(Notification(
            analysis_id=job.analysis_id,
            user_id=job.user_id,
            strategy_id=job.strategy_id,
            status=status,
            data=data,
        ))
