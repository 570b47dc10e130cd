"""
Service facade wiring configuration, storage, broker, engine, execution and monitoring.

Market Data → Snapshot → Condition Engine → Scheduler → Execution Coordinator → Result Sink
"""

from pathlib import Path
from typing import Any, Optional

import structlog
from apscheduler.triggers.interval import IntervalTrigger

from .broker.base import BrokerClient
from .config.loader import ConfigLoader
from .config.validation import ConfigValidator
from .data.strategy_normalizer import StrategyNormalizer
from .delivery.base import ResultSink
from .delivery.stdout_sink import StdoutResultSink
from .engine.conditions import ConditionEngine
from .execution.brackets import BracketManager, BracketStore
from .execution.coordinator import ExecutionResult, OrderExecutionCoordinator
from .market.accessor import MarketDataAccessor
from .monitoring.job_store import JobStore
from .monitoring.models import MonitoringJob
from .monitoring.scheduler import MonitoringScheduler
from .persistence.analysis_store import AnalysisStore

logger = structlog.get_logger(__name__)

BRACKET_EXPIRY_JOB_ID = "expire_pending_brackets"


class AutoEntryService:
    """
    Entry point for conditional order automation.

    Builds every component from one ``AppConfig`` and exposes the user-facing
    operations: execute a strategy now, or monitor it until its triggers hold.
    """

    def __init__(
        self,
        broker: BrokerClient,
        sink: Optional[ResultSink] = None,
        config_dir: Optional[Path] = None,
        overrides: Optional[dict[str, Any]] = None,
        scheduler=None,
    ) -> None:
        self.config_loader = ConfigLoader.create(config_dir)
        merged = self.config_loader.merge_config(overrides)
        errors = ConfigValidator.validate_config(merged)
        if errors:
            messages = [f"{err.field}: {err.message} (got: {err.value})" for err in errors]
            logger.error("Configuration validation failed", errors=messages)
            raise ValueError("Invalid configuration: " + "; ".join(messages))
        self.config = self.config_loader.load(overrides)

        evaluation = self.config.evaluation
        execution = self.config.execution
        db_path = self.config.storage.database_path

        self.broker = broker
        self.sink = sink or StdoutResultSink()
        self.normalizer = StrategyNormalizer(
            default_expiry_bars=evaluation.default_expiry_bars,
            default_max_sessions=evaluation.default_max_sessions,
        )
        self.analysis_store = AnalysisStore(
            db_path,
            cas_retries=execution.lock_cas_retries,
            cas_backoff_seconds=execution.lock_cas_backoff_seconds,
        )
        self.job_store = JobStore(db_path)
        self.bracket_manager = BracketManager(
            broker, BracketStore(db_path), self.analysis_store,
            expiry_hours=execution.bracket_expiry_hours,
        )
        self.market_data = MarketDataAccessor(
            broker,
            candle_count=execution.candle_count,
            timeout_seconds=execution.market_data_timeout_seconds,
        )
        self.engine = self._new_engine()
        self.coordinator = OrderExecutionCoordinator(
            self.analysis_store,
            broker,
            self.market_data,
            bracket_manager=self.bracket_manager,
            normalizer=self.normalizer,
            engine_factory=self._new_engine,
            params=execution,
            stale_lock_seconds=self.config.monitoring.stale_lock_seconds,
        )
        self.scheduler = MonitoringScheduler(
            self.job_store,
            self.analysis_store,
            self.engine,
            self.market_data,
            self.coordinator,
            self.sink,
            normalizer=self.normalizer,
            params=self.config.monitoring,
            market_timezone=evaluation.market_timezone,
            scheduler=scheduler,
        )

        logger.info("AutoEntry service initialized", database_path=db_path,
                    worker_count=self.config.monitoring.worker_count)

    def _new_engine(self) -> ConditionEngine:
        evaluation = self.config.evaluation
        return ConditionEngine(
            tolerance=evaluation.equality_tolerance,
            market_timezone=evaluation.market_timezone,
            default_max_sessions=evaluation.default_max_sessions,
        )

    def start(self) -> int:
        """Start the scheduler, restore persisted monitoring jobs and the bracket expiry sweep."""
        restored = self.scheduler.startup()
        self.scheduler.scheduler.add_job(
            self.bracket_manager.expire_stale,
            IntervalTrigger(minutes=self.config.execution.bracket_sweep_minutes),
            id=BRACKET_EXPIRY_JOB_ID,
            name="Expire pending brackets",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        return restored

    def shutdown(self) -> None:
        self.scheduler.shutdown()
        self.coordinator.close()
        self.market_data.close()
        logger.info("AutoEntry service stopped")

    def execute(self, analysis_id: str, strategy_id: str, user_id: str,
                custom_quantity: Optional[Any] = None) -> ExecutionResult:
        """Execute now; if triggers are not met yet, fall back to monitoring."""
        result = self.coordinator.execute_strategy(analysis_id, strategy_id, user_id,
                                                   custom_quantity=custom_quantity)
        if not result.success and result.should_monitor:
            job = self.scheduler.start(analysis_id, strategy_id, user_id)
            result.data["monitoring_job_id"] = job.job_id
        return result

    def monitor(self, analysis_id: str, strategy_id: str, user_id: str) -> MonitoringJob:
        return self.scheduler.start(analysis_id, strategy_id, user_id)

    def handle_order_update(self, order_id: str, status: str):
        """Broker postback: place bracket exits on fills, drop them on rejections."""
        return self.bracket_manager.handle_order_update(order_id, status)

    def get_runtime_stats(self) -> dict[str, Any]:
        """Get runtime statistics."""
        return {
            "sessions": len(self.engine.sessions),
            "scheduled_jobs": len(self.scheduler.scheduler.get_jobs()),
            "stored_jobs": len(self.job_store.list_jobs()),
            "sink": self.sink.get_stats(),
        }
