"""Pytest configuration and shared fixtures."""

import copy
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest

from autoentry.broker.paper import PaperBroker
from autoentry.config.defaults import ExecutionParams, MonitoringParams
from autoentry.data.strategy_normalizer import StrategyNormalizer
from autoentry.delivery.memory_sink import MemoryResultSink
from autoentry.engine.conditions import ConditionEngine
from autoentry.execution.brackets import BracketManager, BracketStore
from autoentry.execution.coordinator import OrderExecutionCoordinator
from autoentry.market.accessor import MarketDataAccessor
from autoentry.monitoring.job_store import JobStore
from autoentry.monitoring.scheduler import MonitoringScheduler
from autoentry.persistence.analysis_store import Analysis, AnalysisStore

# Wednesday 10:30 in Asia/Kolkata, inside market hours
MARKET_NOW = datetime(2024, 1, 10, 5, 0, tzinfo=timezone.utc)
INSTRUMENT = "NSE_EQ|INE002A01018"


@pytest.fixture
def market_now() -> datetime:
    return MARKET_NOW


@pytest.fixture
def raw_strategy() -> Dict[str, Any]:
    """Long limit strategy: close > 100 on the daily chart, voided below 90."""
    return {
        "id": "S1",
        "name": "Breakout above 100",
        "type": "BUY",
        "entryType": "limit",
        "entry": 100.5,
        "stopLoss": 95.0,
        "target": 110.0,
        "suggested_qty": 10,
        "triggers": [
            {
                "id": "T1",
                "timeframe": "1d",
                "left": {"ref": "close"},
                "op": ">",
                "right": {"ref": "value", "value": 100},
            }
        ],
        "invalidations": [
            {
                "id": "I1",
                "scope": "pre_entry",
                "timeframe": "1d",
                "left": {"ref": "close"},
                "op": "<",
                "right": {"ref": "value", "value": 90},
            }
        ],
    }


@pytest.fixture
def normalizer() -> StrategyNormalizer:
    return StrategyNormalizer()


@pytest.fixture
def strategy(raw_strategy, normalizer):
    return normalizer.normalize_or_raise(raw_strategy)


@pytest.fixture
def make_snapshot() -> Callable[..., Dict[str, Any]]:
    """Raw snapshot with one daily bar, ``close`` doubling as the current price."""
    def _make(close: float, as_of: datetime = MARKET_NOW, timeframe: str = "1d",
              extra: Optional[Dict[str, float]] = None,
              bar_ts: Optional[datetime] = None) -> Dict[str, Any]:
        fields: Dict[str, Any] = {"open": close, "high": close, "low": close,
                                  "close": close, "volume": 1000}
        if bar_ts is not None:
            fields["timestamp"] = bar_ts.isoformat()
        fields.update(extra or {})
        return {
            "current_price": close,
            "as_of": as_of.isoformat(),
            "timeframes": {timeframe: fields},
        }
    return _make


@pytest.fixture
def make_candles() -> Callable[..., List[Dict[str, Any]]]:
    """Daily candles ending on the market date, last close given."""
    def _make(last_close: float, count: int = 30, step: timedelta = timedelta(days=1),
              end: datetime = MARKET_NOW) -> List[Dict[str, Any]]:
        candles = []
        for i in range(count):
            ts = end - step * (count - 1 - i)
            close = last_close if i == count - 1 else 95.0 + (i % 5)
            candles.append({
                "timestamp": ts.isoformat(),
                "open": close - 0.5,
                "high": close + 1.0,
                "low": close - 1.0,
                "close": close,
                "volume": 1000 + i,
            })
        return candles
    return _make


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "autoentry.db")


@pytest.fixture
def analysis_store(db_path) -> AnalysisStore:
    return AnalysisStore(db_path, cas_retries=10, cas_backoff_seconds=0.001)


@pytest.fixture
def analysis(analysis_store, raw_strategy) -> Analysis:
    """Persisted swing analysis holding ``raw_strategy``."""
    return analysis_store.save(Analysis(
        id="A1",
        user_id="U1",
        instrument=INSTRUMENT,
        symbol="RELIANCE",
        analysis_type="swing",
        strategies=[copy.deepcopy(raw_strategy)],
        expires_at=MARKET_NOW + timedelta(days=7),
    ))


@pytest.fixture
def broker(make_candles) -> PaperBroker:
    """Connected paper broker quoting the instrument with a daily close of 101."""
    paper = PaperBroker()
    paper.set_quote(INSTRUMENT, 101.0, timestamp=MARKET_NOW.isoformat())
    paper.set_candles(INSTRUMENT, "1d", make_candles(101.0))
    return paper


@pytest.fixture
def execution_params() -> ExecutionParams:
    return ExecutionParams(
        broker_retry_attempts=3,
        backoff_min_seconds=0,
        backoff_max_seconds=0,
        broker_timeout_seconds=5.0,
        market_data_timeout_seconds=5.0,
    )


@pytest.fixture
def market_data(broker, execution_params):
    accessor = MarketDataAccessor(broker, candle_count=execution_params.candle_count,
                                  timeout_seconds=execution_params.market_data_timeout_seconds)
    yield accessor
    accessor.close()


@pytest.fixture
def bracket_manager(broker, db_path, analysis_store) -> BracketManager:
    return BracketManager(broker, BracketStore(db_path), analysis_store)


@pytest.fixture
def coordinator(analysis_store, broker, market_data, bracket_manager, execution_params):
    coord = OrderExecutionCoordinator(
        analysis_store,
        broker,
        market_data,
        bracket_manager=bracket_manager,
        params=execution_params,
        clock=lambda: MARKET_NOW,
    )
    yield coord
    coord.close()


@pytest.fixture
def sink() -> MemoryResultSink:
    return MemoryResultSink()


@pytest.fixture
def job_store(db_path) -> JobStore:
    return JobStore(db_path)


@pytest.fixture
def monitoring_params() -> MonitoringParams:
    return MonitoringParams(respect_market_hours=True)


@pytest.fixture
def make_scheduler(job_store, analysis_store, market_data, coordinator, sink, monitoring_params):
    """Scheduler factory; the APScheduler instance is never started in tests."""
    created = []

    def _make(clock: Callable[[], datetime] = lambda: MARKET_NOW,
              params: Optional[MonitoringParams] = None) -> MonitoringScheduler:
        scheduler = MonitoringScheduler(
            job_store,
            analysis_store,
            ConditionEngine(),
            market_data,
            coordinator,
            sink,
            params=params or monitoring_params,
            clock=clock,
        )
        created.append(scheduler)
        return scheduler

    yield _make
    for scheduler in created:
        scheduler.shutdown()
