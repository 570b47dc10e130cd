"""Default configuration parameters for trigger monitoring and order execution."""

from dataclasses import dataclass


@dataclass(frozen=True)
class EvaluationParams:
    """Condition engine parameters."""
    equality_tolerance: float = 0.01           # Absolute tolerance for == and !=
    default_expiry_bars: int = 20              # Bars a trigger may stay unmet
    default_max_sessions: int = 5              # Trading sessions before a setup expires
    market_timezone: str = "Asia/Kolkata"


@dataclass(frozen=True)
class MonitoringParams:
    """Monitoring scheduler parameters."""
    min_interval_minutes: int = 1
    max_interval_minutes: int = 15
    horizon_sessions: int = 5                  # Monitoring horizon in trading sessions
    session_hours: float = 7.0                 # Market hours per session
    worker_count: int = 5                      # Concurrent ticks
    stale_lock_seconds: int = 300              # Order lock older than this is cleared
    respect_market_hours: bool = True
    market_open: str = "09:15"
    market_close: str = "15:30"


@dataclass(frozen=True)
class ExecutionParams:
    """Order execution parameters."""
    broker_retry_attempts: int = 3
    backoff_min_seconds: float = 0.5
    backoff_max_seconds: float = 4.0
    lock_cas_retries: int = 5                  # Compare-and-set attempts on the lock
    lock_cas_backoff_seconds: float = 0.05
    market_data_timeout_seconds: float = 10.0
    broker_timeout_seconds: float = 15.0
    bracket_expiry_hours: int = 24
    bracket_sweep_minutes: int = 15            # Interval of the pending bracket expiry job
    candle_count: int = 100


@dataclass(frozen=True)
class StorageParams:
    """SQLite storage parameters."""
    database_path: str = "data/autoentry.db"


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    evaluation: EvaluationParams
    monitoring: MonitoringParams
    execution: ExecutionParams
    storage: StorageParams


def get_default_config() -> AppConfig:
    """Get the default configuration instance."""
    return AppConfig(
        evaluation=EvaluationParams(),
        monitoring=MonitoringParams(),
        execution=ExecutionParams(),
        storage=StorageParams(),
    )
