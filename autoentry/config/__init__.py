"""Configuration defaults, loading and validation."""

from .defaults import (
    AppConfig,
    EvaluationParams,
    ExecutionParams,
    MonitoringParams,
    StorageParams,
    get_default_config,
)
from .loader import ConfigLoader
from .validation import ConfigValidator, ValidationError

__all__ = [
    "AppConfig",
    "EvaluationParams",
    "ExecutionParams",
    "MonitoringParams",
    "StorageParams",
    "get_default_config",
    "ConfigLoader",
    "ConfigValidator",
    "ValidationError",
]
