"""Configuration validation utilities."""

import re
from dataclasses import dataclass
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


@dataclass(frozen=True)
class ValidationError:
    """Represents a configuration validation error."""
    field: str
    message: str
    value: Any


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class ConfigValidator:
    """Validates configuration parameters."""

    @staticmethod
    def validate_evaluation_params(params: dict[str, Any]) -> list[ValidationError]:
        """Validate condition engine parameters."""
        errors = []

        if "equality_tolerance" in params:
            value = params["equality_tolerance"]
            if not _is_number(value) or value < 0:
                errors.append(ValidationError(
                    field="equality_tolerance",
                    message="Must be a non-negative number",
                    value=value
                ))

        for name in ("default_expiry_bars", "default_max_sessions"):
            if name in params:
                value = params[name]
                if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                    errors.append(ValidationError(
                        field=name,
                        message="Must be a positive integer",
                        value=value
                    ))

        if "market_timezone" in params:
            value = params["market_timezone"]
            try:
                ZoneInfo(value)
            except (ZoneInfoNotFoundError, TypeError, ValueError):
                errors.append(ValidationError(
                    field="market_timezone",
                    message="Must be an IANA timezone name",
                    value=value
                ))

        return errors

    @staticmethod
    def validate_monitoring_params(params: dict[str, Any]) -> list[ValidationError]:
        """Validate monitoring scheduler parameters."""
        errors = []

        for name in ("min_interval_minutes", "max_interval_minutes",
                     "horizon_sessions", "worker_count", "stale_lock_seconds"):
            if name in params:
                value = params[name]
                if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                    errors.append(ValidationError(
                        field=name,
                        message="Must be a positive integer",
                        value=value
                    ))

        low = params.get("min_interval_minutes")
        high = params.get("max_interval_minutes")
        if isinstance(low, int) and isinstance(high, int) and low > high:
            errors.append(ValidationError(
                field="min_interval_minutes",
                message="Must not exceed max_interval_minutes",
                value=low
            ))

        if "session_hours" in params:
            value = params["session_hours"]
            if not _is_number(value) or value <= 0 or value > 24:
                errors.append(ValidationError(
                    field="session_hours",
                    message="Must be a positive number of at most 24",
                    value=value
                ))

        if "respect_market_hours" in params:
            value = params["respect_market_hours"]
            if not isinstance(value, bool):
                errors.append(ValidationError(
                    field="respect_market_hours",
                    message="Must be a boolean",
                    value=value
                ))

        for name in ("market_open", "market_close"):
            if name in params:
                value = params[name]
                if not isinstance(value, str) or not _HHMM.match(value):
                    errors.append(ValidationError(
                        field=name,
                        message="Must be a HH:MM time",
                        value=value
                    ))

        return errors

    @staticmethod
    def validate_execution_params(params: dict[str, Any]) -> list[ValidationError]:
        """Validate order execution parameters."""
        errors = []

        for name in ("broker_retry_attempts", "lock_cas_retries",
                     "bracket_expiry_hours", "bracket_sweep_minutes", "candle_count"):
            if name in params:
                value = params[name]
                if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                    errors.append(ValidationError(
                        field=name,
                        message="Must be a positive integer",
                        value=value
                    ))

        for name in ("backoff_min_seconds", "backoff_max_seconds",
                     "lock_cas_backoff_seconds", "market_data_timeout_seconds",
                     "broker_timeout_seconds"):
            if name in params:
                value = params[name]
                if not _is_number(value) or value < 0:
                    errors.append(ValidationError(
                        field=name,
                        message="Must be a non-negative number",
                        value=value
                    ))

        return errors

    @staticmethod
    def validate_config(config: dict[str, Any]) -> list[ValidationError]:
        """Validate complete configuration."""
        errors = []

        if "evaluation" in config:
            errors.extend(ConfigValidator.validate_evaluation_params(config["evaluation"]))

        if "monitoring" in config:
            errors.extend(ConfigValidator.validate_monitoring_params(config["monitoring"]))

        if "execution" in config:
            errors.extend(ConfigValidator.validate_execution_params(config["execution"]))

        return errors
