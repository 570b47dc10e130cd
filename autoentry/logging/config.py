"""
Structured logging for autoentry.

Every module logs through structlog. Two bound loggers carry the audit trail:
the condition engine logs one record per trigger or invalidation decision,
and the monitoring scheduler logs one record per job state change. Both are
tagged with ``subsystem`` and ``audit_trail=True`` so they can be filtered
out of the general stream.
"""
import logging
import sys
from enum import Enum
from typing import Any, Optional, Union

import structlog
from structlog.types import EventDict, FilteringBoundLogger, Processor

ENGINE_SUBSYSTEM = "condition_engine"
MONITORING_SUBSYSTEM = "monitoring"


def _enum_values(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Render enum members (actions, job states) by value."""
    for key, value in event_dict.items():
        if isinstance(value, Enum):
            event_dict[key] = value.value
    return event_dict


def _build_processors(format_json: bool, include_timestamp: bool,
                      include_caller: bool) -> list[Processor]:
    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        _enum_values,
    ]
    if include_timestamp:
        # UTC, matching persisted timestamps
        processors.append(structlog.processors.TimeStamper(fmt="iso", utc=True))
    if include_caller:
        processors.append(structlog.processors.CallsiteParameterAdder(
            parameters=[structlog.processors.CallsiteParameter.FILENAME,
                        structlog.processors.CallsiteParameter.LINENO]
        ))
    processors.append(structlog.processors.StackInfoRenderer())
    if format_json:
        processors.append(structlog.processors.dict_tracebacks)
    else:
        processors.append(structlog.processors.format_exc_info)
    processors.append(structlog.processors.UnicodeDecoder())
    return processors


def configure_logging(
    level: Union[str, int] = "INFO",
    format_json: bool = False,
    include_timestamp: bool = True,
    include_caller: bool = False,
    extra_processors: Optional[list[Processor]] = None
) -> None:
    """
    Configure structlog on top of the standard library logging module.

    Args:
        level: Level name or number
        format_json: Render JSON lines instead of the console format
        include_timestamp: Add an ISO8601 UTC timestamp to every record
        include_caller: Add filename and line number
        extra_processors: Processors inserted before the renderer
    """
    log_level = level if isinstance(level, int) else logging.getLevelName(level.upper())

    logging.basicConfig(level=log_level, stream=sys.stdout, format="%(message)s")
    logging.getLogger().setLevel(log_level)
    # apscheduler logs every job run at INFO
    logging.getLogger("apscheduler").setLevel(max(log_level, logging.WARNING))

    processors = _build_processors(format_json, include_timestamp, include_caller)
    processors.extend(extra_processors or [])
    if format_json:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> FilteringBoundLogger:
    """Module logger, typically ``get_logger(__name__)``."""
    return structlog.get_logger(name)


def get_engine_logger(name: str) -> FilteringBoundLogger:
    """Logger for condition engine decisions, part of the audit trail."""
    return get_logger(name).bind(subsystem=ENGINE_SUBSYSTEM, audit_trail=True)


def get_state_logger(name: str) -> FilteringBoundLogger:
    """Logger for monitoring job lifecycle changes, part of the audit trail."""
    return get_logger(name).bind(subsystem=MONITORING_SUBSYSTEM, audit_trail=True)


def log_condition_decision(
    logger: FilteringBoundLogger,
    condition_id: str,
    passed: bool,
    analysis_id: str,
    strategy_id: str,
    reason: str,
    context: Optional[dict[str, Any]] = None
) -> None:
    """
    Record whether one trigger or invalidation held on this check.

    Decisions are logged at DEBUG; the engine logs the resulting action
    separately at INFO.

    Args:
        logger: Engine logger
        condition_id: Trigger or invalidation id
        passed: Whether the condition held
        analysis_id: Owning analysis
        strategy_id: Owning strategy
        reason: Human readable condition, e.g. ``close(1d) > 100``
        context: Operand values, bar counts and similar detail
    """
    bound_logger = logger.bind(
        condition_id=condition_id,
        condition_result="PASS" if passed else "FAIL",
        analysis_id=analysis_id,
        strategy_id=strategy_id,
        reason=reason,
    )

    if context:
        bound_logger = bound_logger.bind(context=context)

    bound_logger.debug("Condition evaluated")


def log_state_transition(
    logger: FilteringBoundLogger,
    job_id: str,
    from_state: str,
    to_state: str,
    trigger: str,
    context: Optional[dict[str, Any]] = None
) -> None:
    """Record a monitoring job moving from ``from_state`` to ``to_state``."""
    bound_logger = logger.bind(
        job_id=job_id,
        from_state=from_state,
        to_state=to_state,
        trigger=trigger,
    )

    if context:
        bound_logger = bound_logger.bind(context=context)

    bound_logger.info("State transition")
