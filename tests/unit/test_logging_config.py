"""Tests for the structured logging helpers and the audit trail."""

from unittest.mock import ANY, Mock, patch

import structlog

from autoentry.logging.config import (
    configure_logging,
    get_engine_logger,
    get_state_logger,
    log_condition_decision,
    log_state_transition,
)


class TestConfigureLogging:
    """Test structlog configuration."""

    def teardown_method(self):
        structlog.reset_defaults()

    def test_configures_structlog(self):
        configure_logging(level="DEBUG", format_json=True)
        assert structlog.is_configured()

    def test_audit_loggers_are_usable(self):
        configure_logging(level="INFO")
        get_engine_logger(__name__).info("engine ready", analysis_id="A1")
        get_state_logger(__name__).info("scheduler ready", job_id="monitor_A1_S1")


class TestAuditHelpers:
    """Condition and state-transition records carry their identifiers."""

    def test_condition_decision(self):
        logger = Mock()

        log_condition_decision(logger, "T1", True, "A1", "S1", "close > 100")

        logger.bind.assert_called_once_with(
            condition_id="T1", condition_result="PASS", analysis_id="A1",
            strategy_id="S1", reason="close > 100",
        )
        logger.bind.return_value.debug.assert_called_once_with("Condition evaluated")

    def test_condition_decision_with_context(self):
        logger = Mock()

        log_condition_decision(logger, "T1", False, "A1", "S1", "close > 100",
                               context={"bars": 3})

        bound = logger.bind.return_value
        assert logger.bind.call_args.kwargs["condition_result"] == "FAIL"
        bound.bind.assert_called_once_with(context={"bars": 3})
        bound.bind.return_value.debug.assert_called_once_with("Condition evaluated")

    def test_state_transition(self):
        logger = Mock()

        log_state_transition(logger, "monitor_A1_S1", "active", "paused", "broker_session_expired")

        logger.bind.assert_called_once_with(
            job_id="monitor_A1_S1", from_state="active", to_state="paused",
            trigger="broker_session_expired",
        )
        logger.bind.return_value.info.assert_called_once_with("State transition")

    def test_scheduler_logs_transitions(self, make_scheduler, analysis):
        scheduler = make_scheduler()

        with patch("autoentry.monitoring.scheduler.log_state_transition") as transition:
            scheduler.start("A1", "S1", "U1")
            scheduler.stop("A1", "S1", reason="user_request")

        calls = [c.args[1:5] for c in transition.call_args_list]
        assert calls == [
            ("monitor_A1_S1", "scheduled", "active", "registered"),
            ("monitor_A1_S1", "active", "cancelled", "user_request"),
        ]
        transition.assert_called_with(ANY, "monitor_A1_S1", "active", "cancelled",
                                      "user_request", context=ANY)
