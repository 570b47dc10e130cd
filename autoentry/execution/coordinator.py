"""
Order execution coordinator.

``execute_strategy`` is the only path that places entry orders, whether it
is called by a user or by the monitoring scheduler. At most one order is
ever placed per analysis: the order lock on the analysis row is taken by a
conditional update, and any caller that finds an active order or a fresh
lock gets ``orders_already_placed`` back.
"""

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Union

import structlog
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from autoentry.broker.base import BrokerClient, raise_for_response
from autoentry.config.defaults import ExecutionParams
from autoentry.data.models import Action, Strategy
from autoentry.data.strategy_normalizer import StrategyNormalizer
from autoentry.engine.conditions import ConditionEngine
from autoentry.errors import (
    BrokerAuthError,
    BrokerError,
    BrokerRateLimitError,
    BrokerTimeoutError,
    ConcurrencyConflictError,
    LockReleaseError,
    MarketDataUnavailableError,
    PersistenceError,
    RetryExhaustedError,
)
from autoentry.market.accessor import MarketDataAccessor
from autoentry.persistence.analysis_store import (
    Analysis,
    AnalysisStore,
    OrderRecord,
    OrderStatus,
)
from autoentry.utils.time import now_utc

from .brackets import BracketManager
from .payload import build_entry_payload, correlation_tag, exit_transaction_type

logger = structlog.get_logger(__name__)

TRANSIENT_BROKER_ERRORS = (BrokerTimeoutError, BrokerRateLimitError)

# broker order states -> (record status, entry filled)
BROKER_ORDER_STATUSES = {
    "open": (OrderStatus.ACTIVE, False),
    "pending": (OrderStatus.ACTIVE, False),
    "trigger pending": (OrderStatus.ACTIVE, False),
    "active": (OrderStatus.ACTIVE, False),
    "partially_filled": (OrderStatus.PARTIALLY_FILLED, True),
    "complete": (OrderStatus.ACTIVE, True),
    "filled": (OrderStatus.ACTIVE, True),
    "cancelled": (OrderStatus.CANCELLED, False),
    "canceled": (OrderStatus.CANCELLED, False),
    "rejected": (OrderStatus.FAILED, False),
    "failed": (OrderStatus.FAILED, False),
}


@dataclass
class ExecutionResult:
    """Outcome of one execution request."""
    success: bool
    error: Optional[str] = None
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    retryable: bool = False
    should_monitor: bool = False

    @classmethod
    def failed(cls, error: str, message: str, **kwargs) -> "ExecutionResult":
        return cls(success=False, error=error, message=message, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "error": self.error,
            "message": self.message,
            "data": self.data,
            "retryable": self.retryable,
            "should_monitor": self.should_monitor,
        }


class _LockOutcome:
    """Result code written back to the analysis when the lock is released."""

    def __init__(self):
        self.result = "error"
        # set once the lock was released with the order record, or must stay held
        self.settled = False


class OrderExecutionCoordinator:
    """Validates, checks triggers and places the entry order for one strategy."""

    def __init__(
        self,
        analysis_store: AnalysisStore,
        broker: BrokerClient,
        market_data: MarketDataAccessor,
        bracket_manager: Optional[BracketManager] = None,
        normalizer: Optional[StrategyNormalizer] = None,
        engine_factory: Optional[Callable[[], ConditionEngine]] = None,
        params: Optional[ExecutionParams] = None,
        stale_lock_seconds: float = 300,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.analysis_store = analysis_store
        self.broker = broker
        self.market_data = market_data
        self.bracket_manager = bracket_manager
        self.normalizer = normalizer or StrategyNormalizer()
        self.engine_factory = engine_factory or ConditionEngine
        self.params = params or ExecutionParams()
        self.stale_lock_seconds = stale_lock_seconds
        self.clock = clock or now_utc
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="broker")

    def execute_strategy(
        self,
        analysis_id: str,
        strategy_id: str,
        user_id: str,
        *,
        custom_quantity: Optional[Any] = None,
        bypass_triggers: bool = False,
        strategy: Optional[Strategy] = None,
    ) -> ExecutionResult:
        """
        Place the entry order for ``strategy_id`` of ``analysis_id``.

        Args:
            analysis_id: Owning analysis
            strategy_id: Strategy to execute
            user_id: Requesting user
            custom_quantity: Overrides the strategy's suggested quantity
            bypass_triggers: Skip the trigger check; the caller already ran it
            strategy: Already normalized strategy, skips validation

        Returns:
            ExecutionResult; failures carry one of the documented error codes
        """
        log = logger.bind(analysis_id=analysis_id, strategy_id=strategy_id, user_id=user_id)

        analysis = self.analysis_store.get(analysis_id)
        if analysis is None:
            return ExecutionResult.failed("analysis_not_found", f"Analysis {analysis_id} not found")
        raw_strategy = analysis.get_strategy(strategy_id)
        if raw_strategy is None and strategy is None:
            return ExecutionResult.failed("strategy_not_found",
                                          f"Strategy {strategy_id} not found in analysis")

        try:
            refusal = self.analysis_store.update(analysis_id, self._acquire_lock)
        except ConcurrencyConflictError as e:
            log.warning("Order lock contention", error=str(e))
            return ExecutionResult.failed("order_execution_failed",
                                          "Analysis is being updated concurrently",
                                          retryable=True)
        if refusal is not None:
            log.info("Execution refused", reason=refusal)
            return ExecutionResult.failed("orders_already_placed", refusal)

        log.info("Order lock acquired", bypass_triggers=bypass_triggers)
        with self._order_lock(analysis_id, strategy_id) as outcome:
            result = self._execute_locked(analysis, raw_strategy, strategy, custom_quantity,
                                          bypass_triggers, outcome, log)
            outcome.result = "success" if result.success else result.error
        return result

    def _acquire_lock(self, analysis: Analysis) -> Optional[str]:
        now = self.clock()
        if analysis.has_active_order:
            return "An order has already been placed for this analysis"
        if analysis.lock_is_fresh(self.stale_lock_seconds, now):
            return "An order is already being processed for this analysis"
        analysis.order_processing = True
        analysis.order_processing_started_at = now
        return None

    @contextmanager
    def _order_lock(self, analysis_id: str, strategy_id: str):
        outcome = _LockOutcome()
        try:
            yield outcome
        finally:
            if not outcome.settled:
                self._release_lock(analysis_id, strategy_id, outcome.result)

    def _release_lock(self, analysis_id: str, strategy_id: str, result: str) -> None:
        def _release(analysis: Analysis) -> None:
            analysis.order_processing = False
            analysis.order_processing_started_at = None
            analysis.last_order_processing_result = result

        try:
            self.analysis_store.update(analysis_id, _release)
        except (ConcurrencyConflictError, PersistenceError) as e:
            logger.error("Order lock release failed", analysis_id=analysis_id,
                         strategy_id=strategy_id, error=str(e))
            raise LockReleaseError(f"Could not release order lock on {analysis_id}",
                                   analysis_id=analysis_id) from e
        logger.debug("Order lock released", analysis_id=analysis_id,
                     strategy_id=strategy_id, result=result)

    def _execute_locked(self, analysis: Analysis, raw_strategy: Optional[dict],
                        strategy: Optional[Strategy], custom_quantity: Optional[Any],
                        bypass_triggers: bool, lock: _LockOutcome, log) -> ExecutionResult:
        if strategy is None:
            normalized = self.normalizer.normalize_strategy(raw_strategy)
            if not normalized.success:
                log.warning("Strategy validation failed", error_code=normalized.error_code,
                            details=normalized.details)
                return ExecutionResult.failed(normalized.error_code, normalized.error_msg,
                                              data={"details": normalized.details})
            strategy = normalized.strategy

        if not self.broker.is_connected():
            return ExecutionResult.failed("broker_not_connected",
                                          "Broker session expired, reconnect to place orders")

        if not bypass_triggers:
            refused = self._check_triggers(analysis, strategy, log)
            if refused is not None:
                return refused

        return self._place(analysis, strategy, custom_quantity, lock, log)

    def _check_triggers(self, analysis: Analysis, strategy: Strategy,
                        log) -> Optional[ExecutionResult]:
        try:
            snapshot = self.market_data.get_snapshot(
                analysis.instrument, strategy.required_timeframes, strategy.references,
            )
        except BrokerAuthError:
            return ExecutionResult.failed("broker_not_connected",
                                          "Broker session expired, reconnect to place orders")
        except MarketDataUnavailableError as e:
            log.warning("Market data unavailable for trigger check", error=str(e))
            return ExecutionResult.failed("order_execution_failed",
                                          f"Market data unavailable: {e}", retryable=True)

        # one-shot check with its own session
        engine = self.engine_factory()
        outcome = engine.check_triggers(analysis.id, strategy, snapshot,
                                        position_open=analysis.has_open_position)
        engine.discard_session(analysis.id, strategy.id)

        if outcome.action == Action.EXECUTE_ORDER:
            return None
        if outcome.action in (Action.CANCEL_ENTRY, Action.CLOSE_POSITION):
            return ExecutionResult.failed("invalidated", outcome.reason,
                                          data={"invalidation": outcome.invalidation})
        return ExecutionResult.failed(
            "triggers_not_met",
            outcome.reason,
            data={"failed_triggers": [t.to_dict() for t in outcome.failed_triggers],
                  "warnings": outcome.warnings},
            should_monitor=outcome.action == Action.CONTINUE_MONITORING,
        )

    def _place(self, analysis: Analysis, strategy: Strategy, custom_quantity: Optional[Any],
               lock: _LockOutcome, log) -> ExecutionResult:
        tag = correlation_tag(strategy.id)
        payload = build_entry_payload(strategy, analysis.instrument, analysis.analysis_type,
                                      tag, custom_quantity)
        try:
            data = self.submit_order(payload, analysis.id, strategy.id)
        except BrokerAuthError:
            return ExecutionResult.failed("broker_not_connected",
                                          "Broker session expired, reconnect to place orders")
        except RetryExhaustedError as e:
            return ExecutionResult.failed("order_execution_failed", str(e), retryable=True)
        except BrokerError as e:
            log.error("Order rejected", error=str(e), error_code=e.error_code)
            return ExecutionResult.failed("order_execution_failed", str(e),
                                          data={"error_code": e.error_code})

        order_id = data.get("order_id")
        record = OrderRecord(
            order_ids=[order_id] if order_id else [],
            correlation_tag=tag,
            status=OrderStatus.ACTIVE,
            quantity=payload["quantity"],
            price=payload["price"],
            transaction_type=payload["transaction_type"],
            placed_at=self.clock(),
            strategy_id=strategy.id,
            order_type="BRACKET" if self.bracket_manager is not None else "SINGLE",
        )
        def _commit(a: Analysis) -> None:
            a.placed_orders.append(record)
            a.order_processing = False
            a.order_processing_started_at = None
            a.last_order_processing_result = "success"

        try:
            self.analysis_store.update(analysis.id, _commit)
        except (ConcurrencyConflictError, PersistenceError) as e:
            # the lock stays held so no caller places a second order for this analysis
            lock.settled = True
            cancelled = self._cancel_unrecorded(tag, log)
            log.error("Order placed but not recorded", order_id=order_id, correlation_tag=tag,
                      cancelled=cancelled, error=str(e))
            return ExecutionResult.failed(
                "order_execution_failed",
                f"Order {order_id} was placed but could not be recorded: {e}",
                data={"order_id": order_id, "correlation_tag": tag, "cancelled": cancelled},
            )
        lock.settled = True

        if self.bracket_manager is not None and order_id:
            self.bracket_manager.register(
                order_id=order_id,
                analysis_id=analysis.id,
                strategy_id=strategy.id,
                correlation_tag=tag,
                instrument=analysis.instrument,
                quantity=payload["quantity"],
                stop_loss=strategy.stop_loss,
                target=strategy.target,
                exit_transaction_type=exit_transaction_type(strategy.direction),
                product=payload["product"],
            )

        log.info("Entry order placed", order_id=order_id, correlation_tag=tag,
                 quantity=payload["quantity"], order_type=payload["order_type"])
        return ExecutionResult(
            success=True,
            message="Order placed",
            data={"order_id": order_id, "correlation_tag": tag, "order": record.to_dict()},
        )

    def _cancel_unrecorded(self, tag: str, log) -> bool:
        try:
            raise_for_response(self.broker.cancel_orders(tag), "cancel_orders")
        except BrokerError as e:
            log.error("Unrecorded order could not be cancelled", correlation_tag=tag,
                      error=str(e))
            return False
        return True

    def submit_order(self, payload: dict[str, Any], analysis_id: str,
                     strategy_id: str) -> dict[str, Any]:
        """
        Submit ``payload`` with bounded exponential backoff on transient failures.

        Raises:
            RetryExhaustedError: timeouts or rate limits outlasted every attempt
            BrokerAuthError, BrokerError: non-transient broker failures
        """
        def _log_retry(state: RetryCallState) -> None:
            logger.warning("Broker call failed, retrying", analysis_id=analysis_id,
                           strategy_id=strategy_id, attempt=state.attempt_number,
                           error=str(state.outcome.exception()))

        retryer = Retrying(
            stop=stop_after_attempt(self.params.broker_retry_attempts),
            wait=wait_exponential(multiplier=self.params.backoff_min_seconds,
                                  min=self.params.backoff_min_seconds,
                                  max=self.params.backoff_max_seconds),
            retry=retry_if_exception_type(TRANSIENT_BROKER_ERRORS),
            before_sleep=_log_retry,
            reraise=True,
        )
        try:
            return retryer(self._place_once, payload) or {}
        except TRANSIENT_BROKER_ERRORS as e:
            logger.error("Broker retries exhausted", analysis_id=analysis_id,
                         strategy_id=strategy_id, attempts=self.params.broker_retry_attempts,
                         error=str(e))
            raise RetryExhaustedError(
                f"Broker still failing after {self.params.broker_retry_attempts} attempts: {e}",
                analysis_id=analysis_id, strategy_id=strategy_id, last_error=e,
                retry_count=self.params.broker_retry_attempts,
                max_retries=self.params.broker_retry_attempts,
            ) from e

    def _place_once(self, payload: dict[str, Any]) -> dict[str, Any]:
        future = self._executor.submit(self.broker.place_order, payload)
        try:
            response = future.result(timeout=self.params.broker_timeout_seconds)
        except FutureTimeout:
            raise BrokerTimeoutError(
                f"place_order timed out after {self.params.broker_timeout_seconds}s",
                operation="place_order", timeout_seconds=self.params.broker_timeout_seconds,
            ) from None
        return raise_for_response(response, "place_order")

    def update_order_status(self, analysis_id: str, tag: str,
                            status: Union[OrderStatus, str]) -> bool:
        """
        Apply a broker-reported status to the order record carrying ``tag``.

        Returns:
            False when the analysis has no order with that tag
        """
        if isinstance(status, OrderStatus):
            record_status, filled = status, None
        else:
            key = str(status).strip().lower()
            if key not in BROKER_ORDER_STATUSES:
                raise ValueError(f"Unknown order status: {status!r}")
            record_status, filled = BROKER_ORDER_STATUSES[key]

        def _apply(analysis: Analysis) -> bool:
            record = analysis.find_order(tag)
            if record is None:
                return False
            record.status = record_status
            if filled:
                record.entry_filled = True
            return True

        updated = self.analysis_store.update(analysis_id, _apply)
        logger.info("Order status updated" if updated else "Order status for unknown tag",
                    analysis_id=analysis_id, correlation_tag=tag, status=record_status.value)
        return updated

    def cancel_orders(self, analysis_id: str, tag: str) -> ExecutionResult:
        """Cancel every broker order carrying ``tag`` and mark the record cancelled."""
        try:
            data = raise_for_response(self.broker.cancel_orders(tag), "cancel_orders")
        except BrokerAuthError:
            return ExecutionResult.failed("broker_not_connected",
                                          "Broker session expired, reconnect to cancel orders")
        except BrokerError as e:
            logger.error("Order cancellation failed", analysis_id=analysis_id,
                         correlation_tag=tag, error=str(e))
            return ExecutionResult.failed("order_execution_failed", str(e),
                                          retryable=isinstance(e, TRANSIENT_BROKER_ERRORS))

        self.update_order_status(analysis_id, tag, OrderStatus.CANCELLED)
        return ExecutionResult(success=True, message="Orders cancelled", data=data or {})

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
