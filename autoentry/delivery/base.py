"""Base classes for delivering terminal outcomes to the result sink."""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

import structlog
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from autoentry.utils.time import now_utc


class NotificationStatus(str, Enum):
    """Outcomes users are told about."""
    ORDER_PLACED = "order_placed"
    INVALIDATED = "invalidated"
    EXPIRED = "expired"
    SESSION_EXPIRED = "session_expired"
    ORDER_FAILED = "order_failed"


@dataclass(frozen=True)
class Notification:
    """Terminal monitoring or execution outcome for one strategy."""
    analysis_id: str
    user_id: str
    strategy_id: str
    status: NotificationStatus
    data: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=now_utc)

    def to_dict(self) -> dict[str, Any]:
        return {
            "analysis_id": self.analysis_id,
            "user_id": self.user_id,
            "strategy_id": self.strategy_id,
            "status": self.status.value,
            "data": self.data,
            "created_at": self.created_at.isoformat(),
        }


class DeliveryStatus(Enum):
    """Notification delivery status."""
    SUCCESS = "success"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


@dataclass
class DeliveryResult:
    """Result of a notification delivery attempt."""
    status: DeliveryStatus
    message: Optional[str] = None
    attempt_count: int = 1
    delivery_time_ms: Optional[int] = None
    error: Optional[Exception] = None


class NotificationDeliveryError(Exception):
    """Base exception for notification delivery errors."""


class NotificationDeliveryRetryableError(NotificationDeliveryError):
    """Retryable notification delivery error."""


class NotificationDeliveryPermanentError(NotificationDeliveryError):
    """Permanent delivery error that should not be retried."""


class ResultSink(ABC):
    """Base class for notification sinks."""

    def __init__(self, name: str, max_retries: int = 2, retry_delay: float = 0.5):
        self.name = name
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.logger = structlog.get_logger(f"autoentry.delivery.{name}")
        self._delivery_count = 0
        self._error_count = 0

    @abstractmethod
    def deliver(self, notifications: list[Notification]) -> list[DeliveryResult]:
        """
        Deliver notifications to the configured destination.

        Returns:
            One delivery result per notification
        """

    def health_check(self) -> bool:
        """Check if the sink can accept notifications."""
        return True

    def notify(self, notification: Notification) -> DeliveryResult:
        """Deliver a single notification with the sink's retry policy."""
        return self.deliver_with_retry([notification], self.max_retries, self.retry_delay)[0]

    def deliver_with_retry(
        self,
        notifications: list[Notification],
        max_retries: int = 3,
        retry_delay: float = 1
    ) -> list[DeliveryResult]:
        """
        Deliver notifications one by one, retrying retryable failures.

        Permanent errors fail the notification at once. A notification still
        failing after ``max_retries`` retries is dead-lettered.

        Args:
            notifications: Notifications to deliver
            max_retries: Retries after the first attempt
            retry_delay: Fixed delay between attempts in seconds

        Returns:
            One delivery result per notification
        """
        return [self._deliver_one(n, max_retries, retry_delay) for n in notifications]

    def _deliver_one(self, notification: Notification, max_retries: int,
                     retry_delay: float) -> DeliveryResult:
        attempts = 0

        def _attempt() -> DeliveryResult:
            nonlocal attempts
            attempts += 1
            delivered = self.deliver([notification])
            if delivered and delivered[0].status == DeliveryStatus.SUCCESS:
                return delivered[0]
            error = delivered[0].error if delivered else None
            if isinstance(error, NotificationDeliveryError):
                raise error
            raise NotificationDeliveryRetryableError(str(error or "Delivery not acknowledged"))

        def _log_retry(state: RetryCallState) -> None:
            self.logger.warning("Delivery attempt failed, retrying", sink=self.name,
                                attempt=state.attempt_number,
                                analysis_id=notification.analysis_id,
                                strategy_id=notification.strategy_id,
                                error=str(state.outcome.exception()))

        retryer = Retrying(
            stop=stop_after_attempt(max_retries + 1),
            wait=wait_fixed(retry_delay),
            retry=retry_if_exception_type(NotificationDeliveryRetryableError),
            before_sleep=_log_retry,
            reraise=True,
        )
        started = time.monotonic()
        try:
            result = retryer(_attempt)
        except NotificationDeliveryPermanentError as e:
            self._error_count += 1
            return DeliveryResult(status=DeliveryStatus.FAILED, message=f"Permanent error: {e}",
                                  attempt_count=attempts, error=e)
        except NotificationDeliveryRetryableError as e:
            self._error_count += 1
            self.logger.error("Notification dead-lettered", sink=self.name,
                              analysis_id=notification.analysis_id,
                              strategy_id=notification.strategy_id,
                              status=notification.status.value, attempts=attempts, error=str(e))
            return DeliveryResult(status=DeliveryStatus.DEAD_LETTER,
                                  message=f"Max retries exceeded: {e}",
                                  attempt_count=attempts, error=e)

        self._delivery_count += 1
        result.attempt_count = attempts
        result.delivery_time_ms = int((time.monotonic() - started) * 1000)
        return result

    def get_stats(self) -> dict[str, Any]:
        """Get delivery statistics."""
        total = self._delivery_count + self._error_count
        return {
            "name": self.name,
            "delivery_count": self._delivery_count,
            "error_count": self._error_count,
            "success_rate": self._delivery_count / total if total > 0 else 0.0,
        }
