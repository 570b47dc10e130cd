"""
Result sinks receiving terminal outcomes for user notification.
"""
from .base import (
    DeliveryResult,
    DeliveryStatus,
    Notification,
    NotificationDeliveryError,
    NotificationDeliveryPermanentError,
    NotificationDeliveryRetryableError,
    NotificationStatus,
    ResultSink,
)
from .file_sink import FileResultSink
from .memory_sink import MemoryResultSink
from .stdout_sink import StdoutResultSink

__all__ = [
    "DeliveryResult",
    "DeliveryStatus",
    "Notification",
    "NotificationDeliveryError",
    "NotificationDeliveryPermanentError",
    "NotificationDeliveryRetryableError",
    "NotificationStatus",
    "ResultSink",
    "FileResultSink",
    "MemoryResultSink",
    "StdoutResultSink",
]
