"""In-memory result sink for tests and embedding."""

import threading
from typing import Optional

from .base import DeliveryResult, DeliveryStatus, Notification, NotificationStatus, ResultSink


class MemoryResultSink(ResultSink):
    """Collects notifications in a list."""

    def __init__(self, name: str = "memory", **kwargs):
        kwargs.setdefault("retry_delay", 0)
        super().__init__(name, **kwargs)
        self.notifications: list[Notification] = []
        self._lock = threading.Lock()

    def deliver(self, notifications: list[Notification]) -> list[DeliveryResult]:
        with self._lock:
            self.notifications.extend(notifications)
        return [DeliveryResult(status=DeliveryStatus.SUCCESS, message="Stored in memory")
                for _ in notifications]

    def statuses(self, analysis_id: Optional[str] = None) -> list[NotificationStatus]:
        with self._lock:
            return [n.status for n in self.notifications
                    if analysis_id is None or n.analysis_id == analysis_id]
