"""JSON-lines file result sink."""

import fcntl
import json
from pathlib import Path

from .base import (
    DeliveryResult,
    DeliveryStatus,
    Notification,
    NotificationDeliveryRetryableError,
    ResultSink,
)


class FileResultSink(ResultSink):
    """Appends each notification as one JSON line."""

    def __init__(self, output_path: str, name: str = "file", **kwargs):
        super().__init__(name, **kwargs)
        self.output_path = Path(output_path)
        self.output_path.parent.mkdir(parents=True, exist_ok=True)

    def deliver(self, notifications: list[Notification]) -> list[DeliveryResult]:
        try:
            with open(self.output_path, "a") as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                for notification in notifications:
                    json.dump(notification.to_dict(), f, default=str)
                    f.write("\n")
        except OSError as e:
            # file system errors are retryable
            self.logger.warning(
                "Notification file error",
                sink=self.name,
                output_path=str(self.output_path),
                error=str(e)
            )
            raise NotificationDeliveryRetryableError(str(e)) from e

        for notification in notifications:
            self.logger.info(
                "Notification written to file",
                sink=self.name,
                analysis_id=notification.analysis_id,
                status=notification.status.value,
                output_path=str(self.output_path)
            )
        return [DeliveryResult(status=DeliveryStatus.SUCCESS,
                               message=f"Written to {self.output_path}")
                for _ in notifications]

    def health_check(self) -> bool:
        try:
            test_file = self.output_path.parent / ".health_check_test"
            test_file.write_text("test")
            test_file.unlink()
            return True
        except OSError as e:
            self.logger.warning("Health check failed", sink=self.name, error=str(e))
            return False
