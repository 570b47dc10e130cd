"""Standard output result sink."""

import json
import sys

from .base import DeliveryResult, DeliveryStatus, Notification, ResultSink


class StdoutResultSink(ResultSink):
    """Prints notifications, one JSON object or one readable line each."""

    def __init__(self, name: str = "stdout", pretty: bool = False, **kwargs):
        super().__init__(name, **kwargs)
        self.pretty = pretty

    def deliver(self, notifications: list[Notification]) -> list[DeliveryResult]:
        results = []

        for notification in notifications:
            try:
                print(self._format(notification), file=sys.stdout, flush=True)
                results.append(DeliveryResult(
                    status=DeliveryStatus.SUCCESS,
                    message="Printed to stdout"
                ))
            except (OSError, ValueError) as e:
                self.logger.error(
                    "Failed to print notification",
                    sink=self.name,
                    analysis_id=notification.analysis_id,
                    error=str(e)
                )
                results.append(DeliveryResult(
                    status=DeliveryStatus.FAILED,
                    message=f"Stdout error: {e}",
                    error=e
                ))

        return results

    def _format(self, notification: Notification) -> str:
        if self.pretty:
            return (f"[{notification.created_at.isoformat()}] {notification.status.value.upper()}: "
                    f"analysis={notification.analysis_id} strategy={notification.strategy_id}")
        return json.dumps(notification.to_dict(), default=str)

    def health_check(self) -> bool:
        try:
            return sys.stdout.writable()
        except (OSError, ValueError):
            return False
