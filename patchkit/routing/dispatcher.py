"""NotificationDispatcher: fans notifications out to every sink.

Notification delivery is fire-and-forget.  A sink failure is logged and
counted, and delivery continues with the next sink; ``notify`` never
raises, so an unreachable webhook can never abort a pipeline run.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from patchkit.models.notifications import Notification, Severity

if TYPE_CHECKING:
    from patchkit.routing.sinks import BaseSink

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Routes notifications to ALL registered sinks.

    Usage
    -----
    >>> dispatcher = NotificationDispatcher()
    >>> dispatcher.register_sink(local_file_sink)
    >>> dispatcher.notify("Upgrade complete", "v1.2.3 active", Severity.SUCCESS)
    """

    def __init__(self) -> None:
        self._sinks: list[BaseSink] = []
        self.failures = 0

    # ------------------------------------------------------------------
    # Sink management
    # ------------------------------------------------------------------

    def register_sink(self, sink: BaseSink) -> None:
        """Register a sink.  Duplicate registration of an instance is ignored."""
        if sink not in self._sinks:
            self._sinks.append(sink)
            logger.debug("Registered sink: %s", sink.sink_name)

    def unregister_sink(self, sink: BaseSink) -> None:
        if sink in self._sinks:
            self._sinks.remove(sink)

    @property
    def registered_sinks(self) -> list[BaseSink]:
        return list(self._sinks)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def dispatch(self, notification: Notification) -> list[str]:
        """Deliver to every sink; return the names that succeeded."""
        if not self._sinks:
            logger.debug("No sinks registered, notification %r dropped", notification.title)
            return []

        succeeded: list[str] = []
        for sink in self._sinks:
            try:
                sink.accept(notification)
                succeeded.append(sink.sink_name)
            except Exception as exc:  # noqa: BLE001
                self.failures += 1
                logger.error(
                    "Sink %s failed for notification %r: %s",
                    sink.sink_name, notification.title, exc,
                )
        return succeeded

    def notify(
        self,
        title: str,
        body: str = "",
        severity: Severity = Severity.INFO,
        *,
        run_id: str = "",
    ) -> list[str]:
        """Build and dispatch a notification in one call."""
        return self.dispatch(
            Notification(title=title, body=body, severity=severity, run_id=run_id)
        )
