"""Real-time alert dispatch for high-risk audit events.

The store calls the dispatcher synchronously after each successful
append. Listener failures are logged and never fail the append.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Callable

from packages.audit_engine.models import AuditEvent, RiskLevel

logger = logging.getLogger(__name__)


class AlertListener(ABC):
    """Observer notified of committed events at or above the alert threshold."""

    @abstractmethod
    def notify(self, event: AuditEvent, risk_level: RiskLevel) -> None:
        """Deliver an alert. Delivery and display are the listener's concern."""
        pass


class LoggingAlertListener(AlertListener):
    """Writes alerts to the application log."""

    def __init__(self, log: logging.Logger | None = None):
        self.log = log or logger

    def notify(self, event: AuditEvent, risk_level: RiskLevel) -> None:
        self.log.warning(
            "HIGH RISK AUDIT EVENT: seq=%d type=%s result=%s risk=%s",
            event.sequence_number,
            event.event_type.value,
            event.result.value,
            risk_level.value,
        )


class CallbackAlertListener(AlertListener):
    """Adapts a plain callable to the listener interface."""

    def __init__(self, callback: Callable[[AuditEvent, RiskLevel], None]):
        self.callback = callback

    def notify(self, event: AuditEvent, risk_level: RiskLevel) -> None:
        self.callback(event, risk_level)


class AlertDispatcher:
    """Fans committed high-risk events out to registered listeners."""

    def __init__(
        self,
        listeners: list[AlertListener] | None = None,
        threshold: RiskLevel = RiskLevel.HIGH,
        enabled: bool = True,
    ):
        self._listeners: list[AlertListener] = list(listeners or [])
        self.threshold = threshold
        self.enabled = enabled

    def add_listener(self, listener: AlertListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: AlertListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def listeners(self) -> list[AlertListener]:
        return list(self._listeners)

    def should_alert(self, event: AuditEvent) -> bool:
        return self.enabled and event.risk_level.is_at_least(self.threshold)

    def dispatch(self, event: AuditEvent) -> int:
        """Notify listeners about an event if it meets the threshold.

        Returns:
            Number of listeners that accepted the alert
        """
        if not self.should_alert(event):
            return 0

        delivered = 0
        for listener in list(self._listeners):
            try:
                listener.notify(event, event.risk_level)
                delivered += 1
            except Exception:
                logger.warning(
                    "Alert listener %s failed for seq=%d",
                    type(listener).__name__,
                    event.sequence_number,
                    exc_info=True,
                )
        return delivered
