"""
Alerting sinks for SystemAlerts raised by the invariant checker.

Alerts are handed over by value; a sink never mutates ledger state.
"""

import logging
from abc import ABC, abstractmethod

from ledger.models import SystemAlert
from shared.redis_client import ALERTS_STREAM, add_to_stream

logger = logging.getLogger(__name__)


class AlertSink(ABC):
    @abstractmethod
    async def emit(self, alerts: list[SystemAlert]) -> None:
        """Deliver alerts. Raises on delivery failure."""


class InMemoryAlertSink(AlertSink):
    """Collects alerts in a list (tests, LEDGER_BACKEND=memory deployments)."""

    def __init__(self):
        self.alerts: list[SystemAlert] = []

    async def emit(self, alerts: list[SystemAlert]) -> None:
        self.alerts.extend(alert.model_copy(deep=True) for alert in alerts)


class RedisStreamAlertSink(AlertSink):
    """Appends each alert as JSON to a Redis Stream (default ``system_alerts_stream``)."""

    def __init__(self, client, stream: str = ALERTS_STREAM):
        self._client = client
        self._stream = stream

    async def emit(self, alerts: list[SystemAlert]) -> None:
        for alert in alerts:
            message_id = await add_to_stream(
                self._client, self._stream, alert.model_dump(mode="json")
            )
            logger.debug(
                f"Alert {alert.alert_id} ({alert.invariant}) published as {message_id}",
                extra={"invariant": alert.invariant, "severity": alert.severity.value},
            )
