"""
Notification sink - the delivery side of the notification outbox

The real-time fan-out layer is outside the settlement core. The outbox relay hands
each pending row to an injected sink; raising from ``deliver`` marks the attempt as failed.
"""

import logging
from typing import Any, Dict, List, Tuple

logger = logging.getLogger(__name__)


class NotificationSink:
    """Interface for outbox delivery"""

    async def deliver(self, event_type: str, trade_id: int, payload: Dict[str, Any]):
        raise NotImplementedError


class LoggingNotificationSink(NotificationSink):
    """Default sink: writes each notification to the application log"""

    async def deliver(self, event_type: str, trade_id: int, payload: Dict[str, Any]):
        logger.info(f"📣 NOTIFY: {event_type} trade {trade_id} v{payload.get('version')} status={payload.get('status')}")


class CollectingNotificationSink(NotificationSink):
    """Keeps delivered notifications in memory, for local runs and tests"""

    def __init__(self):
        self.delivered: List[Tuple[str, int, Dict[str, Any]]] = []

    async def deliver(self, event_type: str, trade_id: int, payload: Dict[str, Any]):
        self.delivered.append((event_type, trade_id, dict(payload)))
