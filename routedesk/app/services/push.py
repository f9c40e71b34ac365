"""
Push transport adapter.

Delivery to the driver's device is fire-and-forget; acknowledgment, not
delivery, closes a notification.
"""

import logging
from typing import Protocol

from routedesk.app.services.events import DomainEvent, EventBus, EventType

logger = logging.getLogger(__name__)


class PushTransport(Protocol):
    async def send(self, driver_id: int, notification_id: int) -> None:
        ...


class LoggingPushTransport:
    """Default transport: records the intent; a real provider replaces it."""

    async def send(self, driver_id: int, notification_id: int) -> None:
        logger.info("Push queued", extra={"driver_id": driver_id, "notification_id": notification_id})


def register_push_transport(bus: EventBus, transport: PushTransport) -> None:
    """Send a push for every created or merged route change notification."""

    async def on_notification(event: DomainEvent) -> None:
        await transport.send(event.payload["driver_id"], event.payload["notification_id"])

    bus.subscribe(EventType.NOTIFICATION_CREATED, on_notification)
