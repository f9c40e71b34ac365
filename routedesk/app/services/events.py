"""
Domain event channel.

The core emits events after each committed mutation; live UI refresh and push
delivery subscribe externally (Redis pub/sub) or in-process.
Publishing is best effort: a failed subscriber or an unreachable Redis is
logged and never undoes the committed change.
"""

import enum
import logging
from collections import defaultdict
from datetime import datetime, timezone
from pydantic import BaseModel, Field
from redis.exceptions import RedisError
from typing import Any, Awaitable, Callable, Dict, List

import routedesk.app.core.redis_client as redis_client_module
from routedesk.app.core.config import settings

logger = logging.getLogger(__name__)


class EventType(str, enum.Enum):
    ROUTE_CHANGED = "RouteChanged"
    NOTIFICATION_CREATED = "NotificationCreated"
    NOTIFICATION_ACKNOWLEDGED = "NotificationAcknowledged"
    EARNINGS_RECOMPUTED = "EarningsRecomputed"


class DomainEvent(BaseModel):
    type: EventType
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


EventHandler = Callable[[DomainEvent], Awaitable[None]]


class EventBus:
    """Publishes domain events to Redis and to in-process subscribers."""

    def __init__(self, channel: str = None):
        self.channel = channel or settings.event_channel
        self._subscribers: Dict[EventType, List[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        self._subscribers[event_type].append(handler)

    def clear_subscribers(self) -> None:
        self._subscribers.clear()

    async def publish(self, event: DomainEvent) -> None:
        # Resolved at call time so the client can be swapped (tests, reconnects)
        client = redis_client_module.redis_client
        try:
            await client.publish(self.channel, event.model_dump_json())
        except RedisError:
            logger.warning("Event not published to Redis", extra={"event_type": event.type.value}, exc_info=True)

        for handler in list(self._subscribers[event.type]):
            try:
                await handler(event)
            except Exception:
                logger.exception("Event subscriber failed", extra={"event_type": event.type.value})

    async def publish_all(self, events: List[DomainEvent]) -> None:
        for event in events:
            await self.publish(event)


def route_changed(route_id: int, revision: int, change_count: int) -> DomainEvent:
    return DomainEvent(
        type=EventType.ROUTE_CHANGED,
        payload={"route_id": route_id, "revision": revision, "change_count": change_count},
    )


def notification_created(notification_id: int, route_id: int, driver_id: int, merged: bool) -> DomainEvent:
    return DomainEvent(
        type=EventType.NOTIFICATION_CREATED,
        payload={
            "notification_id": notification_id,
            "route_id": route_id,
            "driver_id": driver_id,
            "merged": merged,
        },
    )


def notification_acknowledged(notification_id: int, route_id: int, driver_id: int) -> DomainEvent:
    return DomainEvent(
        type=EventType.NOTIFICATION_ACKNOWLEDGED,
        payload={"notification_id": notification_id, "route_id": route_id, "driver_id": driver_id},
    )


def earnings_recomputed(route_id: int, driver_id: int, total_earnings) -> DomainEvent:
    return DomainEvent(
        type=EventType.EARNINGS_RECOMPUTED,
        payload={"route_id": route_id, "driver_id": driver_id, "total_earnings": str(total_earnings)},
    )


# Process-wide bus
event_bus = EventBus()
