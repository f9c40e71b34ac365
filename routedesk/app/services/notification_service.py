"""
Route Change Notification Service.

Keeps at most one pending (unacknowledged) notification per route and folds
every further dispatcher edit into it until the driver acknowledges.

Concurrency:
- Creation relies on the partial unique index: a concurrent insert for the
  same route fails with IntegrityError.
- Merging is a conditional update on `version`; zero affected rows means a
  concurrent writer won.
Both cases roll the session back and raise TransientStorageError. The caller
retries the whole operation (see core.reliability.retry_on_conflict); the
merge is idempotent so a retry never duplicates records.
"""

import enum
import logging
from datetime import datetime, timezone
from typing import Iterable, List, NamedTuple, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from routedesk.app.core.exceptions import InvalidStateError, NotFoundError, TransientStorageError
from routedesk.app.domain.routing.stop_diff import merge_change_sets
from routedesk.app.models.enums import NOTIFIABLE_ROUTE_STATUSES
from routedesk.app.models.notification import RouteChangeNotification
from routedesk.app.models.route import Route
from routedesk.app.schemas.stop import ChangeRecord, dump_changes, parse_changes
from routedesk.app.services.audit import AuditAction, log_event

logger = logging.getLogger(__name__)


class NotificationState(str, enum.Enum):
    """Notification state of a route as seen by the driver."""
    NONE = "none"
    PENDING = "pending"


class RecordedNotification(NamedTuple):
    notification: RouteChangeNotification
    merged: bool  # False when the row was created by this call


class RouteChangeNotificationService:

    @staticmethod
    async def get_pending_for_route(db: AsyncSession, route_id: int) -> Optional[RouteChangeNotification]:
        """Return the route's unacknowledged notification, if any."""
        result = await db.execute(
            select(RouteChangeNotification)
            .where(
                RouteChangeNotification.route_id == route_id,
                RouteChangeNotification.acknowledged == False
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def notification_state(db: AsyncSession, route_id: int) -> NotificationState:
        pending = await RouteChangeNotificationService.get_pending_for_route(db, route_id)
        return NotificationState.PENDING if pending else NotificationState.NONE

    @staticmethod
    async def list_pending_for_driver(db: AsyncSession, driver_id: int) -> List[RouteChangeNotification]:
        result = await db.execute(
            select(RouteChangeNotification)
            .where(
                RouteChangeNotification.driver_id == driver_id,
                RouteChangeNotification.acknowledged == False
            )
            .order_by(RouteChangeNotification.created_at, RouteChangeNotification.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    @staticmethod
    async def list_for_route(db: AsyncSession, route_id: int, limit: int = 50) -> List[RouteChangeNotification]:
        """Notification history for a route, newest first."""
        result = await db.execute(
            select(RouteChangeNotification)
            .where(RouteChangeNotification.route_id == route_id)
            .order_by(RouteChangeNotification.id.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    @staticmethod
    async def record_changes(
        db: AsyncSession,
        route: Route,
        changes: Iterable[ChangeRecord]
    ) -> Optional[RecordedNotification]:
        """
        Create or extend the pending notification for a route.

        Routes that are not out with a driver (draft, completed, unassigned)
        get no notification: there is nobody to tell. An empty change list is
        a no-op as well.

        Flushes only; the caller owns the transaction.

        Returns:
            The notification and whether it was merged, or None when skipped.

        Raises:
            TransientStorageError: Lost a race with a concurrent writer. The
                session has been rolled back.
        """
        changes = list(changes)
        if not changes:
            return None

        if route.status not in NOTIFIABLE_ROUTE_STATUSES or route.driver_id is None:
            logger.debug(
                "Route not notifiable, skipping notification",
                extra={"route_id": route.id, "status": route.status.value}
            )
            return None

        # Captured up front: a rollback expires the route instance
        route_id = route.id
        pending = await RouteChangeNotificationService.get_pending_for_route(db, route_id)

        # 1. No pending notification: create one
        if pending is None:
            notification = RouteChangeNotification(
                route_id=route_id,
                driver_id=route.driver_id,
                changes=dump_changes(sorted(changes, key=ChangeRecord.sort_key)),
                route_revision=route.revision,
                version=1,
                acknowledged=False,
            )
            db.add(notification)
            try:
                await db.flush()
            except IntegrityError:
                await db.rollback()
                logger.warning("Concurrent notification insert", extra={"route_id": route_id})
                raise TransientStorageError(
                    "Pending notification created concurrently",
                    details={"route_id": route_id}
                )

            logger.info(
                "Route change notification created",
                extra={"route_id": route_id, "notification_id": notification.id, "changes": len(changes)}
            )
            return RecordedNotification(notification, merged=False)

        # 2. Merge into the pending one, guarded by its version
        pending_id = pending.id
        merged_changes = merge_change_sets(parse_changes(pending.changes), changes)
        result = await db.execute(
            update(RouteChangeNotification)
            .where(
                RouteChangeNotification.id == pending_id,
                RouteChangeNotification.version == pending.version,
                RouteChangeNotification.acknowledged == False
            )
            .values(
                changes=dump_changes(merged_changes),
                route_revision=route.revision,
                driver_id=route.driver_id,
                version=pending.version + 1,
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            await db.rollback()
            logger.warning(
                "Notification merge lost a race",
                extra={"route_id": route_id, "notification_id": pending_id}
            )
            raise TransientStorageError(
                "Pending notification changed concurrently",
                details={"route_id": route_id, "notification_id": pending_id}
            )

        await db.refresh(pending)
        logger.info(
            "Route changes merged into pending notification",
            extra={"route_id": route_id, "notification_id": pending.id, "changes": len(merged_changes)}
        )
        return RecordedNotification(pending, merged=True)

    @staticmethod
    async def acknowledge(
        db: AsyncSession,
        notification_id: int,
        driver_id: Optional[int] = None
    ) -> Tuple[RouteChangeNotification, bool]:
        """
        Mark a notification as acknowledged by the driver.

        Idempotent: acknowledging twice keeps the first timestamp and reports
        `newly_acknowledged=False`. Flushes only.

        Returns:
            (notification, newly_acknowledged)

        Raises:
            NotFoundError: Unknown notification.
            InvalidStateError: Notification addressed to a different driver.
        """
        result = await db.execute(
            select(RouteChangeNotification)
            .where(RouteChangeNotification.id == notification_id)
            .execution_options(populate_existing=True)
        )
        notification = result.scalar_one_or_none()
        if not notification:
            raise NotFoundError("Notification", notification_id)

        if driver_id is not None and notification.driver_id != driver_id:
            raise InvalidStateError(
                "Notification is addressed to another driver",
                details={"notification_id": notification_id}
            )

        if notification.acknowledged:
            return notification, False

        update_result = await db.execute(
            update(RouteChangeNotification)
            .where(
                RouteChangeNotification.id == notification_id,
                RouteChangeNotification.acknowledged == False
            )
            .values(acknowledged=True, acknowledged_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        newly_acknowledged = update_result.rowcount == 1
        await db.refresh(notification)

        if newly_acknowledged:
            await log_event(
                db,
                AuditAction.NOTIFICATION_ACKNOWLEDGED,
                actor_id=notification.driver_id,
                entity_type="notification",
                entity_id=notification.id,
                metadata={"route_id": notification.route_id, "route_revision": notification.route_revision},
            )
            logger.info(
                "Route change notification acknowledged",
                extra={"route_id": notification.route_id, "notification_id": notification.id}
            )

        return notification, newly_acknowledged
