"""
Route Service.

Entry point for dispatcher edits and driver outcomes on a route.

Stop list update flow:
1. Validate the submitted list (shape, duplicate ids/orders, batch pool)
2. Diff against the stored list
3. Conditional write of the route row on `revision` (lost race -> retry)
4. Tombstones for removed stops, stop assignments for batch routes
5. Fold the changes into the driver's pending notification
6. Commit, then publish RouteChanged / NotificationCreated
7. Recalculate earnings when the route had or has outcomes, or already has
   an earnings record; a failure there is logged, the edit stays committed
8. Read-only reconciliation of the batch, logged
"""

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, List, NamedTuple, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from routedesk.app.core.exceptions import (
    AppException,
    InvalidStateError,
    NotFoundError,
    StopAlreadyAssignedError,
    TransientStorageError,
    ValidationError,
)
from routedesk.app.domain.billing.earnings_service import EarningsService
from routedesk.app.domain.routing.stop_diff import MatchKey, diff_stops, mark_modified_stops, validate_stop_list
from routedesk.app.models.batch import Batch
from routedesk.app.models.enums import RouteStatus, StopOutcome
from routedesk.app.models.notification import RouteChangeNotification
from routedesk.app.models.route import Route
from routedesk.app.models.stop_assignment import StopAssignment
from routedesk.app.schemas.stop import ChangeRecord, ChangeType, Stop, dump_stops, parse_changes, parse_stops
from routedesk.app.services.audit import AuditAction, log_event
from routedesk.app.services.events import event_bus, notification_created, route_changed
from routedesk.app.services.geocoding import GeocodingProvider
from routedesk.app.services.notification_service import RouteChangeNotificationService
from routedesk.app.services.reconciliation import ReconciliationChecker

logger = logging.getLogger(__name__)


class RouteUpdateResult(NamedTuple):
    route: Route
    changes: List[ChangeRecord]
    notification: Optional[RouteChangeNotification]


def _clean_stop(stop: Stop, previous: Optional[Stop]) -> Stop:
    """Outcomes are driver-owned: keep the stored ones. Display flags are never stored."""
    update_fields = {"was_modified": False, "modification_type": None, "original_sequence": None}
    if previous is not None:
        update_fields["outcome"] = previous.outcome
        update_fields["attempted"] = previous.attempted
    return stop.model_copy(update=update_fields)


class RouteService:

    @staticmethod
    async def get_route(db: AsyncSession, route_id: int, for_update: bool = False) -> Route:
        query = select(Route).where(Route.id == route_id).execution_options(populate_existing=True)
        if for_update:
            query = query.with_for_update()
        result = await db.execute(query)
        route = result.scalar_one_or_none()
        if not route:
            raise NotFoundError("Route", route_id)
        return route

    @staticmethod
    async def get_route_view(db: AsyncSession, route_id: int) -> dict:
        """Route with its stops flagged by the pending notification, as the driver sees it."""
        route = await RouteService.get_route(db, route_id)
        pending = await RouteChangeNotificationService.get_pending_for_route(db, route_id)
        stops = parse_stops(route.stops)
        if pending:
            stops = mark_modified_stops(stops, parse_changes(pending.changes))
        return {"route": route, "stops": stops, "pending_notification": pending}

    @staticmethod
    async def _write_stops(db: AsyncSession, route: Route, stops: List[Stop], removed_stops: list, bump: bool) -> None:
        """Conditional write on the revision read by this transaction."""
        route_id = route.id
        values = {"stops": dump_stops(stops), "removed_stops": removed_stops}
        if bump:
            values["revision"] = route.revision + 1

        result = await db.execute(
            update(Route)
            .where(Route.id == route_id, Route.revision == route.revision)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            logger.warning("Route write lost a race", extra={"route_id": route_id})
            raise TransientStorageError("Route changed concurrently", details={"route_id": route_id})
        await db.refresh(route)

    @staticmethod
    async def _sync_assignments(db: AsyncSession, route: Route, old_ids: set, new_ids: set) -> None:
        # Captured up front: a rollback expires the route instance
        route_id, batch_id = route.id, route.batch_id
        released = old_ids - new_ids
        claimed = new_ids - old_ids

        if released:
            await db.execute(
                delete(StopAssignment).where(
                    StopAssignment.route_id == route_id,
                    StopAssignment.stop_id.in_(released)
                )
            )

        if not claimed:
            return

        db.add_all([
            StopAssignment(batch_id=batch_id, stop_id=stop_id, route_id=route_id)
            for stop_id in sorted(claimed)
        ])
        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            result = await db.execute(
                select(StopAssignment.stop_id).where(
                    StopAssignment.batch_id == batch_id,
                    StopAssignment.stop_id.in_(claimed),
                    StopAssignment.route_id != route_id
                )
            )
            taken = sorted(result.scalars().all()) or sorted(claimed)
            logger.warning(
                "Stops already assigned in batch",
                extra={"route_id": route_id, "batch_id": batch_id, "stop_ids": taken}
            )
            raise StopAlreadyAssignedError(batch_id, taken)

    @staticmethod
    async def _check_batch_pool(db: AsyncSession, route: Route, new_stops: List[Stop], old_ids: set) -> Optional[Batch]:
        if route.batch_id is None:
            return None
        result = await db.execute(
            select(Batch).where(Batch.id == route.batch_id).execution_options(populate_existing=True)
        )
        batch = result.scalar_one_or_none()
        if batch is None:
            raise NotFoundError("Batch", route.batch_id)

        pool = set(batch.stop_pool or [])
        outside = [stop.id for stop in new_stops if stop.id not in pool and stop.id not in old_ids]
        if outside:
            raise ValidationError(
                "Stops are not part of the batch stop pool",
                details={"batch_id": batch.id, "stop_ids": outside}
            )
        return batch

    @staticmethod
    def _has_outcomes(stops: List[Stop]) -> bool:
        return any(stop.outcome != StopOutcome.PENDING for stop in stops)

    @staticmethod
    async def _refresh_earnings(db: AsyncSession, route_id: int) -> None:
        """Recalculate after a committed route change. Failures are logged, not raised."""
        try:
            await EarningsService.recalculate_route(db, route_id)
        except AppException as exc:
            logger.warning(
                "Earnings not refreshed after route change",
                extra={"route_id": route_id, "error_code": exc.error_code, "error": exc.message}
            )

    @staticmethod
    async def _log_reconciliation(db: AsyncSession, batch_id: Optional[int]) -> None:
        if batch_id is None:
            return
        report = await ReconciliationChecker.check_batch(db, batch_id)
        if report.violations:
            logger.warning(
                "Batch inconsistencies after route update",
                extra={
                    "batch_id": batch_id,
                    "violations": [violation.kind.value for violation in report.violations],
                }
            )

    @staticmethod
    async def update_stops(
        db: AsyncSession,
        route_id: int,
        new_stops: Iterable[Any],
        expected_revision: Optional[int] = None,
        actor_id: Optional[int] = None,
        match_key: MatchKey = MatchKey.STOP_ID
    ) -> RouteUpdateResult:
        """
        Replace a route's stop list with a dispatcher edit.

        Commits on success. Safe to wrap in retry_on_conflict: every attempt
        re-reads the route, and an attempt whose edit already landed finds no
        changes.

        Args:
            db: Database session
            route_id: Route being edited
            new_stops: Full new stop list (Stop objects or dicts)
            expected_revision: Revision the editor started from; rejected when stale
            actor_id: Dispatcher performing the edit
            match_key: How stops are paired between the two lists

        Raises:
            ValidationError: Malformed stops or stops outside the batch pool.
            NotFoundError: Unknown route or batch.
            InvalidStateError: Stale expected_revision.
            StopAlreadyAssignedError: A stop belongs to a sibling route.
            TransientStorageError: Concurrent write; retry.
        """
        new_stops = parse_stops(new_stops)
        validate_stop_list(new_stops, "new stop list")

        route = await RouteService.get_route(db, route_id, for_update=True)
        if expected_revision is not None and expected_revision != route.revision:
            raise InvalidStateError(
                "Route was modified since it was loaded",
                details={"route_id": route_id, "expected_revision": expected_revision, "revision": route.revision}
            )

        old_stops = parse_stops(route.stops)
        old_by_id = {stop.id: stop for stop in old_stops}
        old_ids = set(old_by_id)
        new_ids = {stop.id for stop in new_stops}

        batch = await RouteService._check_batch_pool(db, route, new_stops, old_ids)

        changes = diff_stops(old_stops, new_stops, match_key)
        if not changes:
            logger.debug("Stop list unchanged", extra={"route_id": route_id})
            return RouteUpdateResult(route, [], None)

        # 1. Route row
        stored_stops = [_clean_stop(stop, old_by_id.get(stop.id)) for stop in new_stops]
        removed_ids = {change.stop_id for change in changes if change.change_type == ChangeType.REMOVED}
        removed_at = datetime.now(timezone.utc).isoformat()
        tombstones = list(route.removed_stops or []) + [
            {**stop.model_dump(mode="json"), "removed_at": removed_at, "removed_in_revision": route.revision + 1}
            for stop in old_stops
            if stop.id in removed_ids
        ]
        await RouteService._write_stops(db, route, stored_stops, tombstones, bump=True)

        # 2. Batch bookkeeping
        if batch is not None:
            await RouteService._sync_assignments(db, route, old_ids, new_ids)
            delta = len(new_stops) - len(old_stops)
            if delta:
                await db.execute(
                    update(Batch)
                    .where(Batch.id == batch.id)
                    .values(stop_count=func.coalesce(Batch.stop_count, 0) + delta)
                    .execution_options(synchronize_session=False)
                )

        # 3. Driver notification (the first stop list of a route is not a change)
        recorded = None
        if old_stops:
            recorded = await RouteChangeNotificationService.record_changes(db, route, changes)

        await log_event(
            db,
            AuditAction.ROUTE_STOPS_UPDATED,
            actor_id=actor_id,
            entity_type="route",
            entity_id=route.id,
            metadata={
                "revision": route.revision,
                "changes": len(changes),
                "added": len(new_ids - old_ids),
                "removed": len(removed_ids),
            }
        )

        await db.commit()
        logger.info(
            "Route stops updated",
            extra={"route_id": route.id, "revision": route.revision, "changes": len(changes)}
        )

        # 4. After commit: events, earnings, reconciliation
        await event_bus.publish(route_changed(route.id, route.revision, len(changes)))
        notification = None
        if recorded is not None:
            notification = recorded.notification
            await event_bus.publish(notification_created(
                notification.id, notification.route_id, notification.driver_id, recorded.merged
            ))

        if route.driver_id is not None and (
            RouteService._has_outcomes(old_stops)
            or RouteService._has_outcomes(stored_stops)
            or await EarningsService.get_for_route(db, route.id)
        ):
            await RouteService._refresh_earnings(db, route.id)

        await RouteService._log_reconciliation(db, route.batch_id)

        return RouteUpdateResult(route, changes, notification)

    @staticmethod
    async def _transition(
        db: AsyncSession,
        route_id: int,
        allowed_from: tuple,
        target: RouteStatus,
        action: str,
        actor_id: Optional[int],
        **fields
    ) -> Route:
        route = await RouteService.get_route(db, route_id, for_update=True)
        if route.status not in allowed_from:
            raise InvalidStateError(
                f"Cannot move route from {route.status.value} to {target.value}",
                details={"route_id": route_id, "status": route.status.value}
            )

        previous = route.status
        route.status = target
        for name, value in fields.items():
            setattr(route, name, value)
        await db.flush()

        await log_event(
            db, action, actor_id=actor_id, entity_type="route", entity_id=route.id,
            metadata={"from": previous.value, "to": target.value, "driver_id": route.driver_id}
        )
        await db.commit()
        # updated_at is server-generated and expired by the flush
        await db.refresh(route)

        logger.info(
            "Route status changed",
            extra={"route_id": route.id, "from": previous.value, "to": target.value}
        )
        await event_bus.publish(route_changed(route.id, route.revision, 0))
        return route

    @staticmethod
    async def dispatch_route(db: AsyncSession, route_id: int, driver_id: int, actor_id: Optional[int] = None) -> Route:
        """DRAFT -> DISPATCHED, handing the route to a driver."""
        return await RouteService._transition(
            db, route_id, (RouteStatus.DRAFT,), RouteStatus.DISPATCHED,
            AuditAction.ROUTE_DISPATCHED, actor_id,
            driver_id=driver_id, dispatched_at=datetime.now(timezone.utc)
        )

    @staticmethod
    async def start_route(db: AsyncSession, route_id: int, actor_id: Optional[int] = None) -> Route:
        """DISPATCHED -> IN_PROGRESS."""
        return await RouteService._transition(
            db, route_id, (RouteStatus.DISPATCHED,), RouteStatus.IN_PROGRESS,
            AuditAction.ROUTE_STARTED, actor_id,
            started_at=datetime.now(timezone.utc)
        )

    @staticmethod
    async def complete_route(db: AsyncSession, route_id: int, actor_id: Optional[int] = None) -> Route:
        """IN_PROGRESS -> COMPLETED, then refresh the driver's earnings."""
        route = await RouteService._transition(
            db, route_id, (RouteStatus.IN_PROGRESS,), RouteStatus.COMPLETED,
            AuditAction.ROUTE_COMPLETED, actor_id,
            completed_at=datetime.now(timezone.utc)
        )
        if route.driver_id is not None:
            await RouteService._refresh_earnings(db, route.id)
        return route

    @staticmethod
    async def record_stop_outcome(
        db: AsyncSession,
        route_id: int,
        stop_id: str,
        outcome: StopOutcome,
        attempted: Optional[bool] = None,
        actor_id: Optional[int] = None
    ) -> Route:
        """
        Record the driver's delivery outcome for one stop.

        Outcomes are not dispatcher edits: no revision bump, no notification.
        Allowed while the route is in progress, and afterwards as a late
        correction on a completed route. Earnings are recalculated.
        """
        route = await RouteService.get_route(db, route_id, for_update=True)
        if route.status not in (RouteStatus.IN_PROGRESS, RouteStatus.COMPLETED):
            raise InvalidStateError(
                f"Outcomes cannot be recorded on a {route.status.value} route",
                details={"route_id": route_id}
            )

        if attempted is None:
            attempted = outcome == StopOutcome.COMPLETED

        stops = parse_stops(route.stops)
        if not any(stop.id == stop_id for stop in stops):
            raise NotFoundError("Stop", stop_id)

        updated = [
            stop.model_copy(update={"outcome": outcome, "attempted": attempted}) if stop.id == stop_id else stop
            for stop in stops
        ]
        await RouteService._write_stops(db, route, updated, list(route.removed_stops or []), bump=False)

        await log_event(
            db, AuditAction.STOP_OUTCOME_RECORDED, actor_id=actor_id, entity_type="route", entity_id=route.id,
            metadata={"stop_id": stop_id, "outcome": outcome.value, "attempted": attempted}
        )
        await db.commit()
        logger.info(
            "Stop outcome recorded",
            extra={"route_id": route.id, "stop_id": stop_id, "outcome": outcome.value}
        )

        if route.driver_id is not None:
            await RouteService._refresh_earnings(db, route.id)
        return route

    @staticmethod
    async def correct_stop_address(
        db: AsyncSession,
        route_id: int,
        stop_id: str,
        address_text: str,
        geocoder: GeocodingProvider,
        actor_id: Optional[int] = None
    ) -> RouteUpdateResult:
        """
        Re-geocode one stop's address and apply it as a regular stop edit,
        so the driver is notified like for any other change.
        """
        resolved = await geocoder.resolve(address_text)

        route = await RouteService.get_route(db, route_id)
        stops = parse_stops(route.stops)
        if not any(stop.id == stop_id for stop in stops):
            raise NotFoundError("Stop", stop_id)

        corrected = []
        for stop in stops:
            if stop.id == stop_id:
                stop = stop.model_copy(update={
                    "address": resolved.formatted_address,
                    "lat": resolved.lat,
                    "lng": resolved.lng,
                    "city": resolved.city or stop.city,
                    "neighborhood": resolved.neighborhood or stop.neighborhood,
                    "postal_code": resolved.postal_code or stop.postal_code,
                })
            corrected.append(stop)

        return await RouteService.update_stops(
            db, route_id, corrected, expected_revision=route.revision, actor_id=actor_id
        )
