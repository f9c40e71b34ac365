"""
Reconciliation Repairs.

Explicit, audited fixes for the violations ReconciliationChecker reports.
Each operation is idempotent: running it on an already consistent batch
changes nothing. Stop removals go through the route update path so the
driver is notified and a tombstone is written.
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from routedesk.app.core.exceptions import InvalidStateError, NotFoundError, ValidationError
from routedesk.app.models.batch import Batch
from routedesk.app.models.enums import OrderLogisticsStatus, RouteStatus
from routedesk.app.models.order import Order
from routedesk.app.models.route import Route
from routedesk.app.models.stop_assignment import StopAssignment
from routedesk.app.schemas.stop import parse_stops
from routedesk.app.services.audit import AuditAction, log_event
from routedesk.app.services.route_service import RouteService, RouteUpdateResult

logger = logging.getLogger(__name__)


async def _get_batch(db: AsyncSession, batch_id: int) -> Batch:
    result = await db.execute(
        select(Batch).where(Batch.id == batch_id).execution_options(populate_existing=True)
    )
    batch = result.scalar_one_or_none()
    if not batch:
        raise NotFoundError("Batch", batch_id)
    return batch


class ReconciliationRepairs:

    @staticmethod
    async def remove_stop_from_route(
        db: AsyncSession,
        route_id: int,
        stop_id: str,
        actor_id: Optional[int] = None
    ) -> RouteUpdateResult:
        """Remove a stop (dangling or duplicated) from one route."""
        route = await RouteService.get_route(db, route_id)
        stops = parse_stops(route.stops)
        remaining = [stop for stop in stops if stop.id != stop_id]
        if len(remaining) == len(stops):
            return RouteUpdateResult(route, [], None)

        update = await RouteService.update_stops(db, route_id, remaining, actor_id=actor_id)

        await log_event(
            db, AuditAction.REPAIR_STOP_REMOVED, actor_id=actor_id, entity_type="route", entity_id=route_id,
            metadata={"stop_id": stop_id, "batch_id": route.batch_id}
        )
        await db.commit()
        logger.info("Repair: stop removed from route", extra={"route_id": route_id, "stop_id": stop_id})
        return update

    @staticmethod
    async def resolve_duplicate_assignment(
        db: AsyncSession,
        batch_id: int,
        stop_id: str,
        keep_route_id: int,
        actor_id: Optional[int] = None
    ) -> list:
        """
        Keep a duplicated stop on one route and remove it from its siblings.

        Returns:
            Ids of the routes the stop was removed from.
        """
        await _get_batch(db, batch_id)
        result = await db.execute(
            select(Route).where(Route.batch_id == batch_id).order_by(Route.id).execution_options(populate_existing=True)
        )
        routes = list(result.scalars().all())
        holders = [route for route in routes if any(stop.id == stop_id for stop in parse_stops(route.stops))]

        if keep_route_id not in [route.id for route in holders]:
            raise ValidationError(
                f"Route {keep_route_id} does not hold stop '{stop_id}'",
                details={"batch_id": batch_id, "stop_id": stop_id, "holders": [route.id for route in holders]}
            )

        removed_from = []
        for route in holders:
            if route.id == keep_route_id:
                continue
            await ReconciliationRepairs.remove_stop_from_route(db, route.id, stop_id, actor_id=actor_id)
            removed_from.append(route.id)

        # The kept route must own the assignment row
        result = await db.execute(
            select(StopAssignment).where(StopAssignment.batch_id == batch_id, StopAssignment.stop_id == stop_id)
        )
        assignment = result.scalar_one_or_none()
        if assignment is None:
            db.add(StopAssignment(batch_id=batch_id, stop_id=stop_id, route_id=keep_route_id))
        else:
            assignment.route_id = keep_route_id

        await log_event(
            db, AuditAction.REPAIR_DUPLICATE_RESOLVED, actor_id=actor_id, entity_type="batch", entity_id=batch_id,
            metadata={"stop_id": stop_id, "kept_route_id": keep_route_id, "removed_from": removed_from}
        )
        await db.commit()
        logger.info(
            "Repair: duplicate assignment resolved",
            extra={"batch_id": batch_id, "stop_id": stop_id, "kept_route_id": keep_route_id}
        )
        return removed_from

    @staticmethod
    async def clear_route_driver(db: AsyncSession, route_id: int, actor_id: Optional[int] = None) -> Route:
        """Unassign the driver of a draft route."""
        route = await RouteService.get_route(db, route_id)
        if route.status != RouteStatus.DRAFT:
            raise InvalidStateError(
                "Only draft routes can have their driver cleared",
                details={"route_id": route_id, "status": route.status.value}
            )
        if route.driver_id is None:
            return route

        previous_driver = route.driver_id
        route.driver_id = None
        await db.flush()

        await log_event(
            db, AuditAction.REPAIR_DRIVER_CLEARED, actor_id=actor_id, entity_type="route", entity_id=route_id,
            metadata={"driver_id": previous_driver}
        )
        await db.commit()
        logger.info("Repair: driver cleared from draft route", extra={"route_id": route_id})
        return route

    @staticmethod
    async def unlink_order(db: AsyncSession, order_id: int, actor_id: Optional[int] = None) -> Order:
        """Detach an order that no stop carries from its batch and route."""
        order = await db.get(Order, order_id)
        if not order:
            raise NotFoundError("Order", order_id)
        if order.batch_id is None and order.route_id is None:
            return order

        previous = {"batch_id": order.batch_id, "route_id": order.route_id}
        order.batch_id = None
        order.route_id = None
        order.logistics_status = OrderLogisticsStatus.PENDING
        await db.flush()

        await log_event(
            db, AuditAction.REPAIR_ORDER_UNLINKED, actor_id=actor_id, entity_type="order", entity_id=order_id,
            metadata=previous
        )
        await db.commit()
        logger.info("Repair: order unlinked", extra={"order_id": order_id, **previous})
        return order

    @staticmethod
    async def sync_batch_stop_count(db: AsyncSession, batch_id: int, actor_id: Optional[int] = None) -> Batch:
        """Set the stored stop count to the live sum across the batch routes."""
        batch = await _get_batch(db, batch_id)
        result = await db.execute(select(Route).where(Route.batch_id == batch_id))
        live_count = sum(len(route.stops or []) for route in result.scalars().all())
        if batch.stop_count == live_count:
            return batch

        previous = batch.stop_count
        batch.stop_count = live_count
        await db.flush()

        await log_event(
            db, AuditAction.REPAIR_STOP_COUNT_SYNCED, actor_id=actor_id, entity_type="batch", entity_id=batch_id,
            metadata={"stored": previous, "live": live_count}
        )
        await db.commit()
        logger.info("Repair: batch stop count synced", extra={"batch_id": batch_id, "stop_count": live_count})
        return batch

    @staticmethod
    async def relink_route_to_batch(
        db: AsyncSession,
        batch_id: int,
        route_id: int,
        actor_id: Optional[int] = None
    ) -> Batch:
        """
        Make the batch route list and the route back-reference agree.

        - Route exists and points here: listed if missing.
        - Route exists and points elsewhere: dropped from this batch's list.
        - Route does not exist: dropped from this batch's list.
        """
        batch = await _get_batch(db, batch_id)
        route = await db.get(Route, route_id)
        listed = list(batch.route_ids or [])

        if route is not None and route.batch_id == batch_id:
            if route_id in listed:
                return batch
            batch.route_ids = listed + [route_id]
            outcome = "listed"
        else:
            if route_id not in listed:
                return batch
            batch.route_ids = [listed_id for listed_id in listed if listed_id != route_id]
            outcome = "unlisted"
        await db.flush()

        await log_event(
            db, AuditAction.REPAIR_ROUTE_RELINKED, actor_id=actor_id, entity_type="batch", entity_id=batch_id,
            metadata={"route_id": route_id, "outcome": outcome}
        )
        await db.commit()
        logger.info("Repair: batch route list fixed", extra={"batch_id": batch_id, "route_id": route_id, "outcome": outcome})
        return batch
