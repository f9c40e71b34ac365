"""
Reconciliation Checker.

Cross-entity consistency checks for one batch: its stop pool, its routes and
the orders linked to them. Each check is an independent function over loaded
rows and returns Violation records; nothing here writes. Fixes are explicit
operations in reconciliation_repairs.
"""

import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Sequence

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from routedesk.app.core.exceptions import NotFoundError
from routedesk.app.models.batch import Batch
from routedesk.app.models.enums import NOTIFIABLE_ROUTE_STATUSES, RouteStatus
from routedesk.app.models.order import Order
from routedesk.app.models.route import Route
from routedesk.app.schemas.reconciliation import ReconciliationReport, Violation, ViolationKind
from routedesk.app.schemas.stop import Stop, parse_stops

logger = logging.getLogger(__name__)


def _route_stops(routes: Sequence[Route]) -> Dict[int, List[Stop]]:
    return {route.id: parse_stops(route.stops) for route in routes}


def find_dangling_stop_references(batch: Batch, stops_by_route: Dict[int, List[Stop]]) -> List[Violation]:
    pool = set(batch.stop_pool or [])
    violations = []
    for route_id, stops in stops_by_route.items():
        for stop in stops:
            if stop.id not in pool:
                violations.append(Violation(
                    kind=ViolationKind.DANGLING_STOP_REFERENCE,
                    batch_id=batch.id,
                    route_ids=[route_id],
                    stop_id=stop.id,
                    description=f"Route {route_id} references stop '{stop.id}' missing from the batch pool",
                ))
    return violations


def find_duplicate_assignments(batch: Batch, stops_by_route: Dict[int, List[Stop]]) -> List[Violation]:
    owners = defaultdict(list)
    for route_id, stops in stops_by_route.items():
        for stop in stops:
            owners[stop.id].append(route_id)

    return [
        Violation(
            kind=ViolationKind.DUPLICATE_ASSIGNMENT,
            batch_id=batch.id,
            route_ids=sorted(route_ids),
            stop_id=stop_id,
            description=f"Stop '{stop_id}' is assigned to {len(route_ids)} routes",
        )
        for stop_id, route_ids in owners.items()
        if len(route_ids) > 1
    ]


def find_driver_state_mismatches(batch: Batch, routes: Sequence[Route]) -> List[Violation]:
    violations = []
    for route in routes:
        if route.status == RouteStatus.DRAFT and route.driver_id is not None:
            violations.append(Violation(
                kind=ViolationKind.DRIVER_ON_DRAFT_ROUTE,
                batch_id=batch.id,
                route_ids=[route.id],
                description=f"Draft route {route.id} has driver {route.driver_id} assigned",
                details={"driver_id": route.driver_id},
            ))
        elif route.status in NOTIFIABLE_ROUTE_STATUSES and route.driver_id is None:
            violations.append(Violation(
                kind=ViolationKind.MISSING_DRIVER,
                batch_id=batch.id,
                route_ids=[route.id],
                description=f"Route {route.id} is {route.status.value} without a driver",
            ))
    return violations


def find_orders_without_stops(
    batch: Batch,
    orders: Sequence[Order],
    stops_by_route: Dict[int, List[Stop]]
) -> List[Violation]:
    """
    An order linked to a route must appear on that route; an order linked
    only to the batch must appear on some route of the batch.
    """
    refs_by_route = {
        route_id: {stop.order_ref for stop in stops if stop.order_ref}
        for route_id, stops in stops_by_route.items()
    }
    batch_refs = set().union(*refs_by_route.values()) if refs_by_route else set()

    violations = []
    for order in orders:
        if order.route_id is not None and order.route_id in refs_by_route:
            if order.code in refs_by_route[order.route_id]:
                continue
            route_ids = [order.route_id]
            description = f"Order {order.code} is linked to route {order.route_id} but no stop carries it"
        else:
            if order.code in batch_refs:
                continue
            route_ids = [order.route_id] if order.route_id is not None else []
            description = f"Order {order.code} is linked to batch {batch.id} but no route stop carries it"

        violations.append(Violation(
            kind=ViolationKind.ORDER_WITHOUT_STOP,
            batch_id=batch.id,
            route_ids=route_ids,
            order_id=order.id,
            description=description,
            details={"order_code": order.code},
        ))
    return violations


def find_stop_count_mismatch(batch: Batch, stops_by_route: Dict[int, List[Stop]]) -> List[Violation]:
    live_count = sum(len(stops) for stops in stops_by_route.values())
    if live_count == (batch.stop_count or 0):
        return []
    return [Violation(
        kind=ViolationKind.STOP_COUNT_MISMATCH,
        batch_id=batch.id,
        route_ids=sorted(stops_by_route),
        description=f"Batch stop count is {batch.stop_count} but its routes hold {live_count} stops",
        details={"stored": batch.stop_count, "live": live_count},
    )]


def find_orphan_routes(batch: Batch, member_routes: Sequence[Route], known_routes: Dict[int, Route]) -> List[Violation]:
    listed = set(batch.route_ids or [])
    violations = []

    for route in member_routes:
        if route.id not in listed:
            violations.append(Violation(
                kind=ViolationKind.ORPHAN_ROUTE,
                batch_id=batch.id,
                route_ids=[route.id],
                description=f"Route {route.id} points to batch {batch.id} but is not listed by it",
            ))

    for route_id in sorted(listed):
        route = known_routes.get(route_id)
        if route is None:
            description = f"Batch lists route {route_id} which does not exist"
        elif route.batch_id != batch.id:
            description = f"Batch lists route {route_id} which belongs to batch {route.batch_id}"
        else:
            continue
        violations.append(Violation(
            kind=ViolationKind.ORPHAN_ROUTE,
            batch_id=batch.id,
            route_ids=[route_id],
            description=description,
        ))
    return violations


class ReconciliationChecker:

    @staticmethod
    async def check_batch(db: AsyncSession, batch_id: int) -> ReconciliationReport:
        """
        Run every check against the current state of a batch.

        Raises:
            NotFoundError: Unknown batch.
        """
        result = await db.execute(
            select(Batch).where(Batch.id == batch_id).execution_options(populate_existing=True)
        )
        batch = result.scalar_one_or_none()
        if not batch:
            raise NotFoundError("Batch", batch_id)

        listed_ids = list(batch.route_ids or [])
        route_filter = Route.batch_id == batch_id
        if listed_ids:
            route_filter = or_(route_filter, Route.id.in_(listed_ids))
        result = await db.execute(
            select(Route).where(route_filter).order_by(Route.id).execution_options(populate_existing=True)
        )
        known_routes = {route.id: route for route in result.scalars().all()}
        member_routes = [route for route in known_routes.values() if route.batch_id == batch_id]

        member_ids = [route.id for route in member_routes]
        order_filter = Order.batch_id == batch_id
        if member_ids:
            order_filter = or_(order_filter, Order.route_id.in_(member_ids))
        result = await db.execute(select(Order).where(order_filter).order_by(Order.id))
        orders = list(result.scalars().all())

        stops_by_route = _route_stops(member_routes)

        violations = [
            *find_dangling_stop_references(batch, stops_by_route),
            *find_duplicate_assignments(batch, stops_by_route),
            *find_driver_state_mismatches(batch, member_routes),
            *find_orders_without_stops(batch, orders, stops_by_route),
            *find_stop_count_mismatch(batch, stops_by_route),
            *find_orphan_routes(batch, member_routes, known_routes),
        ]

        logger.info(
            "Batch reconciliation finished",
            extra={"batch_id": batch_id, "routes": len(member_routes), "violations": len(violations)}
        )
        return ReconciliationReport(
            batch_id=batch_id,
            checked_at=datetime.now(timezone.utc),
            route_count=len(member_routes),
            violations=violations,
            consistent=not violations,
        )
