"""
Earnings Service (Domain Logic).

Persists the earnings projection of routes and drives the payment lifecycle.

Recalculation:
- Amounts are recreated from the route's current stop outcomes every time;
  nothing is added incrementally, so repeated or concurrent runs converge.
- A per-route Redis lock serializes recalculations of the same route across
  workers. The lock covers read, upsert and commit.
- Only PENDING records are rewritten. Approved, paid and cancelled records
  keep the amounts they were settled with; recalculating them is refused
  with InvalidStateError and nothing is written.

Payment lifecycle:
    PENDING -> APPROVED -> PAID
    PENDING | APPROVED -> CANCELLED
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from redis.exceptions import LockError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import routedesk.app.core.redis_client as redis_client_module
from routedesk.app.core.config import settings
from routedesk.app.core.exceptions import (
    AppException,
    InvalidStateError,
    NotFoundError,
    TransientStorageError,
)
from routedesk.app.domain.billing.earnings_calculator import EarningsBreakdown, compute_route_earnings
from routedesk.app.domain.billing.pricing_resolver import PricingResolver
from routedesk.app.domain.billing.zone_pricing import ZonePricingTable
from routedesk.app.models.billing_enums import PaymentMethod, PaymentStatus
from routedesk.app.models.driver_earnings import DriverEarnings
from routedesk.app.models.enums import RouteStatus
from routedesk.app.models.route import Route
from routedesk.app.schemas.stop import OriginPoint, parse_stops
from routedesk.app.services.audit import AuditAction, log_event
from routedesk.app.services.events import earnings_recomputed, event_bus

logger = logging.getLogger(__name__)


def route_origin(route: Route) -> OriginPoint:
    return OriginPoint(lat=route.origin_lat, lng=route.origin_lng, address=route.origin_address)


def compute_for_route(route: Route, table: ZonePricingTable) -> EarningsBreakdown:
    return compute_route_earnings(parse_stops(route.stops), route_origin(route), table)


class EarningsService:

    @staticmethod
    async def get_for_route(db: AsyncSession, route_id: int) -> List[DriverEarnings]:
        result = await db.execute(
            select(DriverEarnings)
            .where(DriverEarnings.route_id == route_id)
            .order_by(DriverEarnings.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    @staticmethod
    async def _get_earnings(db: AsyncSession, earnings_id: int) -> DriverEarnings:
        result = await db.execute(
            select(DriverEarnings)
            .where(DriverEarnings.id == earnings_id)
            .execution_options(populate_existing=True)
        )
        earnings = result.scalar_one_or_none()
        if not earnings:
            raise NotFoundError("DriverEarnings", earnings_id)
        return earnings

    @staticmethod
    async def _upsert(db: AsyncSession, route: Route, breakdown: EarningsBreakdown) -> DriverEarnings:
        result = await db.execute(
            select(DriverEarnings).where(
                DriverEarnings.route_id == route.id,
                DriverEarnings.driver_id == route.driver_id
            ).execution_options(populate_existing=True)
        )
        earnings = result.scalar_one_or_none()
        if earnings is None:
            earnings = DriverEarnings(route_id=route.id, driver_id=route.driver_id, status=PaymentStatus.PENDING)
            db.add(earnings)
        elif earnings.status != PaymentStatus.PENDING:
            logger.warning(
                "Earnings already settled, recalculation skipped",
                extra={"route_id": route.id, "earnings_id": earnings.id, "status": earnings.status.value}
            )
            raise InvalidStateError(
                f"Earnings are {earnings.status.value} and can no longer be recalculated",
                details={"route_id": route.id, "earnings_id": earnings.id, "status": earnings.status.value}
            )

        earnings.delivery_bonuses = breakdown.delivery_bonuses
        earnings.failed_attempt_bonuses = breakdown.failed_attempt_bonuses
        earnings.total_earnings = breakdown.total_earnings
        earnings.total_stops = breakdown.stats.total_stops
        earnings.successful_deliveries = breakdown.stats.successful_deliveries
        earnings.failed_deliveries = breakdown.stats.failed_deliveries
        earnings.failed_with_attempt = breakdown.stats.failed_with_attempt
        earnings.rules_version = breakdown.rules_version
        earnings.computed_at = breakdown.computed_at
        earnings.route_created_at = route.created_at
        earnings.route_completed_at = route.completed_at

        await db.flush()
        return earnings

    @staticmethod
    async def recalculate_route(
        db: AsyncSession,
        route_id: int,
        table: Optional[ZonePricingTable] = None,
        redis=None
    ) -> DriverEarnings:
        """
        Recompute and store a route's earnings.

        Commits its own transaction while holding the route lock, then emits
        EarningsRecomputed.

        Args:
            db: Database session
            route_id: Route to recalculate
            table: Pricing table already loaded by a batch caller. Loaded from
                the active pricing rule when omitted.
            redis: Redis client used for the lock (process client by default)

        Raises:
            NotFoundError: Unknown route.
            InvalidStateError: Route has no driver, or its earnings are no
                longer pending.
            PricingConfigurationError: No usable pricing table.
            TransientStorageError: Route lock could not be acquired in time.
        """
        if table is None:
            table = await PricingResolver.resolve_active_table(db)

        client = redis or redis_client_module.redis_client
        lock = client.lock(
            f"earnings:route:{route_id}",
            timeout=settings.earnings_lock_timeout_seconds,
            blocking_timeout=settings.earnings_lock_timeout_seconds,
        )

        try:
            async with lock:
                result = await db.execute(
                    select(Route).where(Route.id == route_id).execution_options(populate_existing=True)
                )
                route = result.scalar_one_or_none()
                if not route:
                    raise NotFoundError("Route", route_id)
                if route.driver_id is None:
                    raise InvalidStateError(
                        "Route has no driver; earnings cannot be computed",
                        details={"route_id": route_id}
                    )

                breakdown = compute_for_route(route, table)
                earnings = await EarningsService._upsert(db, route, breakdown)
                await db.commit()
        except LockError:
            raise TransientStorageError(
                "Earnings recalculation already running for route",
                details={"route_id": route_id}
            )

        logger.info(
            "Route earnings recalculated",
            extra={
                "route_id": route_id,
                "driver_id": earnings.driver_id,
                "total_earnings": str(earnings.total_earnings),
                "rules_version": earnings.rules_version,
            }
        )
        await event_bus.publish(earnings_recomputed(route_id, earnings.driver_id, earnings.total_earnings))
        return earnings

    @staticmethod
    async def recalculate_routes(
        session_factory: async_sessionmaker,
        route_ids: Iterable[int],
        concurrency: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Batch recalculation.

        The pricing table is loaded once, before any route is touched; a
        configuration error aborts the whole batch. Each route then runs in
        its own session, at most `concurrency` at a time. Per-route failures
        are collected, not raised.

        Returns:
            {"recalculated": [route_id, ...], "errors": [{"route_id", "error"}, ...]}
        """
        async with session_factory() as db:
            table = await PricingResolver.resolve_active_table(db)

        semaphore = asyncio.Semaphore(concurrency or settings.earnings_batch_concurrency)

        async def run_one(route_id: int):
            async with semaphore:
                async with session_factory() as db:
                    try:
                        await EarningsService.recalculate_route(db, route_id, table=table)
                        return route_id, None
                    except (AppException, SQLAlchemyError) as exc:
                        await db.rollback()
                        message = exc.message if isinstance(exc, AppException) else str(exc)
                        logger.warning(
                            "Route earnings recalculation failed",
                            extra={"route_id": route_id, "error": message}
                        )
                        return route_id, message

        outcomes = await asyncio.gather(*(run_one(route_id) for route_id in dict.fromkeys(route_ids)))

        summary = {
            "recalculated": [route_id for route_id, error in outcomes if error is None],
            "errors": [{"route_id": route_id, "error": error} for route_id, error in outcomes if error is not None],
        }
        logger.info(
            "Batch earnings recalculation finished",
            extra={"recalculated": len(summary["recalculated"]), "errors": len(summary["errors"])}
        )
        return summary

    @staticmethod
    async def generate_pending_payments(db: AsyncSession) -> Dict[str, Any]:
        """
        Create earnings for completed routes that have a driver and none yet.

        Routes that already have a record are left alone (use
        recalculate_route to refresh them). Commits once at the end.

        Returns:
            {"created": [route_id, ...], "errors": [{"route_id", "error"}, ...]}
        """
        table = await PricingResolver.resolve_active_table(db)

        result = await db.execute(
            select(Route)
            .outerjoin(
                DriverEarnings,
                (DriverEarnings.route_id == Route.id) & (DriverEarnings.driver_id == Route.driver_id)
            )
            .where(
                Route.status == RouteStatus.COMPLETED,
                Route.driver_id.isnot(None),
                DriverEarnings.id.is_(None)
            )
            .order_by(Route.id)
        )
        routes = list(result.scalars().all())

        created = []
        errors = []
        for route in routes:
            try:
                breakdown = compute_for_route(route, table)
            except AppException as exc:
                errors.append({"route_id": route.id, "error": exc.message})
                continue
            earnings = await EarningsService._upsert(db, route, breakdown)
            created.append(earnings)

        await db.commit()

        for earnings in created:
            await event_bus.publish(earnings_recomputed(earnings.route_id, earnings.driver_id, earnings.total_earnings))

        logger.info("Pending payments generated", extra={"created": len(created), "errors": len(errors)})
        return {"created": [earnings.route_id for earnings in created], "errors": errors}

    @staticmethod
    async def approve_payment(db: AsyncSession, earnings_id: int, actor_id: Optional[int] = None) -> DriverEarnings:
        """PENDING -> APPROVED. Flushes only."""
        earnings = await EarningsService._get_earnings(db, earnings_id)
        if earnings.status != PaymentStatus.PENDING:
            raise InvalidStateError(
                f"Only pending payments can be approved (current: {earnings.status.value})",
                details={"earnings_id": earnings_id}
            )

        earnings.status = PaymentStatus.APPROVED
        earnings.approved_by = actor_id
        earnings.approved_at = datetime.now(timezone.utc)
        await db.flush()

        await log_event(
            db, AuditAction.PAYMENT_APPROVED, actor_id=actor_id,
            entity_type="driver_earnings", entity_id=earnings.id,
            metadata={"route_id": earnings.route_id, "total_earnings": str(earnings.total_earnings)}
        )
        return earnings

    @staticmethod
    async def mark_paid(
        db: AsyncSession,
        earnings_id: int,
        actor_id: Optional[int] = None,
        payment_method: PaymentMethod = PaymentMethod.PIX,
        payment_reference: Optional[str] = None
    ) -> DriverEarnings:
        """APPROVED -> PAID. Flushes only."""
        earnings = await EarningsService._get_earnings(db, earnings_id)
        if earnings.status == PaymentStatus.CANCELLED:
            raise InvalidStateError("Cancelled payments cannot be paid", details={"earnings_id": earnings_id})
        if earnings.status != PaymentStatus.APPROVED:
            raise InvalidStateError(
                f"Payment must be approved before it is paid (current: {earnings.status.value})",
                details={"earnings_id": earnings_id}
            )

        earnings.status = PaymentStatus.PAID
        earnings.paid_by = actor_id
        earnings.paid_at = datetime.now(timezone.utc)
        earnings.payment_method = payment_method
        earnings.payment_reference = payment_reference
        await db.flush()

        await log_event(
            db, AuditAction.PAYMENT_PAID, actor_id=actor_id,
            entity_type="driver_earnings", entity_id=earnings.id,
            metadata={"method": payment_method.value, "reference": payment_reference}
        )
        return earnings

    @staticmethod
    async def cancel_payment(
        db: AsyncSession,
        earnings_id: int,
        actor_id: Optional[int] = None,
        reason: Optional[str] = None
    ) -> DriverEarnings:
        """PENDING | APPROVED -> CANCELLED. Flushes only."""
        earnings = await EarningsService._get_earnings(db, earnings_id)
        if earnings.status == PaymentStatus.PAID:
            raise InvalidStateError("Paid payments cannot be cancelled", details={"earnings_id": earnings_id})
        if earnings.status == PaymentStatus.CANCELLED:
            raise InvalidStateError("Payment already cancelled", details={"earnings_id": earnings_id})

        earnings.status = PaymentStatus.CANCELLED
        earnings.cancelled_by = actor_id
        earnings.cancelled_at = datetime.now(timezone.utc)
        earnings.cancel_reason = reason
        await db.flush()

        await log_event(
            db, AuditAction.PAYMENT_CANCELLED, actor_id=actor_id,
            entity_type="driver_earnings", entity_id=earnings.id,
            metadata={"reason": reason}
        )
        return earnings
