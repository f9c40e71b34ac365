"""
Earnings Calculator.

Prices each stop from its destination zone and delivery outcome, and sums
the route-level breakdown. Pure functions over immutable inputs: the same
stops, origin and pricing table always yield the same amounts.
"""

from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from pydantic import BaseModel
from typing import Optional, Sequence

from routedesk.app.core.exceptions import PricingConfigurationError
from routedesk.app.domain.billing.zone_pricing import ZoneKind, ZonePricingTable
from routedesk.app.domain.routing.geo import haversine_distance
from routedesk.app.models.enums import StopOutcome
from routedesk.app.schemas.stop import OriginPoint, Stop

CENT = Decimal("0.01")


def to_cents(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


class RouteStats(BaseModel):
    model_config = {"frozen": True}

    total_stops: int
    successful_deliveries: int
    failed_deliveries: int
    failed_with_attempt: int


class EarningsBreakdown(BaseModel):
    """
    Route earnings projection.

    computed_at is metadata; compare breakdowns with same_amounts().
    """
    model_config = {"frozen": True}

    delivery_bonuses: Decimal
    failed_attempt_bonuses: Decimal
    total_earnings: Decimal
    stats: RouteStats
    rules_version: int
    computed_at: datetime

    def same_amounts(self, other: "EarningsBreakdown") -> bool:
        return (
            self.delivery_bonuses == other.delivery_bonuses
            and self.failed_attempt_bonuses == other.failed_attempt_bonuses
            and self.total_earnings == other.total_earnings
        )


def resolve_origin(origin: Optional[OriginPoint], stops: Sequence[Stop]) -> Optional[OriginPoint]:
    """
    Reference point for distance pricing.

    Routes without a geocoded origin are measured from their first stop. When
    that stop has no coordinates either, tiered zones fall back to their
    lowest tier.
    """
    if origin is not None and origin.has_coordinates:
        return origin
    if stops:
        first = stops[0]
        return OriginPoint(lat=first.lat, lng=first.lng, address=first.address)
    return origin


def compute_stop_value(stop: Stop, origin: Optional[OriginPoint], table: ZonePricingTable) -> Decimal:
    """
    Price one stop.

    1. Flat-rate zone match -> zone amount
    2. Distance-tiered zone match with coordinates on both ends -> tier by distance
    3. Distance-tiered zone match without coordinates -> lowest tier
    4. No zone -> table default
    """
    if table is None:
        raise PricingConfigurationError("No pricing table loaded")

    zone = table.match(stop.city, stop.neighborhood)
    if zone is None:
        return table.default_amount

    if zone.kind == ZoneKind.FLAT:
        return zone.amount

    if origin is not None and origin.has_coordinates and stop.has_coordinates:
        distance_km = haversine_distance(origin.lat, origin.lng, stop.lat, stop.lng)
        return zone.tier_amount(distance_km)

    return zone.lowest_tier_amount


def compute_route_earnings(
    stops: Sequence[Stop],
    origin: Optional[OriginPoint],
    table: ZonePricingTable,
    computed_at: Optional[datetime] = None
) -> EarningsBreakdown:
    """
    Compute the earnings breakdown of a route from its stop outcomes.

    - completed: full stop value to delivery_bonuses
    - failed and attempted: stop value x failed_attempt_factor to failed_attempt_bonuses
    - pending, or failed without attempt: nothing

    Raises:
        PricingConfigurationError: If no pricing table is given.
    """
    if table is None:
        raise PricingConfigurationError("No pricing table loaded")

    reference = resolve_origin(origin, stops)

    delivery_bonuses = Decimal("0.00")
    failed_attempt_bonuses = Decimal("0.00")
    successful = failed = failed_with_attempt = 0

    for stop in stops:
        if stop.outcome == StopOutcome.COMPLETED:
            successful += 1
            delivery_bonuses += to_cents(compute_stop_value(stop, reference, table))
        elif stop.outcome == StopOutcome.FAILED:
            failed += 1
            if stop.attempted:
                failed_with_attempt += 1
                value = compute_stop_value(stop, reference, table)
                failed_attempt_bonuses += to_cents(value * table.failed_attempt_factor)

    return EarningsBreakdown(
        delivery_bonuses=delivery_bonuses,
        failed_attempt_bonuses=failed_attempt_bonuses,
        total_earnings=delivery_bonuses + failed_attempt_bonuses,
        stats=RouteStats(
            total_stops=len(stops),
            successful_deliveries=successful,
            failed_deliveries=failed,
            failed_with_attempt=failed_with_attempt,
        ),
        rules_version=table.version,
        computed_at=computed_at or datetime.now(timezone.utc),
    )
