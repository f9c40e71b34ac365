"""
Route API Endpoints.

Dispatcher edits of the stop list, lifecycle transitions and driver
outcomes. Every write commits inside the service and publishes its events
after the commit.
"""

from fastapi import APIRouter, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List

from routedesk.app.core.dependencies import get_geocoder
from routedesk.app.core.reliability import retry_on_conflict
from routedesk.app.db.session import get_db
from routedesk.app.schemas.notification import NotificationResponse
from routedesk.app.schemas.route import (
    AddressCorrectionRequest,
    DispatchRequest,
    RouteActionRequest,
    RouteResponse,
    RouteViewResponse,
    StopOutcomeRequest,
    StopsUpdateRequest,
    StopsUpdateResponse,
)
from routedesk.app.services.geocoding import GeocodingProvider
from routedesk.app.services.notification_service import RouteChangeNotificationService
from routedesk.app.services.route_service import RouteService, RouteUpdateResult

router = APIRouter(prefix="/routes", tags=["Routes"])


def _update_response(result: RouteUpdateResult) -> StopsUpdateResponse:
    return StopsUpdateResponse(
        route=RouteResponse.model_validate(result.route),
        changes=result.changes,
        notification_id=result.notification.id if result.notification else None,
    )


@router.get("/{route_id}", response_model=RouteViewResponse)
async def get_route(
    route_id: int = Path(..., description="Route ID"),
    db: AsyncSession = Depends(get_db)
):
    """
    Route with its stops flagged by the pending change notification.
    """
    view = await RouteService.get_route_view(db, route_id)
    return RouteViewResponse(
        route=RouteResponse.model_validate(view["route"]),
        stops=view["stops"],
        pending_notification=(
            NotificationResponse.model_validate(view["pending_notification"])
            if view["pending_notification"] else None
        ),
    )


@router.put("/{route_id}/stops", response_model=StopsUpdateResponse)
async def update_route_stops(
    payload: StopsUpdateRequest,
    route_id: int = Path(..., description="Route ID"),
    db: AsyncSession = Depends(get_db)
):
    """
    Replace the stop list.

    Concurrent edits are retried with merge; a stale `expected_revision`
    is rejected with 409.
    """
    result = await retry_on_conflict(lambda: RouteService.update_stops(
        db,
        route_id,
        payload.stops,
        expected_revision=payload.expected_revision,
        actor_id=payload.actor_id,
        match_key=payload.match_key,
    ))
    return _update_response(result)


@router.post("/{route_id}/dispatch", response_model=RouteResponse)
async def dispatch_route(
    payload: DispatchRequest,
    route_id: int = Path(..., description="Route ID"),
    db: AsyncSession = Depends(get_db)
):
    route = await RouteService.dispatch_route(db, route_id, payload.driver_id, actor_id=payload.actor_id)
    return route


@router.post("/{route_id}/start", response_model=RouteResponse)
async def start_route(
    payload: RouteActionRequest,
    route_id: int = Path(..., description="Route ID"),
    db: AsyncSession = Depends(get_db)
):
    return await RouteService.start_route(db, route_id, actor_id=payload.actor_id)


@router.post("/{route_id}/complete", response_model=RouteResponse)
async def complete_route(
    payload: RouteActionRequest,
    route_id: int = Path(..., description="Route ID"),
    db: AsyncSession = Depends(get_db)
):
    return await RouteService.complete_route(db, route_id, actor_id=payload.actor_id)


@router.post("/{route_id}/stops/{stop_id}/outcome", response_model=RouteResponse)
async def record_stop_outcome(
    payload: StopOutcomeRequest,
    route_id: int = Path(..., description="Route ID"),
    stop_id: str = Path(..., description="Stop ID"),
    db: AsyncSession = Depends(get_db)
):
    """Driver-reported delivery outcome. Earnings are recalculated."""
    return await retry_on_conflict(lambda: RouteService.record_stop_outcome(
        db, route_id, stop_id, payload.outcome, attempted=payload.attempted, actor_id=payload.actor_id
    ))


@router.post("/{route_id}/stops/{stop_id}/address", response_model=StopsUpdateResponse)
async def correct_stop_address(
    payload: AddressCorrectionRequest,
    route_id: int = Path(..., description="Route ID"),
    stop_id: str = Path(..., description="Stop ID"),
    db: AsyncSession = Depends(get_db),
    geocoder: GeocodingProvider = Depends(get_geocoder)
):
    """Re-geocode a stop address; applied as a normal stop edit."""
    result = await RouteService.correct_stop_address(
        db, route_id, stop_id, payload.address_text, geocoder, actor_id=payload.actor_id
    )
    return _update_response(result)


@router.get("/{route_id}/notifications", response_model=List[NotificationResponse])
async def list_route_notifications(
    route_id: int = Path(..., description="Route ID"),
    limit: int = 50,
    db: AsyncSession = Depends(get_db)
):
    """Notification history of a route, newest first."""
    await RouteService.get_route(db, route_id)
    return await RouteChangeNotificationService.list_for_route(db, route_id, limit=limit)
