"""
Route Schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List

from routedesk.app.domain.routing.stop_diff import MatchKey
from routedesk.app.models.enums import RouteStatus, StopOutcome
from routedesk.app.schemas.notification import NotificationResponse
from routedesk.app.schemas.stop import ChangeRecord, Stop


class StopsUpdateRequest(BaseModel):
    """Full replacement stop list from the dispatcher."""
    stops: List[Stop]
    expected_revision: Optional[int] = Field(None, ge=0)
    match_key: MatchKey = MatchKey.STOP_ID
    actor_id: Optional[int] = None


class DispatchRequest(BaseModel):
    driver_id: int
    actor_id: Optional[int] = None


class RouteActionRequest(BaseModel):
    actor_id: Optional[int] = None


class StopOutcomeRequest(BaseModel):
    outcome: StopOutcome
    attempted: Optional[bool] = None
    actor_id: Optional[int] = None


class AddressCorrectionRequest(BaseModel):
    address_text: str = Field(..., min_length=1, max_length=500)
    actor_id: Optional[int] = None


class RouteResponse(BaseModel):
    id: int
    code: Optional[str]
    status: RouteStatus
    driver_id: Optional[int]
    batch_id: Optional[int]
    revision: int

    origin_lat: Optional[float]
    origin_lng: Optional[float]
    origin_address: Optional[str]

    stops: List[Stop]

    created_at: datetime
    updated_at: datetime
    dispatched_at: Optional[datetime]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]

    class Config:
        from_attributes = True


class RouteViewResponse(BaseModel):
    """Route as the driver app shows it: stops flagged by the pending notification."""
    route: RouteResponse
    stops: List[Stop]
    pending_notification: Optional[NotificationResponse]


class StopsUpdateResponse(BaseModel):
    route: RouteResponse
    changes: List[ChangeRecord]
    notification_id: Optional[int]
