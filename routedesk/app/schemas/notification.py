"""
Route Change Notification Schemas.
"""

from pydantic import BaseModel
from datetime import datetime
from typing import Optional, List

from routedesk.app.schemas.stop import ChangeRecord


class NotificationResponse(BaseModel):
    id: int
    route_id: int
    driver_id: int
    changes: List[ChangeRecord]
    route_revision: int
    version: int
    acknowledged: bool
    acknowledged_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class AcknowledgeRequest(BaseModel):
    """driver_id, when given, must match the notification's recipient."""
    driver_id: Optional[int] = None


class AcknowledgeResponse(BaseModel):
    notification: NotificationResponse
    newly_acknowledged: bool
