"""
Route Change Notification API Endpoints.
"""

from fastapi import APIRouter, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List

from routedesk.app.db.session import get_db
from routedesk.app.schemas.notification import AcknowledgeRequest, AcknowledgeResponse, NotificationResponse
from routedesk.app.services.events import event_bus, notification_acknowledged
from routedesk.app.services.notification_service import RouteChangeNotificationService

router = APIRouter(prefix="/notifications", tags=["Notifications"])
driver_router = APIRouter(prefix="/drivers", tags=["Drivers"])


@driver_router.get("/{driver_id}/notifications/pending", response_model=List[NotificationResponse])
async def list_pending_notifications(
    driver_id: int = Path(..., description="Driver ID"),
    db: AsyncSession = Depends(get_db)
):
    """Unacknowledged change notifications of a driver, oldest first."""
    return await RouteChangeNotificationService.list_pending_for_driver(db, driver_id)


@router.post("/{notification_id}/acknowledge", response_model=AcknowledgeResponse)
async def acknowledge_notification(
    payload: AcknowledgeRequest,
    notification_id: int = Path(..., description="Notification ID"),
    db: AsyncSession = Depends(get_db)
):
    """
    Driver confirms the changes were seen. Idempotent.
    """
    notification, newly_acknowledged = await RouteChangeNotificationService.acknowledge(
        db, notification_id, driver_id=payload.driver_id
    )
    await db.commit()

    if newly_acknowledged:
        await event_bus.publish(notification_acknowledged(
            notification.id, notification.route_id, notification.driver_id
        ))

    return AcknowledgeResponse(
        notification=NotificationResponse.model_validate(notification),
        newly_acknowledged=newly_acknowledged,
    )
