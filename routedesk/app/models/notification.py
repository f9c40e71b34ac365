"""
Route Change Notification Database Model.
"""

from sqlalchemy import Column, Integer, Boolean, DateTime, ForeignKey, JSON, Index, text
from sqlalchemy.sql import func
from routedesk.app.db.session import Base


class RouteChangeNotification(Base):
    """
    Pending or acknowledged batch of stop changes for a driver's route.

    At most one unacknowledged notification exists per route; the partial
    unique index enforces it at the storage level. Further edits merge into
    the pending row through a conditional update on `version`.
    Rows are never deleted: acknowledged notifications are the audit trail.
    """
    __tablename__ = "route_change_notifications"
    __table_args__ = (
        Index(
            "uq_pending_notification_per_route",
            "route_id",
            unique=True,
            postgresql_where=text("acknowledged = false"),
            sqlite_where=text("acknowledged = 0"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Recipient
    route_id = Column(Integer, ForeignKey("routes.id"), nullable=False, index=True)
    driver_id = Column(Integer, nullable=False, index=True)

    # Content
    changes = Column(JSON, nullable=False, default=list)  # Serialized ChangeRecord list
    route_revision = Column(Integer, nullable=False)  # Route revision of the latest merged diff
    version = Column(Integer, nullable=False, default=1)  # Optimistic concurrency counter

    # State
    acknowledged = Column(Boolean, default=False, nullable=False, index=True)
    acknowledged_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return (
            f"<RouteChangeNotification(id={self.id}, route={self.route_id}, "
            f"driver={self.driver_id}, acknowledged={self.acknowledged})>"
        )
