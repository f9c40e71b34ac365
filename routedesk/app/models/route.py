"""
Route database model.

A route is an ordered list of stops handed to one driver. The stop list is
stored denormalized on the route row, the way the dashboard reads it.
"""

from sqlalchemy import Column, Integer, String, Float, ForeignKey, DateTime, Enum, JSON
from sqlalchemy.sql import func
from routedesk.app.db.session import Base
from routedesk.app.models.enums import RouteStatus


class Route(Base):
    """
    Route model.

    `stops` holds the current ordered stop list (serialized Stop schemas).
    `removed_stops` holds tombstones of stops removed by dispatcher edits so
    history and diffing stay correct.
    `revision` increases by one on every stop list write; notifications record
    the revision they were derived from.
    """
    __tablename__ = "routes"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    code = Column(String(50), nullable=True, index=True)

    # Lifecycle
    status = Column(Enum(RouteStatus), default=RouteStatus.DRAFT, nullable=False, index=True)
    driver_id = Column(Integer, nullable=True, index=True)

    # Origin point (depot or pickup location)
    origin_lat = Column(Float, nullable=True)
    origin_lng = Column(Float, nullable=True)
    origin_address = Column(String(500), nullable=True)

    # Denormalized batch reference (routes built from a bulk import)
    batch_id = Column(Integer, ForeignKey("batches.id"), nullable=True, index=True)
    color_tag = Column(String(20), nullable=True)

    # Stops
    stops = Column(JSON, nullable=False, default=list)
    removed_stops = Column(JSON, nullable=False, default=list)
    revision = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    dispatched_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<Route(id={self.id}, code='{self.code}', status='{self.status.value}', rev={self.revision})>"
