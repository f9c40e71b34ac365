"""
Batch database model.

A batch (the "service" of the dispatch dashboard) aggregates many orders into
one or more routes drawn from a shared stop pool.
"""

from sqlalchemy import Column, Integer, String, Float, DateTime, Enum, JSON
from sqlalchemy.sql import func
from routedesk.app.db.session import Base
from routedesk.app.models.enums import BatchStatus


class Batch(Base):
    """
    Batch model.

    `stop_pool` is the full list of candidate stop ids; `route_ids` lists the
    routes derived from it. `stop_count` is a stored statistic that the
    reconciliation checker compares against the live sum across routes.
    """
    __tablename__ = "batches"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    code = Column(String(50), nullable=True, index=True)
    status = Column(Enum(BatchStatus), default=BatchStatus.OPEN, nullable=False)

    origin_lat = Column(Float, nullable=True)
    origin_lng = Column(Float, nullable=True)

    stop_pool = Column(JSON, nullable=False, default=list)
    route_ids = Column(JSON, nullable=False, default=list)
    stop_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Batch(id={self.id}, code='{self.code}', routes={len(self.route_ids or [])})>"
