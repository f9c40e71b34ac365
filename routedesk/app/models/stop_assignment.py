"""
Stop assignment model.

Storage-level guard for "a stop belongs to at most one route within its batch".
"""

from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, UniqueConstraint
from sqlalchemy.sql import func
from routedesk.app.db.session import Base


class StopAssignment(Base):
    """
    One row per (batch, stop) currently placed on a route.

    The unique constraint makes concurrent drag-and-drop of the same stop into
    two sibling routes fail at flush time instead of silently duplicating.
    """
    __tablename__ = "stop_assignments"
    __table_args__ = (
        UniqueConstraint("batch_id", "stop_id", name="uq_stop_assignment_batch_stop"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    batch_id = Column(Integer, ForeignKey("batches.id"), nullable=False, index=True)
    stop_id = Column(String(100), nullable=False)
    route_id = Column(Integer, ForeignKey("routes.id"), nullable=False, index=True)

    assigned_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<StopAssignment(batch={self.batch_id}, stop='{self.stop_id}', route={self.route_id})>"
