"""
Audit Log Database Model.

Tracks dispatcher edits, driver acknowledgments, payment actions and
reconciliation repairs.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.sql import func
from routedesk.app.db.session import Base


class AuditLog(Base):
    """
    Audit log model.

    Events logged:
    - ROUTE_STOPS_UPDATED / ROUTE_DISPATCHED / ROUTE_STARTED / ROUTE_COMPLETED
    - STOP_OUTCOME_RECORDED / PRICING_RULES_ACTIVATED
    - NOTIFICATION_ACKNOWLEDGED
    - PAYMENT_APPROVED / PAYMENT_PAID / PAYMENT_CANCELLED
    - REPAIR_* (one per reconciliation repair action)
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Who performed the action (None for system actions)
    actor_id = Column(Integer, index=True, nullable=True)

    # What action was performed
    action = Column(String(100), nullable=False, index=True)

    # What it was performed on
    entity_type = Column(String(50), nullable=True, index=True)
    entity_id = Column(String(100), nullable=True, index=True)

    # Additional context (JSON for flexibility)
    meta_data = Column(JSON, nullable=True)

    # Timestamp
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    def __repr__(self):
        return f"<AuditLog(id={self.id}, action='{self.action}', entity={self.entity_type}:{self.entity_id})>"
