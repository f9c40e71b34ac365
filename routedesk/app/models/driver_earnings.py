"""
Driver Earnings database model.

Stores the computed earnings breakdown for a route and its driver.
"""

from sqlalchemy import Column, Integer, String, Numeric, DateTime, Enum, ForeignKey, UniqueConstraint
from sqlalchemy.sql import func
from routedesk.app.db.session import Base
from routedesk.app.models.billing_enums import PaymentStatus, PaymentMethod


class DriverEarnings(Base):
    """
    Driver Earnings model.

    One record per (route, driver). Amounts are a projection of the route's
    current stop outcomes and are overwritten on every recalculation.
    Payment workflow: PENDING -> APPROVED -> PAID, or CANCELLED before payment.
    Route timestamps are denormalized for reporting and never used in computation.
    """
    __tablename__ = "driver_earnings"
    __table_args__ = (
        UniqueConstraint("route_id", "driver_id", name="uq_driver_earnings_route_driver"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    route_id = Column(Integer, ForeignKey("routes.id"), nullable=False, index=True)
    driver_id = Column(Integer, nullable=False, index=True)

    # Breakdown
    delivery_bonuses = Column(Numeric(12, 2), nullable=False, default=0)
    failed_attempt_bonuses = Column(Numeric(12, 2), nullable=False, default=0)
    total_earnings = Column(Numeric(12, 2), nullable=False, default=0)

    # Route statistics at computation time
    total_stops = Column(Integer, nullable=False, default=0)
    successful_deliveries = Column(Integer, nullable=False, default=0)
    failed_deliveries = Column(Integer, nullable=False, default=0)
    failed_with_attempt = Column(Integer, nullable=False, default=0)

    rules_version = Column(Integer, nullable=False)
    computed_at = Column(DateTime(timezone=True), nullable=False)

    # Payment workflow
    status = Column(Enum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False, index=True)
    approved_by = Column(Integer, nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    paid_by = Column(Integer, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    payment_method = Column(Enum(PaymentMethod), nullable=True)
    payment_reference = Column(String(255), nullable=True)
    cancelled_by = Column(Integer, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancel_reason = Column(String(500), nullable=True)

    # Display-only route metadata
    route_created_at = Column(DateTime(timezone=True), nullable=True)
    route_completed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<DriverEarnings(id={self.id}, route={self.route_id}, total={self.total_earnings})>"
