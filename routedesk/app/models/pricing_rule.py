"""
Pricing Rule database model.

Stores the zone and tier tables used to price stops.
"""

from sqlalchemy import Column, Integer, Numeric, DateTime, Boolean, JSON
from sqlalchemy.sql import func
from routedesk.app.db.session import Base


class PricingRule(Base):
    """
    Pricing Rule model.

    Each row is one immutable version of the pricing tables. Only one version
    is active at a time; activating a new one deactivates the previous.
    `zones` holds serialized PricingZone definitions in match order.
    """
    __tablename__ = "pricing_rules"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    version = Column(Integer, nullable=False, unique=True)
    zones = Column(JSON, nullable=False, default=list)
    default_amount = Column(Numeric(12, 2), nullable=False)
    failed_attempt_factor = Column(Numeric(5, 4), nullable=False)

    is_active = Column(Boolean, default=True, nullable=False, index=True)
    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<PricingRule(id={self.id}, version={self.version}, active={self.is_active})>"
