"""
Order database model.

Orders are the source records that stops fulfil. Linkage to the batch and
route is stored as back-references on the order.
"""

from sqlalchemy import Column, Integer, String, DateTime, Enum, ForeignKey
from sqlalchemy.sql import func
from routedesk.app.db.session import Base
from routedesk.app.models.enums import OrderLogisticsStatus


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Order reference carried by the stop (Stop.order_ref)
    code = Column(String(50), nullable=False, unique=True, index=True)

    # Linkage
    batch_id = Column(Integer, ForeignKey("batches.id"), nullable=True, index=True)
    route_id = Column(Integer, ForeignKey("routes.id"), nullable=True, index=True)
    logistics_status = Column(Enum(OrderLogisticsStatus), default=OrderLogisticsStatus.PENDING, nullable=False)

    # Customer / address
    customer_name = Column(String(255), nullable=True)
    customer_phone = Column(String(50), nullable=True)
    address = Column(String(500), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Order(id={self.id}, code='{self.code}', batch={self.batch_id}, route={self.route_id})>"
