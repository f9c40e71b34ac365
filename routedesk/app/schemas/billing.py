"""
Earnings and Pricing Schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional, List

from routedesk.app.domain.billing.zone_pricing import PricingZone
from routedesk.app.models.billing_enums import PaymentStatus, PaymentMethod


class PricingRulesUpdate(BaseModel):
    """New pricing table version. Replaces the active one as a whole."""
    zones: List[PricingZone] = Field(..., min_length=1)
    default_amount: Decimal = Field(..., ge=0, decimal_places=2)
    failed_attempt_factor: Decimal = Field(..., ge=0, le=1)
    created_by: Optional[int] = None


class PricingRuleResponse(BaseModel):
    id: int
    version: int
    zones: List[PricingZone]
    default_amount: Decimal
    failed_attempt_factor: Decimal
    is_active: bool
    created_by: Optional[int]
    created_at: datetime

    class Config:
        from_attributes = True


class EarningsResponse(BaseModel):
    id: int
    route_id: int
    driver_id: int

    delivery_bonuses: Decimal
    failed_attempt_bonuses: Decimal
    total_earnings: Decimal

    total_stops: int
    successful_deliveries: int
    failed_deliveries: int
    failed_with_attempt: int

    rules_version: int
    computed_at: datetime

    status: PaymentStatus
    approved_by: Optional[int]
    approved_at: Optional[datetime]
    paid_by: Optional[int]
    paid_at: Optional[datetime]
    payment_method: Optional[PaymentMethod]
    payment_reference: Optional[str]
    cancelled_by: Optional[int]
    cancelled_at: Optional[datetime]
    cancel_reason: Optional[str]

    route_created_at: Optional[datetime]
    route_completed_at: Optional[datetime]

    class Config:
        from_attributes = True


class RouteError(BaseModel):
    route_id: int
    error: str


class RecalculateBatchRequest(BaseModel):
    route_ids: List[int] = Field(..., min_length=1)


class RecalculateBatchResponse(BaseModel):
    recalculated: List[int]
    errors: List[RouteError]


class GeneratePaymentsResponse(BaseModel):
    created: List[int]
    errors: List[RouteError]


class PaymentActionRequest(BaseModel):
    actor_id: Optional[int] = None


class MarkPaidRequest(BaseModel):
    actor_id: Optional[int] = None
    payment_method: PaymentMethod = PaymentMethod.PIX
    payment_reference: Optional[str] = Field(None, max_length=255)


class CancelPaymentRequest(BaseModel):
    actor_id: Optional[int] = None
    reason: Optional[str] = Field(None, max_length=500)
