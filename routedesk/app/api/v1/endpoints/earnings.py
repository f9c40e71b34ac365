"""
Earnings API Endpoints.

Recalculation and the payment workflow of driver earnings.
"""

from fastapi import APIRouter, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from typing import List

from routedesk.app.db.session import get_db, get_session_factory
from routedesk.app.domain.billing.earnings_service import EarningsService
from routedesk.app.schemas.billing import (
    CancelPaymentRequest,
    EarningsResponse,
    GeneratePaymentsResponse,
    MarkPaidRequest,
    PaymentActionRequest,
    RecalculateBatchRequest,
    RecalculateBatchResponse,
)
from routedesk.app.services.route_service import RouteService

router = APIRouter(prefix="/earnings", tags=["Earnings"])
route_router = APIRouter(prefix="/routes", tags=["Earnings"])


@route_router.post("/{route_id}/earnings/recalculate", response_model=EarningsResponse)
async def recalculate_route_earnings(
    route_id: int = Path(..., description="Route ID"),
    db: AsyncSession = Depends(get_db)
):
    return await EarningsService.recalculate_route(db, route_id)


@route_router.get("/{route_id}/earnings", response_model=List[EarningsResponse])
async def get_route_earnings(
    route_id: int = Path(..., description="Route ID"),
    db: AsyncSession = Depends(get_db)
):
    await RouteService.get_route(db, route_id)
    return await EarningsService.get_for_route(db, route_id)


@router.post("/recalculate", response_model=RecalculateBatchResponse)
async def recalculate_earnings_batch(
    payload: RecalculateBatchRequest,
    session_factory: async_sessionmaker = Depends(get_session_factory)
):
    """
    Recalculate many routes with one pricing table load.

    Per-route failures are reported in `errors`; a pricing configuration
    error fails the whole request.
    """
    return await EarningsService.recalculate_routes(session_factory, payload.route_ids)


@router.post("/generate", response_model=GeneratePaymentsResponse)
async def generate_pending_payments(db: AsyncSession = Depends(get_db)):
    """Create pending earnings for completed routes that have none."""
    return await EarningsService.generate_pending_payments(db)


@router.post("/{earnings_id}/approve", response_model=EarningsResponse)
async def approve_payment(
    payload: PaymentActionRequest,
    earnings_id: int = Path(..., description="Earnings ID"),
    db: AsyncSession = Depends(get_db)
):
    earnings = await EarningsService.approve_payment(db, earnings_id, actor_id=payload.actor_id)
    await db.commit()
    return earnings


@router.post("/{earnings_id}/pay", response_model=EarningsResponse)
async def mark_payment_paid(
    payload: MarkPaidRequest,
    earnings_id: int = Path(..., description="Earnings ID"),
    db: AsyncSession = Depends(get_db)
):
    earnings = await EarningsService.mark_paid(
        db,
        earnings_id,
        actor_id=payload.actor_id,
        payment_method=payload.payment_method,
        payment_reference=payload.payment_reference,
    )
    await db.commit()
    return earnings


@router.post("/{earnings_id}/cancel", response_model=EarningsResponse)
async def cancel_payment(
    payload: CancelPaymentRequest,
    earnings_id: int = Path(..., description="Earnings ID"),
    db: AsyncSession = Depends(get_db)
):
    earnings = await EarningsService.cancel_payment(db, earnings_id, actor_id=payload.actor_id, reason=payload.reason)
    await db.commit()
    return earnings
