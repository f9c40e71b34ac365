"""
Batch Reconciliation API Endpoints.

The report is read-only. Repairs are explicit, one violation at a time, and
audited; each returns the fresh report of the batch.
"""

from fastapi import APIRouter, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession

from routedesk.app.db.session import get_db
from routedesk.app.schemas.reconciliation import (
    BatchRepairRequest,
    OrderRepairRequest,
    ReconciliationReport,
    RemoveStopRequest,
    ResolveDuplicateRequest,
    RouteRepairRequest,
)
from routedesk.app.services.reconciliation import ReconciliationChecker
from routedesk.app.services.reconciliation_repairs import ReconciliationRepairs

router = APIRouter(prefix="/batches", tags=["Batches - Reconciliation"])


@router.get("/{batch_id}/reconciliation", response_model=ReconciliationReport)
async def get_reconciliation_report(
    batch_id: int = Path(..., description="Batch ID"),
    db: AsyncSession = Depends(get_db)
):
    return await ReconciliationChecker.check_batch(db, batch_id)


@router.post("/{batch_id}/repairs/remove-stop", response_model=ReconciliationReport)
async def repair_remove_stop(
    payload: RemoveStopRequest,
    batch_id: int = Path(..., description="Batch ID"),
    db: AsyncSession = Depends(get_db)
):
    """Remove a dangling or duplicated stop from one route. The driver is notified."""
    await ReconciliationRepairs.remove_stop_from_route(db, payload.route_id, payload.stop_id, actor_id=payload.actor_id)
    return await ReconciliationChecker.check_batch(db, batch_id)


@router.post("/{batch_id}/repairs/resolve-duplicate", response_model=ReconciliationReport)
async def repair_resolve_duplicate(
    payload: ResolveDuplicateRequest,
    batch_id: int = Path(..., description="Batch ID"),
    db: AsyncSession = Depends(get_db)
):
    await ReconciliationRepairs.resolve_duplicate_assignment(
        db, batch_id, payload.stop_id, payload.keep_route_id, actor_id=payload.actor_id
    )
    return await ReconciliationChecker.check_batch(db, batch_id)


@router.post("/{batch_id}/repairs/clear-driver", response_model=ReconciliationReport)
async def repair_clear_driver(
    payload: RouteRepairRequest,
    batch_id: int = Path(..., description="Batch ID"),
    db: AsyncSession = Depends(get_db)
):
    await ReconciliationRepairs.clear_route_driver(db, payload.route_id, actor_id=payload.actor_id)
    return await ReconciliationChecker.check_batch(db, batch_id)


@router.post("/{batch_id}/repairs/unlink-order", response_model=ReconciliationReport)
async def repair_unlink_order(
    payload: OrderRepairRequest,
    batch_id: int = Path(..., description="Batch ID"),
    db: AsyncSession = Depends(get_db)
):
    await ReconciliationRepairs.unlink_order(db, payload.order_id, actor_id=payload.actor_id)
    return await ReconciliationChecker.check_batch(db, batch_id)


@router.post("/{batch_id}/repairs/sync-stop-count", response_model=ReconciliationReport)
async def repair_sync_stop_count(
    payload: BatchRepairRequest,
    batch_id: int = Path(..., description="Batch ID"),
    db: AsyncSession = Depends(get_db)
):
    await ReconciliationRepairs.sync_batch_stop_count(db, batch_id, actor_id=payload.actor_id)
    return await ReconciliationChecker.check_batch(db, batch_id)


@router.post("/{batch_id}/repairs/relink-route", response_model=ReconciliationReport)
async def repair_relink_route(
    payload: RouteRepairRequest,
    batch_id: int = Path(..., description="Batch ID"),
    db: AsyncSession = Depends(get_db)
):
    await ReconciliationRepairs.relink_route_to_batch(db, batch_id, payload.route_id, actor_id=payload.actor_id)
    return await ReconciliationChecker.check_batch(db, batch_id)
