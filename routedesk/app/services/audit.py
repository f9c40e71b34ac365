"""
Audit logging service.

Records dispatcher edits, driver acknowledgments, payment actions and
reconciliation repairs. Entries are added to the caller's transaction.
"""

from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from routedesk.app.models.audit_log import AuditLog


class AuditAction:
    """Standardized audit action constants."""

    # Route lifecycle
    ROUTE_STOPS_UPDATED = "ROUTE_STOPS_UPDATED"
    ROUTE_DISPATCHED = "ROUTE_DISPATCHED"
    ROUTE_STARTED = "ROUTE_STARTED"
    ROUTE_COMPLETED = "ROUTE_COMPLETED"
    STOP_OUTCOME_RECORDED = "STOP_OUTCOME_RECORDED"

    # Notifications
    NOTIFICATION_ACKNOWLEDGED = "NOTIFICATION_ACKNOWLEDGED"

    # Payments
    PRICING_RULES_ACTIVATED = "PRICING_RULES_ACTIVATED"
    PAYMENT_APPROVED = "PAYMENT_APPROVED"
    PAYMENT_PAID = "PAYMENT_PAID"
    PAYMENT_CANCELLED = "PAYMENT_CANCELLED"

    # Reconciliation repairs
    REPAIR_STOP_REMOVED = "REPAIR_STOP_REMOVED"
    REPAIR_DUPLICATE_RESOLVED = "REPAIR_DUPLICATE_RESOLVED"
    REPAIR_DRIVER_CLEARED = "REPAIR_DRIVER_CLEARED"
    REPAIR_ORDER_UNLINKED = "REPAIR_ORDER_UNLINKED"
    REPAIR_STOP_COUNT_SYNCED = "REPAIR_STOP_COUNT_SYNCED"
    REPAIR_ROUTE_RELINKED = "REPAIR_ROUTE_RELINKED"


async def log_event(
    db: AsyncSession,
    action: str,
    actor_id: Optional[int] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[Any] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> AuditLog:
    """
    Add an audit entry to the current transaction.

    Args:
        db: Database session
        action: Action being performed (use AuditAction constants)
        actor_id: ID of the dispatcher/driver/admin (None for system actions)
        entity_type: Kind of record acted upon ("route", "notification", ...)
        entity_id: ID of that record
        metadata: Additional context as JSON

    Returns:
        Created AuditLog instance (flushed, not committed)
    """
    audit_log = AuditLog(
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        meta_data=metadata
    )

    db.add(audit_log)
    await db.flush()

    return audit_log


async def get_audit_trail(
    db: AsyncSession,
    entity_type: Optional[str] = None,
    entity_id: Optional[Any] = None,
    action: Optional[str] = None,
    limit: int = 100
) -> list[AuditLog]:
    """
    Retrieve audit trail with optional filtering, most recent first.
    """
    query = select(AuditLog).order_by(desc(AuditLog.timestamp), desc(AuditLog.id))

    if entity_type:
        query = query.where(AuditLog.entity_type == entity_type)

    if entity_id is not None:
        query = query.where(AuditLog.entity_id == str(entity_id))

    if action:
        query = query.where(AuditLog.action == action)

    query = query.limit(limit)

    result = await db.execute(query)
    return list(result.scalars().all())
