"""
Pricing Rules API Endpoints.

Zone and tier tables are versioned: an update stores a new version and
deactivates the previous one. Stored earnings keep the version they were
computed with until recalculated.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from routedesk.app.core.exceptions import NotFoundError
from routedesk.app.db.session import get_db
from routedesk.app.domain.billing.pricing_resolver import PricingResolver
from routedesk.app.domain.billing.zone_pricing import ZonePricingTable
from routedesk.app.schemas.billing import PricingRuleResponse, PricingRulesUpdate
from routedesk.app.services.audit import AuditAction, log_event

router = APIRouter(prefix="/pricing", tags=["Pricing"])


@router.get("/rules/active", response_model=PricingRuleResponse)
async def get_active_pricing_rules(db: AsyncSession = Depends(get_db)):
    rule = await PricingResolver.get_active_rule(db)
    if not rule:
        raise NotFoundError("Active pricing rule")
    return rule


@router.put("/rules", response_model=PricingRuleResponse)
async def replace_pricing_rules(
    payload: PricingRulesUpdate,
    db: AsyncSession = Depends(get_db)
):
    """
    Activate a new pricing table version.
    """
    table = ZonePricingTable.from_config({
        "zones": [zone.model_dump() for zone in payload.zones],
        "default_amount": payload.default_amount,
        "failed_attempt_factor": payload.failed_attempt_factor,
    })
    rule = await PricingResolver.activate(db, table, created_by=payload.created_by)

    await log_event(
        db,
        AuditAction.PRICING_RULES_ACTIVATED,
        actor_id=payload.created_by,
        entity_type="pricing_rule",
        entity_id=rule.id,
        metadata={"version": rule.version, "zones": len(table.zones)}
    )
    await db.commit()
    await db.refresh(rule)
    return rule
