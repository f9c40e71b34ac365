"""
Pricing Rule Resolver.

Loads the active pricing rule version into a ZonePricingTable and stores new
versions. Callers load the table once per calculation batch.
"""

import logging
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, func
from typing import Optional

from routedesk.app.core.exceptions import PricingConfigurationError
from routedesk.app.domain.billing.zone_pricing import ZonePricingTable, default_pricing_table
from routedesk.app.models.pricing_rule import PricingRule

logger = logging.getLogger(__name__)


class PricingResolver:

    @staticmethod
    def to_table(rule: PricingRule) -> ZonePricingTable:
        return ZonePricingTable.from_config({
            "version": rule.version,
            "zones": rule.zones,
            "default_amount": rule.default_amount,
            "failed_attempt_factor": rule.failed_attempt_factor,
        })

    @staticmethod
    async def resolve_active_table(db: AsyncSession) -> ZonePricingTable:
        """
        Find the currently active pricing tables.

        Raises:
            PricingConfigurationError: If no active rule exists or it is malformed.
        """
        query = select(PricingRule).where(
            PricingRule.is_active == True
        ).order_by(PricingRule.version.desc()).limit(1)

        result = await db.execute(query)
        rule = result.scalar_one_or_none()

        if not rule:
            raise PricingConfigurationError("No active pricing rule found. Cannot compute earnings.")

        return PricingResolver.to_table(rule)

    @staticmethod
    async def get_active_rule(db: AsyncSession) -> Optional[PricingRule]:
        result = await db.execute(
            select(PricingRule).where(PricingRule.is_active == True).order_by(PricingRule.version.desc()).limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def activate(db: AsyncSession, table: ZonePricingTable, created_by: Optional[int] = None) -> PricingRule:
        """
        Store the table as a new version and make it the only active one.

        The version number is assigned here; the one carried by `table` is ignored.
        """
        current_max = (await db.execute(select(func.max(PricingRule.version)))).scalar()
        next_version = (current_max or 0) + 1

        await db.execute(
            update(PricingRule).where(PricingRule.is_active == True).values(is_active=False)
        )

        payload = table.model_dump(mode="json")
        rule = PricingRule(
            version=next_version,
            zones=payload["zones"],
            default_amount=table.default_amount,
            failed_attempt_factor=table.failed_attempt_factor,
            is_active=True,
            created_by=created_by,
        )
        db.add(rule)
        await db.flush()

        logger.info("Pricing rules activated", extra={"version": next_version, "zones": len(table.zones)})
        return rule

    @staticmethod
    async def ensure_default(db: AsyncSession, created_by: Optional[int] = None) -> Optional[PricingRule]:
        """
        Seed the business default table when no pricing rule exists yet.

        Returns:
            The seeded rule, or None when rules already exist (active or not).
        """
        existing = (await db.execute(select(func.count(PricingRule.id)))).scalar()
        if existing:
            return None
        return await PricingResolver.activate(db, default_pricing_table(), created_by=created_by)
