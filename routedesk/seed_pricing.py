"""
Database seeding script for the default pricing rules.

Creates tables if needed and stores the business default zone table as
pricing rule version 1. Does nothing when pricing rules already exist.

Usage:
    python -m routedesk.seed_pricing
"""

import asyncio

from routedesk.app.db.session import AsyncSessionLocal, Base, engine
from routedesk.app.domain.billing.pricing_resolver import PricingResolver

# Import models to ensure they are registered with Base
from routedesk.app.models.batch import Batch
from routedesk.app.models.route import Route
from routedesk.app.models.order import Order
from routedesk.app.models.stop_assignment import StopAssignment
from routedesk.app.models.notification import RouteChangeNotification
from routedesk.app.models.pricing_rule import PricingRule
from routedesk.app.models.driver_earnings import DriverEarnings
from routedesk.app.models.audit_log import AuditLog


async def seed_pricing():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as db:
        print("🌱 Starting pricing rule seeding...")
        rule = await PricingResolver.ensure_default(db)
        if rule is None:
            print("ℹ️  Pricing rules already exist, skipping seeding")
        else:
            await db.commit()
            print(f"✅ Created pricing rule version {rule.version} ({len(rule.zones)} zones)")

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(seed_pricing())
