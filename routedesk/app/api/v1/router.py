"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from routedesk.app.api.v1.endpoints import routes, notifications, earnings, pricing, batches

router = APIRouter()

# Dispatcher edits, lifecycle and driver outcomes
router.include_router(routes.router)

# Change notifications and acknowledgments
router.include_router(notifications.router)
router.include_router(notifications.driver_router)

# Earnings and payment workflow
router.include_router(earnings.route_router)
router.include_router(earnings.router)

# Pricing rule versions
router.include_router(pricing.router)

# Batch reconciliation and repairs
router.include_router(batches.router)
