"""
FastAPI Application Entry Point.

This is the main application file for the RouteDesk Backend.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from routedesk.app.core.config import settings
from routedesk.app.core.observability import ObservabilityMiddleware, configure_logging
from routedesk.app.core.redis_client import ping_redis
from routedesk.app.api.v1.router import router as api_v1_router
from routedesk.app.db.session import engine, Base, AsyncSessionLocal
from routedesk.app.domain.billing.pricing_resolver import PricingResolver
from routedesk.app.services.events import event_bus
from routedesk.app.services.push import LoggingPushTransport, register_push_transport
from routedesk.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)

# Import models to ensure they are registered with Base
from routedesk.app.models.batch import Batch
from routedesk.app.models.route import Route
from routedesk.app.models.order import Order
from routedesk.app.models.stop_assignment import StopAssignment
from routedesk.app.models.notification import RouteChangeNotification
from routedesk.app.models.pricing_rule import PricingRule
from routedesk.app.models.driver_earnings import DriverEarnings
from routedesk.app.models.audit_log import AuditLog

logger = configure_logging(settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Creates database tables on startup.
    2. Seeds the default pricing table when none exists.
    3. Wires the push transport to the event bus.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as db:
        seeded = await PricingResolver.ensure_default(db)
        await db.commit()
        if seeded:
            logger.info("Default pricing rules seeded", extra={"version": seeded.version})

    register_push_transport(event_bus, LoggingPushTransport())
    yield
    event_bus.clear_subscribers()
    await engine.dispose()


# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Route change notifications, driver earnings and batch reconciliation for last-mile delivery",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Status, application information and Redis reachability
    """
    redis_ok = await ping_redis()
    return {
        "status": "healthy" if redis_ok else "degraded",
        "app_name": settings.app_name,
        "version": settings.api_version,
        "redis": "up" if redis_ok else "down",
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")


@app.get("/", tags=["Root"])
async def root():
    return {
        "message": "Welcome to RouteDesk Backend API",
        "docs": "/docs",
        "health": "/health",
    }
