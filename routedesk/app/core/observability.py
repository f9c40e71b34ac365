"""
Logging setup and request observability.

Adds correlation IDs and structured logging context to requests.
"""

import sys
import time
import uuid
import logging
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# Root logger for the service; modules log through children of it
logger = logging.getLogger("routedesk")


def configure_logging(level: str = "INFO") -> logging.Logger:
    """
    Configure stdout logging for the service.

    Module loggers are created with logging.getLogger(__name__) and
    propagate to the "routedesk" logger configured here.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))

    logger.handlers = [handler]
    logger.setLevel(level.upper())
    logger.propagate = False

    # Reduce SQLAlchemy noise in logs
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return logger


class ObservabilityMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        correlation_id = request.headers.get("X-Correlation-ID", str(uuid.uuid4()))
        request.state.correlation_id = correlation_id

        start_time = time.perf_counter()
        response = await call_next(request)
        process_time = (time.perf_counter() - start_time) * 1000  # ms

        response.headers["X-Correlation-ID"] = correlation_id
        response.headers["X-Process-Time"] = str(round(process_time, 2))

        log_data = {
            "correlation_id": correlation_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": round(process_time, 2),
        }

        if response.status_code >= 500:
            logger.error("Request failed", extra=log_data)
        elif response.status_code >= 400:
            logger.warning("Request rejected", extra=log_data)
        else:
            logger.info("Request served", extra=log_data)

        return response
