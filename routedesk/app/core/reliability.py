"""
Reliability Utilities.

Retry-and-merge for conditional writes that lost a race.
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from routedesk.app.core.config import settings
from routedesk.app.core.exceptions import TransientStorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_on_conflict(
    operation: Callable[[], Awaitable[T]],
    attempts: int = None,
    backoff_seconds: float = 0.05
) -> T:
    """
    Run an async operation, re-running it when it raises TransientStorageError.

    The operation must be safe to repeat: it re-reads state on every attempt
    and the notification merge it performs is idempotent. The session used by
    the operation is rolled back by the service before the error surfaces.

    Raises:
        TransientStorageError: If every attempt lost its race.
    """
    attempts = attempts or settings.storage_conflict_retries
    last_error = None

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except TransientStorageError as exc:
            last_error = exc
            logger.warning(
                "Storage conflict, retrying",
                extra={"attempt": attempt, "max_attempts": attempts, "details": exc.details}
            )
            if attempt < attempts:
                await asyncio.sleep(backoff_seconds * attempt)

    raise last_error
