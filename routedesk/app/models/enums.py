"""
Route, stop and order enumerations.
"""

import enum


class RouteStatus(str, enum.Enum):
    """
    Route lifecycle.

    DRAFT routes are invisible to drivers; change notifications only apply
    from DISPATCHED onward.
    """
    DRAFT = "draft"
    DISPATCHED = "dispatched"  # Driver assigned, route handed over
    IN_PROGRESS = "in_progress"  # Driver has started
    COMPLETED = "completed"


class StopOutcome(str, enum.Enum):
    """Delivery outcome recorded by the driver."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class BatchStatus(str, enum.Enum):
    """Batch (service) status."""
    OPEN = "open"  # Still distributing stops into routes
    DISPATCHED = "dispatched"
    CLOSED = "closed"


class OrderLogisticsStatus(str, enum.Enum):
    """Logistics status of a source order."""
    PENDING = "pending"  # Not linked to any batch yet
    ROUTED = "routed"  # Linked to a batch/route
    IN_ROUTE = "in_route"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Statuses in which a driver holds the route and must hear about edits
NOTIFIABLE_ROUTE_STATUSES = (RouteStatus.DISPATCHED, RouteStatus.IN_PROGRESS)
