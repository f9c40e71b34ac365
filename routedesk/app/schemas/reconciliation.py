"""
Reconciliation Schemas.
"""

import enum
from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List, Dict, Any


class ViolationKind(str, enum.Enum):
    DANGLING_STOP_REFERENCE = "dangling_stop_reference"
    DUPLICATE_ASSIGNMENT = "duplicate_assignment"
    DRIVER_ON_DRAFT_ROUTE = "driver_on_draft_route"
    MISSING_DRIVER = "missing_driver"
    ORDER_WITHOUT_STOP = "order_without_stop"
    STOP_COUNT_MISMATCH = "stop_count_mismatch"
    ORPHAN_ROUTE = "orphan_route"


class Violation(BaseModel):
    """One cross-entity inconsistency found in a batch. Reported, never auto-fixed."""
    kind: ViolationKind
    batch_id: int
    route_ids: List[int] = Field(default_factory=list)
    stop_id: Optional[str] = None
    order_id: Optional[int] = None
    description: str
    details: Dict[str, Any] = Field(default_factory=dict)


class ReconciliationReport(BaseModel):
    batch_id: int
    checked_at: datetime
    route_count: int
    violations: List[Violation]
    consistent: bool


# Repair requests

class RemoveStopRequest(BaseModel):
    route_id: int
    stop_id: str = Field(..., min_length=1)
    actor_id: Optional[int] = None


class ResolveDuplicateRequest(BaseModel):
    stop_id: str = Field(..., min_length=1)
    keep_route_id: int
    actor_id: Optional[int] = None


class RouteRepairRequest(BaseModel):
    route_id: int
    actor_id: Optional[int] = None


class OrderRepairRequest(BaseModel):
    order_id: int
    actor_id: Optional[int] = None


class BatchRepairRequest(BaseModel):
    actor_id: Optional[int] = None
