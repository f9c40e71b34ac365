"""
Stop and change-record schemas.

These are the immutable value objects the diff engine and the earnings
calculator operate on. Route rows store stops as serialized Stop dicts.
"""

import enum
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from typing import Any, Iterable, List, Optional

from routedesk.app.core.exceptions import ValidationError
from routedesk.app.models.enums import StopOutcome


class ChangeType(str, enum.Enum):
    """Kinds of detected stop changes, in their sort rank."""
    SEQUENCE = "sequence"
    ADDRESS = "address"
    DATA = "data"
    ADDED = "added"
    REMOVED = "removed"


CHANGE_TYPE_RANK = {change_type: rank for rank, change_type in enumerate(ChangeType)}


class Stop(BaseModel):
    """A single delivery point on a route."""
    model_config = {"frozen": True}

    id: str = Field(..., min_length=1, max_length=100)
    order_ref: Optional[str] = Field(None, max_length=100)

    # Address
    address: Optional[str] = None  # Formatted address shown to the driver
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)
    postal_code: Optional[str] = None
    city: Optional[str] = None
    neighborhood: Optional[str] = None

    # Contact / instructions
    customer_name: Optional[str] = None
    phone: Optional[str] = None
    notes: Optional[str] = None
    time_window_start: Optional[str] = None
    time_window_end: Optional[str] = None

    # Outcome recorded by the driver
    outcome: StopOutcome = StopOutcome.PENDING
    attempted: bool = False  # Driver went to the location even if delivery failed

    # Display flags set by mark_modified_stops
    was_modified: bool = False
    modification_type: Optional[ChangeType] = None
    original_sequence: Optional[int] = None

    @field_validator("id")
    @classmethod
    def id_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("stop id must not be blank")
        return value

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lng is not None


class ChangeRecord(BaseModel):
    """
    One detected difference between two stop-list snapshots.

    stop_index is the position in the new list, or in the old list for
    removed stops.
    """
    model_config = {"frozen": True}

    stop_id: str
    stop_index: int = Field(..., ge=0)
    change_type: ChangeType
    old_value: Any = None
    new_value: Any = None

    def sort_key(self):
        return (self.stop_index, CHANGE_TYPE_RANK[self.change_type], self.stop_id)


class OriginPoint(BaseModel):
    """Route origin used as the reference for distance-tiered pricing."""
    model_config = {"frozen": True}

    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)
    address: Optional[str] = None

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lng is not None


def parse_stops(raw_stops: Iterable[Any]) -> List[Stop]:
    """
    Build Stop objects from stored or submitted dicts.

    Raises:
        ValidationError: If any stop is malformed.
    """
    stops = []
    for index, raw in enumerate(raw_stops or []):
        if isinstance(raw, Stop):
            stops.append(raw)
            continue
        try:
            stops.append(Stop.model_validate(raw))
        except PydanticValidationError as exc:
            raise ValidationError(
                f"Invalid stop at position {index}",
                details={"index": index, "errors": exc.errors(include_url=False, include_context=False)}
            )
    return stops


def dump_stops(stops: Iterable[Stop]) -> List[dict]:
    """Serialize stops for JSON storage."""
    return [stop.model_dump(mode="json") for stop in stops]


def parse_changes(raw_changes: Iterable[Any]) -> List[ChangeRecord]:
    return [ChangeRecord.model_validate(raw) for raw in raw_changes or []]


def dump_changes(changes: Iterable[ChangeRecord]) -> List[dict]:
    return [change.model_dump(mode="json") for change in changes]
