"""
Stop Diff Engine.

Compares two snapshots of a route's stop list and classifies what changed,
stop by stop. Everything here is pure: no I/O, no clock, no shared state.

Classification for a matched stop (same key in both snapshots):
- sequence: its index moved (old index -> new index, 0-based)
- address: formatted address or coordinates differ
- data: any other tracked field differs (contact, notes, order, time window)
A stop can produce several records; they are never collapsed.
Unmatched keys produce independent `added` / `removed` records; a stop
replaced at the same position is reported as both, never as a "replace".
"""

import enum
from typing import Dict, Iterable, List, Sequence, Tuple

from routedesk.app.core.exceptions import ValidationError
from routedesk.app.schemas.stop import ChangeRecord, ChangeType, Stop


class MatchKey(str, enum.Enum):
    """How stops in the two snapshots are paired."""
    STOP_ID = "stop_id"
    ORDER_REF = "order_ref"  # Falls back to stop id for stops without an order


# Fields whose change is reported as `data`
DATA_FIELDS = (
    "customer_name",
    "phone",
    "notes",
    "order_ref",
    "postal_code",
    "city",
    "neighborhood",
    "time_window_start",
    "time_window_end",
)

# Display priority when a stop carries several changes (first wins)
MODIFICATION_PRIORITY = (
    ChangeType.REMOVED,
    ChangeType.ADDED,
    ChangeType.ADDRESS,
    ChangeType.SEQUENCE,
    ChangeType.DATA,
)


def _stop_key(stop: Stop, match_key: MatchKey) -> Tuple[str, str]:
    if match_key == MatchKey.ORDER_REF and stop.order_ref:
        return ("order", stop.order_ref)
    return ("id", stop.id)


def validate_stop_list(stops: Sequence[Stop], label: str = "stop list") -> None:
    """
    Check the identity invariants of one stop list.

    Raises:
        ValidationError: If a stop id or an order reference appears twice.
    """
    seen_ids = set()
    seen_orders = set()
    for index, stop in enumerate(stops):
        if stop.id in seen_ids:
            raise ValidationError(
                f"Duplicate stop id '{stop.id}' in {label}",
                details={"stop_id": stop.id, "index": index}
            )
        seen_ids.add(stop.id)

        if stop.order_ref:
            if stop.order_ref in seen_orders:
                raise ValidationError(
                    f"Duplicate order reference '{stop.order_ref}' in {label}",
                    details={"order_ref": stop.order_ref, "index": index}
                )
            seen_orders.add(stop.order_ref)


def _index_stops(stops: Sequence[Stop], match_key: MatchKey, label: str) -> Dict[Tuple[str, str], Tuple[int, Stop]]:
    validate_stop_list(stops, label)
    return {_stop_key(stop, match_key): (index, stop) for index, stop in enumerate(stops)}


def _address_changed(old: Stop, new: Stop) -> bool:
    return old.address != new.address or old.lat != new.lat or old.lng != new.lng


def _data_delta(old: Stop, new: Stop) -> Tuple[dict, dict]:
    old_values = {}
    new_values = {}
    for field in DATA_FIELDS:
        before = getattr(old, field)
        after = getattr(new, field)
        if before != after:
            old_values[field] = before
            new_values[field] = after
    return old_values, new_values


def diff_stops(
    old_stops: Sequence[Stop],
    new_stops: Sequence[Stop],
    match_key: MatchKey = MatchKey.STOP_ID
) -> List[ChangeRecord]:
    """
    Compare two stop-list snapshots.

    Args:
        old_stops: Stop list before the edit
        new_stops: Stop list after the edit
        match_key: Pairing rule. Use ORDER_REF when the caller cannot
            guarantee stop ids survive the edit.

    Returns:
        Change records sorted by stop index, then change type, then stop id.
        An empty list when nothing differs.

    Raises:
        ValidationError: If either list breaks the identity invariants.
    """
    old_index = _index_stops(old_stops, match_key, "old stop list")
    new_index = _index_stops(new_stops, match_key, "new stop list")

    changes: List[ChangeRecord] = []

    for key, (index, old_stop) in old_index.items():
        if key not in new_index:
            changes.append(ChangeRecord(
                stop_id=old_stop.id,
                stop_index=index,
                change_type=ChangeType.REMOVED,
                old_value=old_stop.address,
            ))

    for key, (index, new_stop) in new_index.items():
        matched = old_index.get(key)
        if matched is None:
            changes.append(ChangeRecord(
                stop_id=new_stop.id,
                stop_index=index,
                change_type=ChangeType.ADDED,
                new_value=new_stop.address,
            ))
            continue

        previous_index, old_stop = matched

        if previous_index != index:
            changes.append(ChangeRecord(
                stop_id=new_stop.id,
                stop_index=index,
                change_type=ChangeType.SEQUENCE,
                old_value=previous_index,
                new_value=index,
            ))

        if _address_changed(old_stop, new_stop):
            changes.append(ChangeRecord(
                stop_id=new_stop.id,
                stop_index=index,
                change_type=ChangeType.ADDRESS,
                old_value=old_stop.address,
                new_value=new_stop.address,
            ))

        old_values, new_values = _data_delta(old_stop, new_stop)
        if new_values:
            changes.append(ChangeRecord(
                stop_id=new_stop.id,
                stop_index=index,
                change_type=ChangeType.DATA,
                old_value=old_values,
                new_value=new_values,
            ))

    return sorted(changes, key=ChangeRecord.sort_key)


def _merge_pair(earlier: ChangeRecord, later: ChangeRecord) -> ChangeRecord:
    if later.change_type == ChangeType.DATA and isinstance(earlier.old_value, dict) and isinstance(later.old_value, dict):
        return later.model_copy(update={
            "old_value": {**later.old_value, **earlier.old_value},
            "new_value": {**earlier.new_value, **later.new_value},
        })
    return later.model_copy(update={"old_value": earlier.old_value})


def merge_change_sets(existing: Iterable[ChangeRecord], incoming: Iterable[ChangeRecord]) -> List[ChangeRecord]:
    """
    Fold a new diff into a pending change list.

    Records are deduplicated per (stop, change type): the earliest old value
    and the latest new value survive, field by field for `data` records.
    Nothing is dropped, even a move that was later undone: the driver may
    already have seen it. Stop indexes are refreshed from the newest diff so
    the list reflects the current stop order.
    """
    existing = list(existing)
    incoming = list(incoming)

    latest_index = {
        change.stop_id: change.stop_index
        for change in incoming
        if change.change_type != ChangeType.REMOVED
    }

    merged: Dict[Tuple[str, ChangeType], ChangeRecord] = {}
    for change in existing + incoming:
        key = (change.stop_id, change.change_type)
        previous = merged.get(key)
        merged[key] = change if previous is None else _merge_pair(previous, change)

    result = []
    for (stop_id, change_type), change in merged.items():
        if change_type != ChangeType.REMOVED and stop_id in latest_index:
            change = change.model_copy(update={"stop_index": latest_index[stop_id]})
        result.append(change)

    return sorted(result, key=ChangeRecord.sort_key)


def mark_modified_stops(stops: Sequence[Stop], changes: Iterable[ChangeRecord]) -> List[Stop]:
    """
    Flag stops touched by a change set for the driver UI.

    Each modified stop gets its highest-priority change type and, for moved
    stops, the sequence it had before.
    """
    by_stop: Dict[str, List[ChangeRecord]] = {}
    for change in changes:
        by_stop.setdefault(change.stop_id, []).append(change)

    marked = []
    for stop in stops:
        stop_changes = by_stop.get(stop.id)
        if not stop_changes:
            marked.append(stop)
            continue

        primary = min(stop_changes, key=lambda change: MODIFICATION_PRIORITY.index(change.change_type))
        marked.append(stop.model_copy(update={
            "was_modified": True,
            "modification_type": primary.change_type,
            "original_sequence": primary.old_value if primary.change_type == ChangeType.SEQUENCE else None,
        }))
    return marked
