"""
Stop Diff Engine Tests.

Classification of stop-list edits, ordering of the change records, merging
into a pending change list and display marking.
"""

import pytest

from routedesk.app.core.exceptions import ValidationError
from routedesk.app.domain.routing.stop_diff import (
    MatchKey,
    diff_stops,
    mark_modified_stops,
    merge_change_sets,
    validate_stop_list,
)
from routedesk.app.schemas.stop import ChangeRecord, ChangeType, Stop, parse_stops


def stop(stop_id, address=None, **fields):
    return Stop(id=stop_id, address=address or f"Rua {stop_id}", **fields)


def types_of(changes):
    return [(change.stop_id, change.change_type) for change in changes]


def test_identical_lists_produce_no_changes():
    stops = [stop("P1"), stop("P2"), stop("P3")]
    assert diff_stops(stops, list(stops)) == []


def test_swap_produces_two_sequence_records():
    old = [stop("P1"), stop("P2")]
    new = [stop("P2"), stop("P1")]

    changes = diff_stops(old, new)

    assert types_of(changes) == [("P2", ChangeType.SEQUENCE), ("P1", ChangeType.SEQUENCE)]
    assert (changes[0].old_value, changes[0].new_value) == (1, 0)
    assert (changes[1].old_value, changes[1].new_value) == (0, 1)


def test_address_change_without_reorder():
    old = [stop("P1", "Rua A, 10"), stop("P2")]
    new = [stop("P1", "Rua A, 12"), stop("P2")]

    changes = diff_stops(old, new)

    assert len(changes) == 1
    change = changes[0]
    assert change.change_type == ChangeType.ADDRESS
    assert change.old_value == "Rua A, 10"
    assert change.new_value == "Rua A, 12"
    assert change.stop_index == 0


def test_coordinate_change_counts_as_address_change():
    old = [stop("P1", lat=-16.68, lng=-49.26)]
    new = [stop("P1", lat=-16.70, lng=-49.26)]

    assert types_of(diff_stops(old, new)) == [("P1", ChangeType.ADDRESS)]


def test_data_change_lists_only_differing_fields():
    old = [stop("P1", phone="111", notes="Portao azul")]
    new = [stop("P1", phone="222", notes="Portao azul")]

    changes = diff_stops(old, new)

    assert types_of(changes) == [("P1", ChangeType.DATA)]
    assert changes[0].old_value == {"phone": "111"}
    assert changes[0].new_value == {"phone": "222"}


def test_outcome_is_not_a_dispatcher_change():
    old = [stop("P1")]
    new = [stop("P1", outcome="completed", attempted=True)]

    assert diff_stops(old, new) == []


def test_one_stop_can_carry_several_records():
    old = [stop("P1", "Rua A", phone="1"), stop("P2")]
    new = [stop("P2"), stop("P1", "Rua B", phone="2")]

    changes = [change for change in diff_stops(old, new) if change.stop_id == "P1"]

    assert [change.change_type for change in changes] == [
        ChangeType.SEQUENCE,
        ChangeType.ADDRESS,
        ChangeType.DATA,
    ]


def test_replacement_at_same_position_is_added_and_removed():
    old = [stop("P1"), stop("P2")]
    new = [stop("P1"), stop("P9")]

    changes = diff_stops(old, new)

    assert set(types_of(changes)) == {("P9", ChangeType.ADDED), ("P2", ChangeType.REMOVED)}
    removed = next(change for change in changes if change.change_type == ChangeType.REMOVED)
    added = next(change for change in changes if change.change_type == ChangeType.ADDED)
    assert removed.stop_index == 1
    assert removed.old_value == "Rua P2"
    assert added.stop_index == 1
    assert added.new_value == "Rua P9"


def test_changes_are_sorted_by_index_then_type_then_id():
    old = [stop("A"), stop("B"), stop("C")]
    new = [stop("C"), stop("B", "Rua nova"), stop("D")]

    changes = diff_stops(old, new)

    assert changes == sorted(changes, key=ChangeRecord.sort_key)
    assert types_of(changes) == [
        ("C", ChangeType.SEQUENCE),
        ("A", ChangeType.REMOVED),
        ("B", ChangeType.ADDRESS),
        ("D", ChangeType.ADDED),
    ]


def test_added_to_empty_list():
    changes = diff_stops([], [stop("P1"), stop("P2")])
    assert types_of(changes) == [("P1", ChangeType.ADDED), ("P2", ChangeType.ADDED)]


def test_order_ref_matching_survives_new_stop_ids():
    old = [stop("tmp-1", "Rua 1", order_ref="ORD-1"), stop("tmp-2", "Rua 2", order_ref="ORD-2")]
    new = [stop("s-2", "Rua 2", order_ref="ORD-2"), stop("s-1", "Rua 1", order_ref="ORD-1")]

    by_id = diff_stops(old, new, MatchKey.STOP_ID)
    by_order = diff_stops(old, new, MatchKey.ORDER_REF)

    assert {change.change_type for change in by_id} == {ChangeType.ADDED, ChangeType.REMOVED}
    assert {change.change_type for change in by_order} == {ChangeType.SEQUENCE}


def test_duplicate_stop_id_is_rejected():
    with pytest.raises(ValidationError) as exc_info:
        diff_stops([stop("P1")], [stop("P1"), stop("P1")])
    assert exc_info.value.details["stop_id"] == "P1"


def test_duplicate_order_ref_is_rejected():
    with pytest.raises(ValidationError):
        validate_stop_list([stop("P1", order_ref="ORD-1"), stop("P2", order_ref="ORD-1")])


def test_malformed_stop_is_rejected_before_diffing():
    with pytest.raises(ValidationError) as exc_info:
        parse_stops([{"id": "P1", "lat": 120.0, "lng": 10.0}])
    assert exc_info.value.details["index"] == 0


def test_blank_stop_id_is_rejected():
    with pytest.raises(ValidationError):
        parse_stops([{"id": "   "}])


# --- Merging into a pending notification ---

def test_merge_keeps_first_old_and_latest_new_value():
    first = diff_stops([stop("P1", "Rua A")], [stop("P1", "Rua B")])
    second = diff_stops([stop("P1", "Rua B")], [stop("P1", "Rua C")])

    merged = merge_change_sets(first, second)

    assert len(merged) == 1
    assert merged[0].old_value == "Rua A"
    assert merged[0].new_value == "Rua C"


def test_merge_is_idempotent():
    changes = diff_stops([stop("P1"), stop("P2")], [stop("P2"), stop("P1", "Rua X")])

    once = merge_change_sets([], changes)
    twice = merge_change_sets(once, changes)

    assert once == twice


def test_merge_combines_data_fields():
    first = diff_stops([stop("P1", phone="1", notes="a")], [stop("P1", phone="2", notes="a")])
    second = diff_stops([stop("P1", phone="2", notes="a")], [stop("P1", phone="2", notes="b")])

    merged = merge_change_sets(first, second)

    assert merged[0].old_value == {"phone": "1", "notes": "a"}
    assert merged[0].new_value == {"phone": "2", "notes": "b"}


def test_merge_refreshes_stop_index_from_latest_diff():
    first = diff_stops([stop("P1", "Rua A"), stop("P2")], [stop("P1", "Rua B"), stop("P2")])
    second = diff_stops([stop("P1", "Rua B"), stop("P2")], [stop("P2"), stop("P1", "Rua B")])

    merged = merge_change_sets(first, second)
    address = next(change for change in merged if change.change_type == ChangeType.ADDRESS)

    assert address.stop_index == 1


def test_merge_keeps_records_of_other_stops():
    first = diff_stops([stop("P1")], [stop("P1"), stop("P2")])
    second = diff_stops([stop("P1"), stop("P2")], [stop("P1", "Rua nova"), stop("P2")])

    merged = merge_change_sets(first, second)

    assert set(types_of(merged)) == {("P2", ChangeType.ADDED), ("P1", ChangeType.ADDRESS)}


# --- Display marking ---

def test_mark_modified_stops_uses_priority_and_original_sequence():
    old = [stop("P1"), stop("P2", "Rua A"), stop("P3")]
    new = [stop("P2", "Rua B"), stop("P1"), stop("P3")]

    marked = mark_modified_stops(new, diff_stops(old, new))
    by_id = {item.id: item for item in marked}

    assert by_id["P2"].was_modified is True
    assert by_id["P2"].modification_type == ChangeType.ADDRESS
    assert by_id["P1"].modification_type == ChangeType.SEQUENCE
    assert by_id["P1"].original_sequence == 0
    assert by_id["P3"].was_modified is False
