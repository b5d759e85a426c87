"""Working state tests."""

import pytest

from acidjob.errors import UndeclaredAttributeError
from acidjob.state import WorkingState


def test_declared_attributes_are_read_write():
    state = WorkingState({"ride_id": None, "count": 0})

    state.ride_id = 42
    state["count"] += 1

    assert state.ride_id == 42
    assert state["count"] == 1
    assert state.snapshot() == {"ride_id": 42, "count": 1}


def test_undeclared_attribute_is_rejected():
    state = WorkingState({"ride_id": None})

    with pytest.raises(UndeclaredAttributeError):
        state.ride = 1
    with pytest.raises(UndeclaredAttributeError):
        state.ride
    with pytest.raises(AttributeError):
        state["rid"]


def test_declare_and_discard_change_the_attribute_set():
    state = WorkingState({"a": 1})

    state.declare("b")
    state.b = 2
    state.declare("a", default=99)
    state.discard("a")

    assert state.snapshot() == {"b": 2}
    assert "a" not in state


def test_snapshot_keeps_unset_values_and_is_a_copy():
    state = WorkingState({"items": [], "charge_id": None})
    snapshot = state.snapshot()
    state.items.append("x")

    assert snapshot == {"items": [], "charge_id": None}


def test_from_snapshot_does_not_share_state():
    stored = {"items": ["a"]}
    state = WorkingState.from_snapshot(stored)
    state.items.append("b")

    assert stored == {"items": ["a"]}
    assert state == {"items": ["a", "b"]}


def test_restore_overwrites_in_place_and_keeps_newer_declarations():
    state = WorkingState({"charge_id": None, "receipt": "pending"})
    state.restore({"charge_id": "ch_1"})

    assert state == {"charge_id": "ch_1", "receipt": "pending"}
