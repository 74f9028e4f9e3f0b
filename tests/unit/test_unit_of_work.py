"""
Unit tests for the unit-of-work builder.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from db.unit_of_work import OperationKind, UnitOfWork, to_row
from models.appointment import AppointmentStatus


def test_to_row_serializes_python_values():
    """Datetimes, decimals and enums become JSON column values."""
    start = datetime(2026, 1, 15, 11, 0, tzinfo=timezone(timedelta(hours=1)))
    row = to_row(
        {
            "start_time": start,
            "price": Decimal("26.25"),
            "status": AppointmentStatus.SCHEDULED,
            "is_booked": False,
        }
    )

    assert row == {
        "start_time": "2026-01-15T10:00:00+00:00",
        "price": "26.25",
        "status": "scheduled",
        "is_booked": False,
    }


def test_operations_keep_order_and_labels():
    """Operations are recorded in order and found by label."""
    unit = UnitOfWork("reserve_slot")
    unit.update(
        "availability_slots",
        {"is_booked": True},
        match={"id": "slot-1", "is_booked": False},
        label="claim_slot",
        expect_rows=1,
    )
    unit.insert("appointments", {"patient_id": "p1"}, label="insert_appointment")

    assert len(unit) == 2
    assert unit.index_of("insert_appointment") == 1
    assert unit.operations[0].kind == OperationKind.UPDATE
    assert unit.operations[0].expect_rows == 1
    assert unit.operations[1].expect_rows == 1


def test_payload_is_json_ready():
    """Payload matches the shape read by apply_unit_of_work."""
    unit = UnitOfWork("delete_slot")
    unit.delete("availability_slots", match={"id": "slot-1"}, label="delete_slot")

    assert unit.payload() == [
        {
            "kind": "delete",
            "table": "availability_slots",
            "label": "delete_slot",
            "values": {},
            "match": {"id": "slot-1"},
            "expect_rows": None,
        }
    ]


def test_unfiltered_writes_are_rejected():
    """Updates and deletes must carry a match filter."""
    unit = UnitOfWork("bad")

    with pytest.raises(ValueError, match="Unfiltered updates"):
        unit.update("coaches", {"balance": "0"}, match={}, label="x")
    with pytest.raises(ValueError, match="Unfiltered deletes"):
        unit.delete("coaches", match={}, label="x")


def test_index_of_unknown_label():
    with pytest.raises(KeyError):
        UnitOfWork("empty").index_of("missing")
