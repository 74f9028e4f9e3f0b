"""
Atomic unit of work for multi-row writes.

A unit of work is a list of conditional operations that the datastore applies
all-or-nothing inside one transaction (see ``apply_unit_of_work`` in
``db/migrations/001_booking_engine.sql``). An operation with ``expect_rows``
set fails the whole unit when it matches a different number of rows, which is
how a conditional write such as "mark slot booked only if it is still free"
is expressed.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from utils.datetime_utils import to_iso_string

CONFLICT_SIGNAL = "unit_of_work_conflict"


class OperationKind(str, Enum):
    """Kind of row operation."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class Operation(BaseModel):
    """A single row operation of a unit of work."""

    kind: OperationKind
    table: str
    label: str
    values: Dict[str, Any] = Field(default_factory=dict)
    match: Dict[str, Any] = Field(default_factory=dict)
    expect_rows: Optional[int] = None


def to_column_value(value: Any) -> Any:
    """Convert a Python value into its JSON column representation."""
    if isinstance(value, datetime):
        return to_iso_string(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    return value


def to_row(data: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a mapping of Python values into a JSON-ready row."""
    return {key: to_column_value(value) for key, value in data.items()}


class UnitOfWork:
    """Builder collecting operations that must commit together."""

    def __init__(self, name: str):
        self.name = name
        self.operations: List[Operation] = []

    def __len__(self) -> int:
        return len(self.operations)

    def insert(self, table: str, values: Dict[str, Any], label: str) -> "UnitOfWork":
        self.operations.append(
            Operation(
                kind=OperationKind.INSERT,
                table=table,
                label=label,
                values=to_row(values),
                expect_rows=1,
            )
        )
        return self

    def update(
        self,
        table: str,
        values: Dict[str, Any],
        match: Dict[str, Any],
        label: str,
        expect_rows: Optional[int] = None,
    ) -> "UnitOfWork":
        if not match:
            raise ValueError("Unfiltered updates are not allowed in a unit of work")
        self.operations.append(
            Operation(
                kind=OperationKind.UPDATE,
                table=table,
                label=label,
                values=to_row(values),
                match=to_row(match),
                expect_rows=expect_rows,
            )
        )
        return self

    def delete(
        self,
        table: str,
        match: Dict[str, Any],
        label: str,
        expect_rows: Optional[int] = None,
    ) -> "UnitOfWork":
        if not match:
            raise ValueError("Unfiltered deletes are not allowed in a unit of work")
        self.operations.append(
            Operation(
                kind=OperationKind.DELETE,
                table=table,
                label=label,
                match=to_row(match),
                expect_rows=expect_rows,
            )
        )
        return self

    def payload(self) -> List[Dict[str, Any]]:
        """Serialize operations for the apply_unit_of_work RPC."""
        return [operation.model_dump(mode="json") for operation in self.operations]

    def index_of(self, label: str) -> int:
        """Position of the first operation with the given label."""
        for position, operation in enumerate(self.operations):
            if operation.label == label:
                return position
        raise KeyError(label)
