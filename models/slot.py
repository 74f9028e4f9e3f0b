"""Availability slot models."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class AvailabilitySlot(BaseModel):
    """Bookable half-open interval [start_time, end_time) of one coach."""

    id: str
    coach_id: str
    start_time: datetime
    end_time: datetime
    is_booked: bool = False
    created_at: Optional[datetime] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "coach_id": "uuid-here",
                "start_time": "2026-01-15T10:00:00+00:00",
                "end_time": "2026-01-15T11:00:00+00:00",
                "is_booked": False,
            }
        }
    )


class SlotCreate(BaseModel):
    """Slot creation model."""

    coach_id: str
    start_time: datetime
    end_time: datetime
    is_booked: bool = False

    @model_validator(mode="after")
    def check_interval(self) -> "SlotCreate":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class DesiredSlot(BaseModel):
    """
    One entry of a bulk schedule submission.

    ``id`` is either a persisted slot id or a client-generated placeholder.
    """

    id: Optional[str] = None
    start_time: datetime
    end_time: datetime


class ReconciliationPlan(BaseModel):
    """Writes needed to move the stored unbooked slots to the desired set."""

    kept_ids: List[str] = Field(default_factory=list)
    to_delete: List[str] = Field(default_factory=list)
    to_insert: List[SlotCreate] = Field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not self.to_delete and not self.to_insert
