"""Pydantic models for data validation and serialization."""

from .actor import Actor, ActorCreate, ActorRole
from .appointment import (
    Appointment,
    AppointmentCreate,
    AppointmentStatus,
    BookingRequest,
    CancellationOutcome,
)
from .coach import CoachProfile, CoachProfileCreate, CoachStats
from .discount import DiscountCode, DiscountCodeCreate
from .result import ActionResult, ErrorKind
from .session import AccessStatus, AccessWindow, RoomTicket
from .slot import AvailabilitySlot, DesiredSlot, ReconciliationPlan, SlotCreate
from .withdrawal import Withdrawal, WithdrawalStatus

__all__ = [
    "AccessStatus",
    "AccessWindow",
    "ActionResult",
    "Actor",
    "ActorCreate",
    "ActorRole",
    "Appointment",
    "AppointmentCreate",
    "AppointmentStatus",
    "AvailabilitySlot",
    "BookingRequest",
    "CancellationOutcome",
    "CoachProfile",
    "CoachProfileCreate",
    "CoachStats",
    "DesiredSlot",
    "DiscountCode",
    "DiscountCodeCreate",
    "ErrorKind",
    "ReconciliationPlan",
    "RoomTicket",
    "SlotCreate",
    "Withdrawal",
    "WithdrawalStatus",
]
