"""Appointment models for coaching sessions."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class AppointmentStatus(str, Enum):
    """Appointment lifecycle status."""

    PENDING_PAYMENT = "pending_payment"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED)


class Appointment(BaseModel):
    """Appointment model."""

    id: str
    patient_id: str = Field(..., description="Client actor ID")
    coach_id: str = Field(..., description="Coach profile ID")
    slot_id: Optional[str] = None
    date: datetime = Field(..., description="Start time of the reserved slot")
    price: Decimal = Field(..., ge=0)
    discount_code_id: Optional[str] = None
    status: AppointmentStatus = AppointmentStatus.PENDING_PAYMENT
    is_anonymous: bool = False
    patient_name: Optional[str] = None
    coach_notes: Optional[str] = None
    improvement_tips: Optional[str] = None
    rating: Optional[int] = Field(None, ge=1, le=5)
    checkout_session_id: Optional[str] = None
    checkout_expires_at: Optional[datetime] = None
    refund_due: bool = Field(False, description="Paid after the reservation was released")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "patient_id": "uuid-here",
                "coach_id": "uuid-here",
                "slot_id": "uuid-here",
                "date": "2026-01-15T10:00:00+00:00",
                "price": "26.25",
                "status": "pending_payment",
            }
        }
    )


class AppointmentCreate(BaseModel):
    """Appointment creation model (pending payment)."""

    patient_id: str
    coach_id: str
    slot_id: str
    date: datetime
    price: Decimal
    discount_code_id: Optional[str] = None
    status: AppointmentStatus = AppointmentStatus.PENDING_PAYMENT
    is_anonymous: bool = False
    patient_name: Optional[str] = None


class BookingRequest(BaseModel):
    """Input of the booking flow submitted by a client."""

    coach_id: str
    slot_id: str
    display_name: str = Field(..., min_length=1, max_length=120)
    contact_email: EmailStr
    discount_code_id: Optional[str] = None
    is_anonymous: bool = False


class CancellationOutcome(BaseModel):
    """Policy outcome of a cancellation; refunds are executed by the gateway."""

    appointment_id: str
    refund_percentage: int
    message: str
