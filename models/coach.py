"""Coach profile models."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CoachStats(BaseModel):
    """Aggregate counters derived from a coach's appointment ledger."""

    total_sessions: int = 0
    completed_sessions: int = 0
    total_patients: int = 0
    active_patients: int = 0


class CoachProfile(CoachStats):
    """Coach profile model."""

    id: str
    user_id: str = Field(..., description="Owning actor ID")
    full_name: str
    email: Optional[str] = None
    price: Decimal = Field(default=Decimal("35.00"), ge=0)
    balance: Decimal = Field(default=Decimal("0.00"))
    created_at: Optional[datetime] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": "uuid-here",
                "user_id": "uuid-here",
                "full_name": "Laura Coach",
                "price": "35.00",
                "balance": "0.00",
            }
        }
    )


class CoachProfileCreate(BaseModel):
    """Coach profile creation model."""

    user_id: str
    full_name: str
    email: Optional[str] = None
    price: Decimal = Decimal("35.00")
    balance: Decimal = Decimal("0.00")
