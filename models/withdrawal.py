"""Withdrawal models for coach payouts."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class WithdrawalStatus(str, Enum):
    """Payout request status."""

    PENDING = "pending"
    COMPLETED = "completed"
    REJECTED = "rejected"


class Withdrawal(BaseModel):
    """Withdrawal request model."""

    id: str
    coach_id: str
    amount: Decimal = Field(..., gt=0)
    status: WithdrawalStatus = WithdrawalStatus.PENDING
    created_at: Optional[datetime] = None
