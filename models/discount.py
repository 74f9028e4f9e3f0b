"""Discount code models."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from utils.validation import normalize_discount_code


class DiscountCode(BaseModel):
    """Discount code model."""

    id: str
    code: str
    discount_percentage: int = Field(..., ge=0, le=100)
    active: bool = True
    is_first_session_only: bool = False
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class DiscountCodeCreate(BaseModel):
    """Discount code creation model."""

    code: str = Field(..., min_length=1)
    discount_percentage: int = Field(..., ge=0, le=100)
    active: bool = True
    is_first_session_only: bool = False
    expires_at: Optional[datetime] = None

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        normalized = normalize_discount_code(v)
        if not normalized:
            raise ValueError("Discount code cannot be blank")
        return normalized
