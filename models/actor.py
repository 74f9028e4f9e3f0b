"""Actor models for identities known to the booking engine."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, EmailStr, Field


class ActorRole(str, Enum):
    """Roles issued by the identity provider."""

    CLIENT = "client"
    COACH = "coach"
    ADMIN = "admin"


class Actor(BaseModel):
    """Actor model (row of the users table)."""

    id: str
    email: str
    role: ActorRole = ActorRole.CLIENT
    full_name: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN


class ActorCreate(BaseModel):
    """Actor creation model used when a booking contact has no account."""

    email: EmailStr
    full_name: Optional[str] = Field(None, max_length=120)
    role: ActorRole = ActorRole.CLIENT
