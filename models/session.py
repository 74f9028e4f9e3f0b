"""Live session access models."""

from enum import Enum

from pydantic import BaseModel


class AccessStatus(str, Enum):
    """Room access state relative to the session start."""

    WAITING = "waiting"
    ACTIVE = "active"
    ENDED = "ended"


class AccessWindow(BaseModel):
    """Access state at one instant."""

    status: AccessStatus
    seconds_remaining: int
    seconds_until_start: int


class RoomTicket(BaseModel):
    """What the real-time provider needs to admit a participant."""

    appointment_id: str
    room_name: str
    display_name: str
    role: str
    window: AccessWindow
