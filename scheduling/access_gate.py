"""Time-bounded access to the live session room."""

import asyncio
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, Optional

from config import Settings, settings as default_settings
from models.actor import Actor
from models.appointment import Appointment, AppointmentStatus
from models.coach import CoachProfile
from models.session import AccessStatus, AccessWindow, RoomTicket
from scheduling.permissions import owns_coach_profile, require_actor
from utils.datetime_utils import ensure_aware, seconds_between, utc_now
from utils.exceptions import AuthorizationError, StateConflictError
from utils.logging_config import log_context, setup_logging

logger = setup_logging(name=__name__, log_level="INFO", log_file="booking.log", log_dir="logs")

ANONYMOUS_CLIENT_NAME = "Anonymous client"


class SessionAccessGate:
    """
    Decides whether a participant may enter the room of an appointment.

    The room opens ``session_early_entry_seconds`` before the start and closes
    ``session_duration_minutes`` after it. Priority actors skip the waiting
    room but not the end of the session.
    """

    def __init__(self, app_settings: Optional[Settings] = None, clock: Callable = utc_now):
        self.settings = app_settings or default_settings
        self.clock = clock

    def _is_priority(self, actor: Optional[Actor]) -> bool:
        return actor is not None and self.settings.is_priority_actor(actor.id, actor.email)

    def evaluate(
        self,
        start_time: datetime,
        now: Optional[datetime] = None,
        actor: Optional[Actor] = None,
    ) -> AccessWindow:
        """
        Access state of a session at one instant.

        Args:
            start_time: Scheduled session start
            now: Instant to evaluate (defaults to the clock)
            actor: Participant, used for the priority exemption

        Returns:
            Window with the status and whole seconds until start and end
        """
        now = ensure_aware(now) if now else self.clock()
        start = ensure_aware(start_time)
        end = start + timedelta(minutes=self.settings.session_duration_minutes)

        seconds_remaining = seconds_between(end, now)
        seconds_until_start = seconds_between(start, now)

        if seconds_remaining <= 0:
            status = AccessStatus.ENDED
        elif self._is_priority(actor):
            status = AccessStatus.ACTIVE
        elif seconds_until_start > self.settings.session_early_entry_seconds:
            status = AccessStatus.WAITING
        else:
            status = AccessStatus.ACTIVE

        return AccessWindow(
            status=status,
            seconds_remaining=max(seconds_remaining, 0),
            seconds_until_start=max(seconds_until_start, 0),
        )

    def room_name(self, appointment_id: str) -> str:
        """Deterministic room name shared by both participants."""
        return f"{self.settings.room_name_prefix}-{appointment_id}"

    def admit(
        self,
        actor: Optional[Actor],
        appointment: Appointment,
        coach: CoachProfile,
        now: Optional[datetime] = None,
    ) -> RoomTicket:
        """
        Issue the room details for a participant of the appointment.

        Raises:
            AuthorizationError: If the actor is neither the client nor the coach
            StateConflictError: If the appointment is not paid or was cancelled
        """
        actor = require_actor(actor)

        if actor.id == appointment.patient_id:
            role = "client"
            if appointment.is_anonymous:
                display_name = appointment.patient_name or ANONYMOUS_CLIENT_NAME
            else:
                display_name = appointment.patient_name or actor.full_name or actor.email
        elif coach.id == appointment.coach_id and owns_coach_profile(actor, coach):
            role = "coach"
            display_name = coach.full_name
        else:
            raise AuthorizationError("You are not a participant of this session.")

        if appointment.status in (AppointmentStatus.CANCELLED, AppointmentStatus.PENDING_PAYMENT):
            raise StateConflictError("This session is not available.")

        window = self.evaluate(appointment.date, now=now, actor=actor)
        logger.info(
            f"Room ticket issued: "
            f"{log_context(appointment_id=appointment.id, role=role, status=window.status.value)}"
        )
        return RoomTicket(
            appointment_id=appointment.id,
            room_name=self.room_name(appointment.id),
            display_name=display_name,
            role=role,
            window=window,
        )

    async def watch(
        self,
        start_time: datetime,
        actor: Optional[Actor] = None,
        interval: float = 1.0,
    ) -> AsyncIterator[AccessWindow]:
        """Yield the access window every ``interval`` seconds until the session ends."""
        while True:
            window = self.evaluate(start_time, actor=actor)
            yield window
            if window.status == AccessStatus.ENDED:
                return
            await asyncio.sleep(interval)
