"""
Appointment lifecycle.

::

    reserve ──> pending_payment ──confirm──> scheduled ──complete──> completed
                      │                          │
                      └──expire / cancel──> cancelled <──cancel──┘

Every transition is one unit of work: the appointment row is updated on the
condition that it still has the status we read, and the slot and coach rows
touched by the transition change in the same transaction. Two requests racing
on the same appointment therefore cannot both win.
"""

from decimal import Decimal
from typing import Callable, Dict, FrozenSet, NamedTuple, Optional, Tuple

from config import Settings, settings as default_settings
from db import UnitOfWork, get_db_client
from models.actor import Actor
from models.appointment import (
    Appointment,
    AppointmentCreate,
    AppointmentStatus,
    CancellationOutcome,
)
from models.coach import CoachProfile
from models.slot import AvailabilitySlot
from payments.stripe import expire_checkout_session
from scheduling.coaches import CoachDirectory, compute_coach_stats
from scheduling.permissions import require_actor, require_coach_owner
from utils.constants import (
    APPOINTMENTS_TABLE,
    COACH_CANCELLATION_MESSAGE,
    COACH_CANCELLATION_NOTE,
    COACHES_TABLE,
    CONCURRENT_UPDATE_MESSAGE,
    MAX_NOTES_LENGTH,
    PRIORITY_CANCELLATION_MESSAGE,
    PRIORITY_REFUND_PERCENTAGE,
    SLOT_TAKEN_MESSAGE,
    SLOTS_TABLE,
    STANDARD_CANCELLATION_MESSAGE,
    STANDARD_REFUND_PERCENTAGE,
)
from utils.datetime_utils import utc_now
from utils.exceptions import (
    AppointmentNotFoundError,
    AuthorizationError,
    ConflictingWriteError,
    DatabaseError,
    InvalidTransitionError,
    SlotNotAvailableError,
    StateConflictError,
    ValidationError,
)
from utils.logging_config import log_context, setup_logging
from utils.validation import sanitize_text, to_money

logger = setup_logging(name=__name__, log_level="INFO", log_file="booking.log", log_dir="logs")

Status = AppointmentStatus

# transition name -> (allowed source statuses, target status)
TRANSITIONS: Dict[str, Tuple[FrozenSet[AppointmentStatus], AppointmentStatus]] = {
    "confirm": (frozenset({Status.PENDING_PAYMENT}), Status.SCHEDULED),
    "cancel_by_client": (frozenset({Status.SCHEDULED}), Status.CANCELLED),
    "cancel_by_coach": (frozenset({Status.PENDING_PAYMENT, Status.SCHEDULED}), Status.CANCELLED),
    "expire": (frozenset({Status.PENDING_PAYMENT}), Status.CANCELLED),
    "complete": (frozenset({Status.SCHEDULED}), Status.COMPLETED),
}

TRANSITION_LABEL = "transition"


class CoachBalanceCredit(NamedTuple):
    """Balance change that applies only while the balance is still old_balance."""

    coach_id: str
    old_balance: Decimal
    new_balance: Decimal


class AppointmentStateMachine:
    """Guards and side effects of every appointment status change."""

    def __init__(
        self,
        db=None,
        coaches: Optional[CoachDirectory] = None,
        app_settings: Optional[Settings] = None,
        clock: Callable = utc_now,
    ):
        self.db = db or get_db_client()
        self.settings = app_settings or default_settings
        self.clock = clock
        self.coaches = coaches or CoachDirectory(self.db, self.settings, clock)

    async def require(self, appointment_id: str) -> Appointment:
        appointment = await self.db.get_appointment_by_id(appointment_id)
        if appointment is None:
            raise AppointmentNotFoundError("This appointment does not exist.")
        return appointment

    @staticmethod
    def check_transition(appointment: Appointment, name: str) -> AppointmentStatus:
        """Return the target status of a transition or fail if it is not allowed."""
        sources, target = TRANSITIONS[name]
        if appointment.status not in sources:
            raise InvalidTransitionError(
                f"Cannot {name.replace('_', ' ')} an appointment that is "
                f"{appointment.status.value.replace('_', ' ')}."
            )
        return target

    # ========== Reservation ==========

    async def reserve(
        self,
        patient_id: str,
        coach: CoachProfile,
        slot: AvailabilitySlot,
        price: Decimal,
        discount_code_id: Optional[str] = None,
        is_anonymous: bool = False,
        patient_name: Optional[str] = None,
    ) -> Appointment:
        """
        Claim a slot and create a pending-payment appointment for it.

        The slot claim is a conditional update on ``is_booked = false``
        applied together with the appointment insert, so of two concurrent
        reservations for one slot exactly one succeeds.

        Raises:
            SlotNotAvailableError: If the slot is booked or not offered by the coach
        """
        if slot.coach_id != coach.id or slot.is_booked:
            raise SlotNotAvailableError(SLOT_TAKEN_MESSAGE)

        now = self.clock()
        unit = UnitOfWork("reserve_slot")
        unit.update(
            SLOTS_TABLE,
            {"is_booked": True},
            match={"id": slot.id, "coach_id": coach.id, "is_booked": False},
            label="claim_slot",
            expect_rows=1,
        )
        data = AppointmentCreate(
            patient_id=patient_id,
            coach_id=coach.id,
            slot_id=slot.id,
            date=slot.start_time,
            price=to_money(price),
            discount_code_id=discount_code_id,
            is_anonymous=is_anonymous,
            patient_name=patient_name,
        )
        unit.insert(
            APPOINTMENTS_TABLE,
            {**data.model_dump(), "created_at": now, "updated_at": now},
            label="insert_appointment",
        )

        try:
            results = await self.db.commit(unit)
        except ConflictingWriteError as e:
            logger.info(
                f"Slot already claimed: {log_context(slot_id=slot.id, patient_id=patient_id)}"
            )
            raise SlotNotAvailableError(SLOT_TAKEN_MESSAGE) from e

        appointment = Appointment(**results[unit.index_of("insert_appointment")][0])
        logger.info(
            f"Slot reserved: "
            f"{log_context(appointment_id=appointment.id, slot_id=slot.id, coach_id=coach.id, price=appointment.price)}"
        )
        return appointment

    # ========== Transitions ==========

    async def confirm(self, appointment_id: str) -> Appointment:
        """
        Mark a reservation as paid.

        Confirming an appointment that is already scheduled returns it
        unchanged, so repeated payment notifications are harmless. A payment
        for a reservation that was already released leaves it cancelled and
        flags it with ``refund_due``.
        """
        appointment = await self.require(appointment_id)
        if appointment.status == Status.SCHEDULED:
            return appointment
        if appointment.status == Status.CANCELLED:
            return await self._record_late_payment(appointment)

        target = self.check_transition(appointment, "confirm")
        try:
            confirmed = await self._transition(appointment, target, "confirm_payment")
        except StateConflictError:
            current = await self.require(appointment_id)
            if current.status == Status.SCHEDULED:
                return current
            if current.status == Status.CANCELLED:
                return await self._record_late_payment(current)
            raise

        logger.info(f"Appointment confirmed: {log_context(appointment_id=appointment.id)}")
        return confirmed

    async def cancel_by_client(
        self, actor: Optional[Actor], appointment_id: str
    ) -> CancellationOutcome:
        """
        Cancel a scheduled appointment on behalf of its client.

        Priority actors are refunded in full; everyone else gets the standard
        partial refund notice.

        Raises:
            AuthorizationError: If the actor is not the appointment's client
            InvalidTransitionError: If the appointment is not scheduled
        """
        actor = require_actor(actor)
        appointment = await self.require(appointment_id)
        if appointment.patient_id != actor.id:
            raise AuthorizationError("You can only cancel your own appointments.")

        target = self.check_transition(appointment, "cancel_by_client")
        await self._transition(appointment, target, "cancel_by_client", release_slot=True)

        if self.settings.is_priority_actor(actor.id, actor.email):
            outcome = CancellationOutcome(
                appointment_id=appointment.id,
                refund_percentage=PRIORITY_REFUND_PERCENTAGE,
                message=PRIORITY_CANCELLATION_MESSAGE,
            )
        else:
            outcome = CancellationOutcome(
                appointment_id=appointment.id,
                refund_percentage=STANDARD_REFUND_PERCENTAGE,
                message=STANDARD_CANCELLATION_MESSAGE,
            )

        logger.info(
            f"Appointment cancelled by client: "
            f"{log_context(appointment_id=appointment.id, refund=outcome.refund_percentage)}"
        )
        return outcome

    async def cancel_by_coach(
        self, actor: Optional[Actor], appointment_id: str
    ) -> CancellationOutcome:
        """Cancel an appointment on behalf of its coach, with a full refund."""
        appointment = await self.require(appointment_id)
        coach = await self.coaches.require_coach(appointment.coach_id)
        require_coach_owner(actor, coach, allow_admin=False)

        target = self.check_transition(appointment, "cancel_by_coach")
        notes = (
            f"{appointment.coach_notes}\n{COACH_CANCELLATION_NOTE}"
            if appointment.coach_notes
            else COACH_CANCELLATION_NOTE
        )
        await self._transition(
            appointment,
            target,
            "cancel_by_coach",
            values={"coach_notes": notes},
            release_slot=True,
        )

        logger.info(f"Appointment cancelled by coach: {log_context(appointment_id=appointment.id)}")
        return CancellationOutcome(
            appointment_id=appointment.id,
            refund_percentage=PRIORITY_REFUND_PERCENTAGE,
            message=COACH_CANCELLATION_MESSAGE,
        )

    async def expire(
        self, appointment_id: str, checkout_session_id: Optional[str] = None
    ) -> Optional[Appointment]:
        """
        Release an unpaid reservation.

        With checkout_session_id, the release comes from Stripe closing that
        session; it is ignored when the appointment has moved on to another
        session. Without it (lease sweep), the stored session is expired at
        Stripe first so it can no longer be paid.

        Returns None when nothing was released: the appointment is no longer
        pending, belongs to another session, or its payment just completed.
        """
        appointment = await self.require(appointment_id)
        if appointment.status != Status.PENDING_PAYMENT:
            return None

        if checkout_session_id is not None:
            if appointment.checkout_session_id not in (None, checkout_session_id):
                logger.info(
                    f"Ignoring release for a replaced checkout session: "
                    f"{log_context(appointment_id=appointment.id, session_id=checkout_session_id)}"
                )
                return None
        elif appointment.checkout_session_id:
            session_status = await expire_checkout_session(appointment.checkout_session_id)
            if session_status == "complete":
                logger.info(
                    f"Checkout completed before expiry, awaiting payment: "
                    f"{log_context(appointment_id=appointment.id)}"
                )
                return None

        target = self.check_transition(appointment, "expire")
        try:
            expired = await self._transition(
                appointment, target, "expire_reservation", release_slot=True
            )
        except StateConflictError:
            logger.info(
                f"Reservation changed before expiry: {log_context(appointment_id=appointment.id)}"
            )
            return None

        logger.info(f"Reservation expired: {log_context(appointment_id=appointment.id)}")
        return expired

    async def complete(
        self,
        actor: Optional[Actor],
        appointment_id: str,
        notes: str,
        tips: Optional[str] = None,
    ) -> Appointment:
        """
        Close a held session and credit the coach.

        Raises:
            AuthorizationError: If the actor does not own the coach profile
            ValidationError: If the session notes are empty
            InvalidTransitionError: If the appointment is not scheduled
            StateConflictError: If the balance changed concurrently
        """
        appointment = await self.require(appointment_id)
        coach = await self.coaches.require_coach(appointment.coach_id)
        require_coach_owner(actor, coach, allow_admin=False)

        notes = sanitize_text(notes, MAX_NOTES_LENGTH)
        if not notes:
            raise ValidationError("Session notes are required to complete an appointment.")

        target = self.check_transition(appointment, "complete")
        balance = to_money(coach.balance)
        credit = CoachBalanceCredit(coach.id, balance, balance + to_money(appointment.price))

        try:
            completed = await self._transition(
                appointment,
                target,
                "complete_session",
                values={
                    "coach_notes": notes,
                    "improvement_tips": sanitize_text(tips, MAX_NOTES_LENGTH) or None,
                },
                balance=credit,
            )
        except ConflictingWriteError as e:
            raise StateConflictError(CONCURRENT_UPDATE_MESSAGE) from e

        logger.info(
            f"Session completed: "
            f"{log_context(appointment_id=appointment.id, coach_id=coach.id, credited=appointment.price)}"
        )
        return completed

    # ========== Helpers ==========

    async def _record_late_payment(self, appointment: Appointment) -> Appointment:
        """Flag a cancelled appointment whose payment still went through."""
        if appointment.refund_due:
            return appointment

        changes = {"refund_due": True, "updated_at": self.clock()}
        unit = UnitOfWork("record_late_payment")
        unit.update(
            APPOINTMENTS_TABLE,
            changes,
            match={"id": appointment.id, "status": Status.CANCELLED},
            label=TRANSITION_LABEL,
            expect_rows=1,
        )
        results = await self.db.commit(unit)

        logger.warning(
            f"Payment received after release, refund due: "
            f"{log_context(appointment_id=appointment.id, amount=appointment.price)}"
        )
        rows = results[unit.index_of(TRANSITION_LABEL)]
        return Appointment(**rows[0]) if rows else appointment.model_copy(update=changes)

    async def _transition(
        self,
        appointment: Appointment,
        target: AppointmentStatus,
        unit_name: str,
        values: Optional[dict] = None,
        release_slot: bool = False,
        balance: Optional[CoachBalanceCredit] = None,
    ) -> Appointment:
        now = self.clock()
        changes = {**(values or {}), "status": target, "updated_at": now}

        unit = UnitOfWork(unit_name)
        unit.update(
            APPOINTMENTS_TABLE,
            changes,
            match={"id": appointment.id, "status": appointment.status},
            label=TRANSITION_LABEL,
            expect_rows=1,
        )
        if release_slot:
            unit.update(
                SLOTS_TABLE,
                {"is_booked": False},
                match=self._slot_match(appointment),
                label="release_slot",
            )
        if balance is not None:
            unit.update(
                COACHES_TABLE,
                {"balance": balance.new_balance},
                match={"id": balance.coach_id, "balance": balance.old_balance},
                label="credit_balance",
                expect_rows=1,
            )

        transitioned = appointment.model_copy(update=changes)
        await self._add_stats_refresh(unit, transitioned)

        try:
            results = await self.db.commit(unit)
        except ConflictingWriteError as e:
            if e.label != TRANSITION_LABEL:
                raise
            raise InvalidTransitionError(
                "This appointment was updated by someone else. Please reload."
            ) from e

        rows = results[unit.index_of(TRANSITION_LABEL)]
        return Appointment(**rows[0]) if rows else transitioned

    @staticmethod
    def _slot_match(appointment: Appointment) -> dict:
        """Row filter of the slot held by an appointment."""
        if appointment.slot_id:
            return {"id": appointment.slot_id, "coach_id": appointment.coach_id}
        # Appointments created before slot ids were stored
        return {
            "coach_id": appointment.coach_id,
            "start_time": appointment.date,
            "is_booked": True,
        }

    async def _add_stats_refresh(self, unit: UnitOfWork, transitioned: Appointment) -> None:
        """Append the coach projection as it will be after the transition."""
        try:
            ledger = await self.db.get_appointments_by_coach(transitioned.coach_id)
        except DatabaseError as e:
            logger.warning(
                f"Skipping stats refresh: {log_context(coach_id=transitioned.coach_id, error=e)}"
            )
            return

        ledger = [item for item in ledger if item.id != transitioned.id]
        ledger.append(transitioned)
        stats = compute_coach_stats(ledger)
        unit.update(
            COACHES_TABLE,
            stats.model_dump(),
            match={"id": transitioned.coach_id},
            label="refresh_stats",
        )
