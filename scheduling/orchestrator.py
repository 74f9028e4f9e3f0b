"""
Booking orchestration: the client-facing booking flow.

Turns a booking request into a pending-payment appointment, hands the client
over to Stripe Checkout and confirms the appointment once the payment is in.
"""

from datetime import timedelta
from typing import Callable, Optional

from config import Settings, settings as default_settings
from db import get_db_client
from models.actor import Actor, ActorCreate
from models.appointment import Appointment, AppointmentStatus, BookingRequest
from payments.stripe import (
    checkout_expiry,
    create_checkout_session,
    expire_checkout_session,
    get_checkout_session,
)
from scheduling.appointments import AppointmentStateMachine
from scheduling.coaches import CoachDirectory
from scheduling.discounts import DiscountEvaluator, apply_discount
from utils.constants import DISCOUNT_INVALID_MESSAGE, MAX_DISPLAY_NAME_LENGTH, SLOT_TAKEN_MESSAGE
from utils.datetime_utils import ensure_aware, utc_now
from utils.exceptions import (
    AuthorizationError,
    DiscountRejectedError,
    DuplicateRecordError,
    InvalidTransitionError,
    SlotNotAvailableError,
    SlotNotFoundError,
    ValidationError,
)
from utils.logging_config import log_context, setup_logging
from utils.validation import normalize_email, sanitize_text, to_money

logger = setup_logging(name=__name__, log_level="INFO", log_file="booking.log", log_dir="logs")


class BookingOrchestrator:
    """Coordinates contacts, discounts, reservations and payment hand-off."""

    def __init__(
        self,
        db=None,
        coaches: Optional[CoachDirectory] = None,
        appointments: Optional[AppointmentStateMachine] = None,
        discounts: Optional[DiscountEvaluator] = None,
        app_settings: Optional[Settings] = None,
        clock: Callable = utc_now,
    ):
        self.db = db or get_db_client()
        self.settings = app_settings or default_settings
        self.clock = clock
        self.coaches = coaches or CoachDirectory(self.db, self.settings, clock)
        self.appointments = appointments or AppointmentStateMachine(
            self.db, self.coaches, self.settings, clock
        )
        self.discounts = discounts or DiscountEvaluator(self.db, self.settings, clock)

    async def book_session(
        self, request: BookingRequest, actor: Optional[Actor] = None
    ) -> Appointment:
        """
        Reserve a slot for a client and create the pending appointment.

        Guests book with a contact email; an actor record is created for it
        when none exists. The discount code is validated again here against
        the contact, whatever the client was shown before.

        Args:
            request: Booking form data
            actor: Signed-in actor, or None for guests

        Returns:
            Appointment in pending_payment status

        Raises:
            AuthorizationError: If a signed-in client books for another email
            SlotNotFoundError: If the slot does not exist
            SlotNotAvailableError: If the slot is taken or belongs to another coach
            DiscountRejectedError: If the code is not usable by the contact
        """
        if (
            actor is not None
            and not actor.is_admin
            and normalize_email(actor.email) != normalize_email(request.contact_email)
        ):
            raise AuthorizationError("You can only book sessions for your own account.")

        display_name = sanitize_text(request.display_name, MAX_DISPLAY_NAME_LENGTH)
        if not display_name:
            raise ValidationError("Please enter your name.")

        contact = await self._resolve_contact(request.contact_email, display_name)
        coach = await self.coaches.require_coach(request.coach_id)

        slot = await self.db.get_slot_by_id(request.slot_id)
        if slot is None:
            raise SlotNotFoundError("This slot does not exist.")
        if slot.coach_id != coach.id or slot.is_booked:
            raise SlotNotAvailableError(SLOT_TAKEN_MESSAGE)
        if ensure_aware(slot.start_time) <= self.clock():
            raise ValidationError("This slot has already started.")

        price = to_money(coach.price)
        discount_code_id = None
        if request.discount_code_id:
            discount = await self.db.get_discount_code_by_id(request.discount_code_id)
            if discount is None:
                raise DiscountRejectedError(DISCOUNT_INVALID_MESSAGE)
            discount = await self.discounts.validate(
                discount.code, actor_id=contact.id, email=contact.email
            )
            price = to_money(apply_discount(price, discount.discount_percentage))
            discount_code_id = discount.id

        appointment = await self.appointments.reserve(
            patient_id=contact.id,
            coach=coach,
            slot=slot,
            price=price,
            discount_code_id=discount_code_id,
            is_anonymous=request.is_anonymous,
            patient_name=display_name,
        )

        logger.info(
            f"Session booked: "
            f"{log_context(appointment_id=appointment.id, patient_id=contact.id, coach_id=coach.id, discount=discount_code_id)}"
        )
        return appointment

    async def _resolve_contact(self, email: str, display_name: str) -> Actor:
        """Find the actor behind a contact email, creating a client if needed."""
        contact = await self.db.get_actor_by_email(email)
        if contact is not None:
            return contact

        try:
            contact = await self.db.create_actor(ActorCreate(email=email, full_name=display_name))
        except DuplicateRecordError:
            # Another booking created the same contact first
            contact = await self.db.get_actor_by_email(email)
            if contact is None:
                raise
            return contact

        logger.info(f"Created contact actor: {log_context(actor_id=contact.id)}")
        return contact

    async def start_checkout(
        self,
        appointment_id: str,
        actor: Optional[Actor] = None,
        return_url: Optional[str] = None,
    ) -> str:
        """
        Create the Stripe Checkout Session of a pending appointment.

        Guests pay right after booking without an account, so actor may be
        None; a signed-in actor must be the appointment's client or an admin.

        The session stops accepting payment when the reservation lease ends
        (no earlier than Stripe allows). A session created by an earlier call
        is expired first, so only the newest one can be paid.

        Returns:
            URL of the Stripe payment page

        Raises:
            AuthorizationError: If a signed-in actor pays for someone else
            InvalidTransitionError: If the appointment no longer awaits payment
            PaymentError: If Stripe is unreachable or rejects the request
        """
        appointment = await self.appointments.require(appointment_id)
        if actor is not None and actor.id != appointment.patient_id and not actor.is_admin:
            raise AuthorizationError("You can only pay for your own appointments.")
        if appointment.status != AppointmentStatus.PENDING_PAYMENT:
            raise InvalidTransitionError("This appointment does not need payment.")

        if appointment.checkout_session_id:
            previous = await expire_checkout_session(appointment.checkout_session_id)
            if previous == "complete":
                raise InvalidTransitionError("This appointment has already been paid.")

        coach = await self.coaches.require_coach(appointment.coach_id)
        now = self.clock()
        lease_end = ensure_aware(appointment.created_at or now) + timedelta(
            minutes=self.settings.pending_payment_lease_minutes
        )
        expires_at = checkout_expiry(lease_end, now)
        session = await create_checkout_session(
            appointment_id=appointment.id,
            amount=appointment.price,
            coach_name=coach.full_name,
            session_date=appointment.date,
            return_url=return_url or f"{self.settings.app_base_url}/patient/dashboard",
            currency=self.settings.currency,
            expires_at=expires_at,
        )
        await self.db.set_checkout_session(appointment.id, session.id, expires_at)
        return session.url

    async def confirm_payment(self, appointment_id: str) -> Optional[Appointment]:
        """
        Confirm a paid appointment.

        Best effort: payment notifications may arrive more than once, so
        failures are logged and swallowed. A payment for a released
        reservation comes back cancelled with ``refund_due`` set.

        Returns:
            The appointment after confirmation, or None if it failed
        """
        try:
            return await self.appointments.confirm(appointment_id)
        except Exception as e:
            logger.error(
                f"Payment confirmation failed: {log_context(appointment_id=appointment_id, error=e)}",
                exc_info=True,
            )
            return None

    async def confirm_from_return(self, session_id: str) -> Optional[Appointment]:
        """
        Confirm the appointment of a paid Checkout Session.

        Used on the return page so the client sees the booking as scheduled
        even if the webhook has not arrived yet.
        """
        session = await get_checkout_session(session_id)
        if session is None or getattr(session, "payment_status", None) != "paid":
            return None

        metadata = getattr(session, "metadata", None)
        appointment_id = getattr(metadata, "appointment_id", None) or getattr(
            session, "client_reference_id", None
        )
        if not appointment_id:
            logger.warning(f"Paid session without appointment: {log_context(session_id=session_id)}")
            return None

        await self.confirm_payment(appointment_id)
        return await self.db.get_appointment_by_id(appointment_id)
