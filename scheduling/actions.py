"""
Presentation-facing actions of the booking engine.

Every action returns an ``ActionResult`` instead of raising. Rejections
(authorization, validation, conflicts, missing records) carry their specific
message; collaborator failures are logged with context and reported with a
generic message.
"""

from datetime import datetime
from decimal import Decimal
from functools import wraps
from typing import Any, Callable, Dict, Iterable, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from config import Settings, settings as default_settings
from db import get_db_client
from models.actor import Actor
from models.appointment import BookingRequest
from models.discount import DiscountCodeCreate
from models.result import ActionResult, ErrorKind
from models.slot import DesiredSlot
from scheduling.access_gate import SessionAccessGate
from scheduling.appointments import AppointmentStateMachine
from scheduling.coaches import CoachDirectory
from scheduling.discounts import DiscountEvaluator
from scheduling.orchestrator import BookingOrchestrator
from scheduling.permissions import require_actor
from scheduling.slots import SlotRegistry
from utils.constants import (
    GENERIC_FAILURE_MESSAGE,
    GUEST_ACTOR,
    PAID_AFTER_RELEASE_MESSAGE,
    PAYMENT_RETRY_MESSAGE,
)
from utils.datetime_utils import utc_now
from utils.exceptions import BookingEngineError, CollaboratorError, PaymentError
from utils.logging_config import log_context, setup_logging

logger = setup_logging(name=__name__, log_level="INFO", log_file="booking.log", log_dir="logs")


def action(name: str) -> Callable:
    """
    Decorator turning engine exceptions into failed ``ActionResult``s.

    Usage:
        @action("book_session")
        async def book_session(self, ...):
            ...

    Args:
        name: Action name used in log messages
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> ActionResult:
            try:
                return await func(*args, **kwargs)
            except PaymentError as e:
                logger.error(f"Action {name} failed at the payment gateway: {e}", exc_info=True)
                return ActionResult.fail(ErrorKind.COLLABORATOR, PAYMENT_RETRY_MESSAGE)
            except CollaboratorError as e:
                logger.error(f"Action {name} failed: {e}", exc_info=True)
                return ActionResult.fail(ErrorKind.COLLABORATOR, GENERIC_FAILURE_MESSAGE)
            except BookingEngineError as e:
                logger.info(
                    f"Action {name} rejected: {log_context(kind=e.kind.value, reason=str(e))}"
                )
                return ActionResult.fail(e.kind, str(e))
            except PydanticValidationError as e:
                errors = e.errors()
                message = errors[0]["msg"] if errors else "Invalid input."
                return ActionResult.fail(ErrorKind.VALIDATION, message)

        return wrapper

    return decorator


class BookingActions:
    """Facade wiring the scheduling components for the presentation layer."""

    def __init__(
        self,
        db=None,
        app_settings: Optional[Settings] = None,
        clock: Callable = utc_now,
    ):
        self.db = db or get_db_client()
        self.settings = app_settings or default_settings
        self.coaches = CoachDirectory(self.db, self.settings, clock)
        self.slots = SlotRegistry(self.db, self.coaches, self.settings, clock)
        self.discounts = DiscountEvaluator(self.db, self.settings, clock)
        self.appointments = AppointmentStateMachine(self.db, self.coaches, self.settings, clock)
        self.orchestrator = BookingOrchestrator(
            self.db, self.coaches, self.appointments, self.discounts, self.settings, clock
        )
        self.gate = SessionAccessGate(self.settings, clock)

    # ========== Slots ==========

    @action("list_available_slots")
    async def list_available_slots(
        self,
        coach_id: str,
        range_start: Optional[datetime] = None,
        range_end: Optional[datetime] = None,
    ) -> ActionResult:
        slots = await self.slots.list_available(coach_id, range_start, range_end)
        return ActionResult.ok(slots)

    @action("create_slot")
    async def create_slot(
        self, actor: Optional[Actor], coach_id: str, start_time: datetime, end_time: datetime
    ) -> ActionResult:
        slot = await self.slots.create(actor, coach_id, start_time, end_time)
        return ActionResult.ok(slot, "Slot created.")

    @action("delete_slot")
    async def delete_slot(self, actor: Optional[Actor], slot_id: str) -> ActionResult:
        await self.slots.delete(actor, slot_id)
        return ActionResult.ok(message="Slot deleted.")

    @action("save_schedule")
    async def save_schedule(
        self,
        actor: Optional[Actor],
        coach_id: str,
        desired_slots: Iterable[Union[DesiredSlot, Dict[str, Any]]],
    ) -> ActionResult:
        """Replace the unbooked slots of a coach with the submitted schedule."""
        desired = [DesiredSlot.model_validate(entry) for entry in desired_slots]
        plan = await self.slots.reconcile(actor, coach_id, desired)
        return ActionResult.ok(plan, "Schedule saved.")

    # ========== Discounts ==========

    @action("validate_discount")
    async def validate_discount(
        self, code: str, actor: Optional[Actor] = None, email: Optional[str] = None
    ) -> ActionResult:
        actor_id = actor.id if actor else GUEST_ACTOR
        discount = await self.discounts.validate(code, actor_id=actor_id, email=email)
        return ActionResult.ok(
            {
                "id": discount.id,
                "code": discount.code,
                "discount_percentage": discount.discount_percentage,
            }
        )

    @action("create_discount_code")
    async def create_discount_code(
        self, actor: Optional[Actor], data: Union[DiscountCodeCreate, Dict[str, Any]]
    ) -> ActionResult:
        discount = await self.discounts.create_code(actor, DiscountCodeCreate.model_validate(data))
        return ActionResult.ok(discount, "Discount code created.")

    # ========== Booking ==========

    @action("book_session")
    async def book_session(
        self, request: Union[BookingRequest, Dict[str, Any]], actor: Optional[Actor] = None
    ) -> ActionResult:
        appointment = await self.orchestrator.book_session(
            BookingRequest.model_validate(request), actor
        )
        return ActionResult.ok(appointment)

    @action("start_checkout")
    async def start_checkout(
        self,
        appointment_id: str,
        actor: Optional[Actor] = None,
        return_url: Optional[str] = None,
    ) -> ActionResult:
        url = await self.orchestrator.start_checkout(appointment_id, actor, return_url)
        return ActionResult.ok({"url": url})

    async def confirm_payment(self, appointment_id: str) -> ActionResult:
        appointment = await self.orchestrator.confirm_payment(appointment_id)
        if appointment is not None and appointment.refund_due:
            return ActionResult.ok(appointment, PAID_AFTER_RELEASE_MESSAGE)
        return ActionResult.ok(appointment)

    @action("confirm_from_return")
    async def confirm_from_return(self, session_id: str) -> ActionResult:
        appointment = await self.orchestrator.confirm_from_return(session_id)
        if appointment is None:
            return ActionResult.ok(message="Payment not completed yet.")
        return ActionResult.ok(appointment, "Payment received. Your session is booked.")

    @action("expire_reservation")
    async def expire_reservation(
        self, appointment_id: str, checkout_session_id: Optional[str] = None
    ) -> ActionResult:
        appointment = await self.appointments.expire(appointment_id, checkout_session_id)
        return ActionResult.ok(appointment)

    # ========== Appointment lifecycle ==========

    @action("cancel_appointment")
    async def cancel_appointment(self, actor: Optional[Actor], appointment_id: str) -> ActionResult:
        outcome = await self.appointments.cancel_by_client(actor, appointment_id)
        return ActionResult.ok(outcome, outcome.message)

    @action("cancel_appointment_by_coach")
    async def cancel_appointment_by_coach(
        self, actor: Optional[Actor], appointment_id: str
    ) -> ActionResult:
        outcome = await self.appointments.cancel_by_coach(actor, appointment_id)
        return ActionResult.ok(outcome, outcome.message)

    @action("complete_appointment")
    async def complete_appointment(
        self,
        actor: Optional[Actor],
        appointment_id: str,
        notes: str,
        tips: Optional[str] = None,
    ) -> ActionResult:
        appointment = await self.appointments.complete(actor, appointment_id, notes, tips)
        return ActionResult.ok(appointment, "Session completed.")

    @action("get_patient_appointments")
    async def get_patient_appointments(self, actor: Optional[Actor]) -> ActionResult:
        actor = require_actor(actor)
        appointments = await self.db.get_appointments_by_patient(actor.id)
        return ActionResult.ok(appointments)

    # ========== Coach profile ==========

    @action("get_coach_profile")
    async def get_coach_profile(self, actor: Optional[Actor]) -> ActionResult:
        profile = await self.coaches.get_or_create_profile(require_actor(actor))
        return ActionResult.ok(profile)

    @action("withdraw_balance")
    async def withdraw_balance(
        self, actor: Optional[Actor], coach_id: str, amount: Decimal
    ) -> ActionResult:
        withdrawal = await self.coaches.withdraw(actor, coach_id, Decimal(str(amount)))
        return ActionResult.ok(withdrawal, "Withdrawal requested.")

    @action("update_coach_price")
    async def update_coach_price(
        self, actor: Optional[Actor], coach_id: str, price: Decimal
    ) -> ActionResult:
        coach = await self.coaches.update_price(actor, coach_id, Decimal(str(price)))
        return ActionResult.ok(coach, "Price updated.")

    # ========== Live session ==========

    @action("enter_session")
    async def enter_session(self, actor: Optional[Actor], appointment_id: str) -> ActionResult:
        """Room details and current access window for a participant."""
        appointment = await self.appointments.require(appointment_id)
        coach = await self.coaches.require_coach(appointment.coach_id)
        ticket = self.gate.admit(actor, appointment, coach)
        return ActionResult.ok(ticket)


# Global actions instance
_booking_actions: Optional[BookingActions] = None


def get_booking_actions() -> BookingActions:
    """Get or create the booking actions instance."""
    global _booking_actions
    if _booking_actions is None:
        _booking_actions = BookingActions()
    return _booking_actions
