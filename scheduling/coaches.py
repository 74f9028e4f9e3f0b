"""
Coach directory: profile lookup with self-healing creation, the aggregate
statistics projection and balance withdrawals.
"""

from decimal import Decimal
from typing import Callable, Iterable, Optional

from config import Settings, settings as default_settings
from db import UnitOfWork, get_db_client
from models.actor import Actor, ActorRole
from models.appointment import Appointment, AppointmentStatus
from models.coach import CoachProfile, CoachProfileCreate, CoachStats
from models.withdrawal import Withdrawal, WithdrawalStatus
from scheduling.permissions import require_coach_owner
from utils.constants import (
    COACHES_TABLE,
    CONCURRENT_UPDATE_MESSAGE,
    INSUFFICIENT_BALANCE_MESSAGE,
    WITHDRAWALS_TABLE,
)
from utils.datetime_utils import utc_now
from utils.exceptions import (
    CoachNotFoundError,
    ConflictingWriteError,
    DuplicateRecordError,
    StateConflictError,
    ValidationError,
)
from utils.logging_config import log_context, setup_logging
from utils.validation import to_money

logger = setup_logging(name=__name__, log_level="INFO", log_file="booking.log", log_dir="logs")

COACH_ROLES = (ActorRole.COACH, ActorRole.ADMIN)


def compute_coach_stats(ledger: Iterable[Appointment]) -> CoachStats:
    """
    Derive the aggregate counters of a coach from its appointment ledger.

    Sessions count scheduled and completed appointments; active patients are
    distinct clients with a scheduled appointment.
    """
    booked = {AppointmentStatus.SCHEDULED, AppointmentStatus.COMPLETED}
    total_sessions = 0
    completed_sessions = 0
    active_patients = set()
    total_patients = set()

    for appointment in ledger:
        if appointment.status in booked:
            total_sessions += 1
            total_patients.add(appointment.patient_id)
        if appointment.status == AppointmentStatus.COMPLETED:
            completed_sessions += 1
        if appointment.status == AppointmentStatus.SCHEDULED:
            active_patients.add(appointment.patient_id)

    return CoachStats(
        total_sessions=total_sessions,
        completed_sessions=completed_sessions,
        total_patients=len(total_patients),
        active_patients=len(active_patients),
    )


class CoachDirectory:
    """Read and maintain coach profiles."""

    def __init__(
        self,
        db=None,
        app_settings: Optional[Settings] = None,
        clock: Callable = utc_now,
    ):
        self.db = db or get_db_client()
        self.settings = app_settings or default_settings
        self.clock = clock

    async def require_coach(self, coach_id: str) -> CoachProfile:
        coach = await self.db.get_coach_by_id(coach_id)
        if coach is None:
            raise CoachNotFoundError("This coach does not exist.")
        return coach

    async def get_or_create_profile(self, actor: Actor) -> Optional[CoachProfile]:
        """
        Get the coach profile of an actor, creating a default one if missing.

        A coach or admin without a profile row is a normal state right after
        promotion, so the profile is created instead of failing. Clients get
        None.
        """
        profile = await self.db.get_coach_by_user_id(actor.id)
        if profile is not None:
            return await self.refresh_stats(profile)

        if actor.role not in COACH_ROLES:
            return None

        data = CoachProfileCreate(
            user_id=actor.id,
            full_name=actor.full_name or "Coach",
            email=actor.email,
            price=to_money(self.settings.default_session_price),
        )
        try:
            profile = await self.db.create_coach(data)
        except DuplicateRecordError:
            # Another request created it first
            profile = await self.db.get_coach_by_user_id(actor.id)
            if profile is None:
                raise

        logger.info(
            f"Created default coach profile: {log_context(coach_id=profile.id, user_id=actor.id)}"
        )
        return profile

    async def refresh_stats(self, coach: CoachProfile) -> CoachProfile:
        """Recompute the stats projection of a coach from its ledger."""
        ledger = await self.db.get_appointments_by_coach(coach.id)
        stats = compute_coach_stats(ledger)
        if stats == CoachStats(**coach.model_dump()):
            return coach

        unit = UnitOfWork("refresh_coach_stats")
        unit.update(COACHES_TABLE, stats.model_dump(), match={"id": coach.id}, label="refresh_stats")
        await self.db.commit(unit)
        return coach.model_copy(update=stats.model_dump())

    async def withdraw(self, actor: Actor, coach_id: str, amount: Decimal) -> Withdrawal:
        """
        Request a payout of part of the coach balance.

        Raises:
            ValidationError: If the amount is not positive or the balance is too low
            StateConflictError: If the balance changed concurrently
        """
        coach = await self.require_coach(coach_id)
        require_coach_owner(actor, coach, allow_admin=False)

        amount = to_money(amount)
        if amount <= 0:
            raise ValidationError("The withdrawal amount must be positive.")

        minimum = self.settings.min_withdrawal_amount
        balance = to_money(coach.balance)
        if balance < minimum or balance < amount:
            raise ValidationError(INSUFFICIENT_BALANCE_MESSAGE.format(minimum=minimum))

        unit = UnitOfWork("withdraw_balance")
        unit.insert(
            WITHDRAWALS_TABLE,
            {
                "coach_id": coach.id,
                "amount": amount,
                "status": WithdrawalStatus.PENDING,
                "created_at": self.clock(),
            },
            label="record_withdrawal",
        )
        unit.update(
            COACHES_TABLE,
            {"balance": balance - amount},
            match={"id": coach.id, "balance": balance},
            label="debit_balance",
            expect_rows=1,
        )

        try:
            results = await self.db.commit(unit)
        except ConflictingWriteError as e:
            raise StateConflictError(CONCURRENT_UPDATE_MESSAGE) from e

        logger.info(
            f"Withdrawal requested: {log_context(coach_id=coach.id, amount=amount)}"
        )
        return Withdrawal(**results[unit.index_of("record_withdrawal")][0])

    async def update_price(self, actor: Actor, coach_id: str, price: Decimal) -> CoachProfile:
        """Change the per-session price charged for new bookings."""
        coach = await self.require_coach(coach_id)
        require_coach_owner(actor, coach)

        price = to_money(price)
        if price <= 0:
            raise ValidationError("The session price must be positive.")

        updated = await self.db.update_coach_price(coach.id, price)
        if updated is None:
            raise CoachNotFoundError("This coach does not exist.")
        return updated
