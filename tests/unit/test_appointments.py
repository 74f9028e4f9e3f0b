"""
Unit tests for the appointment state machine.
"""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
import stripe

from fakes import FIXED_NOW
from models.actor import ActorRole
from models.appointment import AppointmentStatus
from scheduling.appointments import TRANSITIONS, AppointmentStateMachine
from utils.constants import (
    APPOINTMENTS_TABLE,
    COACH_CANCELLATION_MESSAGE,
    COACH_CANCELLATION_NOTE,
    PRIORITY_CANCELLATION_MESSAGE,
    STANDARD_CANCELLATION_MESSAGE,
)
from utils.exceptions import (
    AppointmentNotFoundError,
    AuthorizationError,
    InvalidTransitionError,
    PaymentError,
    SlotNotAvailableError,
    StateConflictError,
    ValidationError,
)


@pytest.fixture
def machine(db, app_settings, clock):
    return AppointmentStateMachine(db, app_settings=app_settings, clock=clock)


@pytest_asyncio.fixture
async def pending(machine, client_actor, coach, slot):
    return await machine.reserve(client_actor.id, coach, slot, Decimal("35.00"))


@pytest_asyncio.fixture
async def scheduled(machine, pending):
    return await machine.confirm(pending.id)


def test_transition_table_has_no_exit_from_terminal_states():
    for sources, _ in TRANSITIONS.values():
        assert AppointmentStatus.CANCELLED not in sources
        assert AppointmentStatus.COMPLETED not in sources


class TestReserve:
    """Test slot claims."""

    @pytest.mark.asyncio
    async def test_reserve_claims_slot(self, machine, client_actor, coach, slot, db):
        appointment = await machine.reserve(
            client_actor.id, coach, slot, Decimal("26.25"), patient_name="Ana"
        )

        assert appointment.status == AppointmentStatus.PENDING_PAYMENT
        assert appointment.price == Decimal("26.25")
        assert appointment.date == slot.start_time
        assert appointment.slot_id == slot.id
        assert db.slot(slot.id).is_booked is True

    @pytest.mark.asyncio
    async def test_second_reservation_loses(self, machine, client_actor, vip_actor, coach, slot, db):
        await machine.reserve(client_actor.id, coach, slot, Decimal("35.00"))

        # Same stale snapshot of the slot as the first caller
        with pytest.raises(SlotNotAvailableError):
            await machine.reserve(vip_actor.id, coach, slot, Decimal("35.00"))

        live = [
            row for row in db.tables[APPOINTMENTS_TABLE].values() if row["slot_id"] == slot.id
        ]
        assert len(live) == 1

    @pytest.mark.asyncio
    async def test_slot_of_other_coach(self, machine, client_actor, slot, db):
        other = db.add_coach(db.add_actor("other@example.com", ActorRole.COACH))

        with pytest.raises(SlotNotAvailableError):
            await machine.reserve(client_actor.id, other, slot, Decimal("35.00"))


class TestConfirm:
    """Test payment confirmation."""

    @pytest.mark.asyncio
    async def test_confirm_schedules_and_refreshes_stats(self, machine, pending, coach, db):
        confirmed = await machine.confirm(pending.id)

        assert confirmed.status == AppointmentStatus.SCHEDULED
        stats = db.coach(coach.id)
        assert stats.total_sessions == 1
        assert stats.active_patients == 1
        assert stats.total_patients == 1
        assert stats.completed_sessions == 0

    @pytest.mark.asyncio
    async def test_confirm_is_idempotent(self, machine, pending, db):
        await machine.confirm(pending.id)
        commits = len(db.commits)

        again = await machine.confirm(pending.id)

        assert again.status == AppointmentStatus.SCHEDULED
        assert len(db.commits) == commits

    @pytest.mark.asyncio
    async def test_payment_after_release_flags_refund(self, machine, pending, slot, db):
        await machine.expire(pending.id)

        late = await machine.confirm(pending.id)

        assert late.status == AppointmentStatus.CANCELLED
        assert late.refund_due is True
        assert db.appointment(pending.id).refund_due is True
        assert db.slot(slot.id).is_booked is False

    @pytest.mark.asyncio
    async def test_late_payment_recorded_once(self, machine, pending, db):
        await machine.expire(pending.id)
        await machine.confirm(pending.id)
        commits = len(db.commits)

        again = await machine.confirm(pending.id)

        assert again.refund_due is True
        assert len(db.commits) == commits

    @pytest.mark.asyncio
    async def test_confirm_unknown(self, machine):
        with pytest.raises(AppointmentNotFoundError):
            await machine.confirm("00000000-0000-0000-0000-000000000000")

    @pytest.mark.asyncio
    async def test_stats_failure_does_not_block_transition(self, machine, pending, db):
        db.fail_reads.add(APPOINTMENTS_TABLE)

        confirmed = await machine.confirm(pending.id)

        assert confirmed.status == AppointmentStatus.SCHEDULED


class TestCancelByClient:
    """Test client cancellations."""

    @pytest.mark.asyncio
    async def test_standard_refund(self, machine, scheduled, client_actor, slot, db):
        outcome = await machine.cancel_by_client(client_actor, scheduled.id)

        assert outcome.refund_percentage == 50
        assert outcome.message == STANDARD_CANCELLATION_MESSAGE
        assert db.appointment(scheduled.id).status == AppointmentStatus.CANCELLED
        assert db.slot(slot.id).is_booked is False

    @pytest.mark.asyncio
    async def test_priority_refund(self, machine, vip_actor, coach, slot):
        appointment = await machine.reserve(vip_actor.id, coach, slot, Decimal("35.00"))
        await machine.confirm(appointment.id)

        outcome = await machine.cancel_by_client(vip_actor, appointment.id)

        assert outcome.refund_percentage == 100
        assert outcome.message == PRIORITY_CANCELLATION_MESSAGE

    @pytest.mark.asyncio
    async def test_only_the_patient(self, machine, scheduled, vip_actor):
        with pytest.raises(AuthorizationError):
            await machine.cancel_by_client(vip_actor, scheduled.id)

    @pytest.mark.asyncio
    async def test_anonymous_refused(self, machine, scheduled):
        with pytest.raises(AuthorizationError):
            await machine.cancel_by_client(None, scheduled.id)

    @pytest.mark.asyncio
    async def test_pending_cannot_be_cancelled_by_client(self, machine, pending, client_actor):
        with pytest.raises(InvalidTransitionError):
            await machine.cancel_by_client(client_actor, pending.id)

    @pytest.mark.asyncio
    async def test_second_cancel_refused(self, machine, scheduled, client_actor, slot, db):
        await machine.cancel_by_client(client_actor, scheduled.id)
        rebooked = await machine.reserve(
            client_actor.id, db.coach(scheduled.coach_id), db.slot(slot.id), Decimal("35.00")
        )

        with pytest.raises(InvalidTransitionError):
            await machine.cancel_by_client(client_actor, scheduled.id)
        assert db.slot(slot.id).is_booked is True
        assert db.appointment(rebooked.id).status == AppointmentStatus.PENDING_PAYMENT

    @pytest.mark.asyncio
    async def test_release_by_date_without_slot_id(self, machine, client_actor, coach, db):
        booked = db.add_slot(coach.id, FIXED_NOW + timedelta(days=2), is_booked=True)
        legacy = db.add_appointment(
            patient_id=client_actor.id,
            coach_id=coach.id,
            date=booked.start_time,
            price=Decimal("35.00"),
            status="scheduled",
        )

        await machine.cancel_by_client(client_actor, legacy.id)

        assert db.slot(booked.id).is_booked is False


class TestCancelByCoach:
    """Test coach cancellations."""

    @pytest.mark.asyncio
    async def test_full_refund_and_penalty_note(self, machine, scheduled, coach_actor, slot, db):
        outcome = await machine.cancel_by_coach(coach_actor, scheduled.id)

        assert outcome.refund_percentage == 100
        assert outcome.message == COACH_CANCELLATION_MESSAGE
        cancelled = db.appointment(scheduled.id)
        assert cancelled.status == AppointmentStatus.CANCELLED
        assert cancelled.coach_notes == COACH_CANCELLATION_NOTE
        assert db.slot(slot.id).is_booked is False

    @pytest.mark.asyncio
    async def test_completed_refused(self, machine, scheduled, coach_actor):
        await machine.complete(coach_actor, scheduled.id, "Good progress")

        with pytest.raises(InvalidTransitionError):
            await machine.cancel_by_coach(coach_actor, scheduled.id)

    @pytest.mark.asyncio
    async def test_other_actor_refused(self, machine, scheduled, client_actor):
        with pytest.raises(AuthorizationError):
            await machine.cancel_by_coach(client_actor, scheduled.id)


class TestExpire:
    """Test reservation lease expiry."""

    @pytest.mark.asyncio
    async def test_expire_releases_slot(self, machine, pending, slot, db):
        expired = await machine.expire(pending.id)

        assert expired.status == AppointmentStatus.CANCELLED
        assert db.slot(slot.id).is_booked is False

    @pytest.mark.asyncio
    async def test_paid_appointment_not_expired(self, machine, scheduled, slot, db):
        assert await machine.expire(scheduled.id) is None
        assert db.slot(slot.id).is_booked is True

    @pytest.mark.asyncio
    async def test_sweep_expires_open_session_first(self, machine, pending, slot, db):
        await db.set_checkout_session(pending.id, "cs_test_1")

        with patch(
            "stripe.checkout.Session.expire", return_value=MagicMock(status="expired")
        ) as mock_expire:
            expired = await machine.expire(pending.id)

        mock_expire.assert_called_once_with("cs_test_1")
        assert expired.status == AppointmentStatus.CANCELLED
        assert db.slot(slot.id).is_booked is False

    @pytest.mark.asyncio
    async def test_completed_session_keeps_reservation(self, machine, pending, slot, db):
        await db.set_checkout_session(pending.id, "cs_test_1")
        already_paid = stripe.InvalidRequestError(
            "Only Checkout Sessions with a status of open can be expired.", None, http_status=400
        )

        with patch("stripe.checkout.Session.expire", side_effect=already_paid), patch(
            "stripe.checkout.Session.retrieve", return_value=MagicMock(status="complete")
        ):
            assert await machine.expire(pending.id) is None

        assert db.appointment(pending.id).status == AppointmentStatus.PENDING_PAYMENT
        assert db.slot(slot.id).is_booked is True

    @pytest.mark.asyncio
    async def test_stripe_down_keeps_reservation(self, machine, pending, db):
        await db.set_checkout_session(pending.id, "cs_test_1")

        with patch(
            "stripe.checkout.Session.expire", side_effect=stripe.APIConnectionError("down")
        ), patch("payments.stripe.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(PaymentError):
                await machine.expire(pending.id)

        assert db.appointment(pending.id).status == AppointmentStatus.PENDING_PAYMENT

    @pytest.mark.asyncio
    async def test_replaced_session_not_released(self, machine, pending, slot, db):
        await db.set_checkout_session(pending.id, "cs_test_2")

        with patch("stripe.checkout.Session.expire") as mock_expire:
            assert await machine.expire(pending.id, "cs_test_1") is None

        mock_expire.assert_not_called()
        assert db.appointment(pending.id).status == AppointmentStatus.PENDING_PAYMENT
        assert db.slot(slot.id).is_booked is True

    @pytest.mark.asyncio
    async def test_current_session_released_without_stripe_call(self, machine, pending, slot, db):
        await db.set_checkout_session(pending.id, "cs_test_2")

        with patch("stripe.checkout.Session.expire") as mock_expire:
            expired = await machine.expire(pending.id, "cs_test_2")

        mock_expire.assert_not_called()
        assert expired.status == AppointmentStatus.CANCELLED
        assert db.slot(slot.id).is_booked is False


class TestComplete:
    """Test session completion."""

    @pytest.mark.asyncio
    async def test_complete_credits_balance(self, machine, scheduled, coach_actor, coach, db):
        completed = await machine.complete(coach_actor, scheduled.id, "  Notes ", "Breathe")

        assert completed.status == AppointmentStatus.COMPLETED
        assert completed.coach_notes == "Notes"
        assert completed.improvement_tips == "Breathe"
        profile = db.coach(coach.id)
        assert profile.balance == Decimal("35.00")
        assert profile.completed_sessions == 1
        assert profile.active_patients == 0
        assert profile.total_patients == 1

    @pytest.mark.asyncio
    async def test_notes_required(self, machine, scheduled, coach_actor):
        with pytest.raises(ValidationError):
            await machine.complete(coach_actor, scheduled.id, "   ")

    @pytest.mark.asyncio
    async def test_pending_cannot_complete(self, machine, pending, coach_actor):
        with pytest.raises(InvalidTransitionError):
            await machine.complete(coach_actor, pending.id, "Notes")

    @pytest.mark.asyncio
    async def test_balance_changed_concurrently(
        self, machine, scheduled, coach_actor, coach, db, monkeypatch
    ):
        stale = db.coach(coach.id)
        db.tables["coaches"][coach.id]["balance"] = "10.00"

        async def stale_coach(coach_id):
            return stale

        monkeypatch.setattr(machine.coaches, "require_coach", stale_coach)

        with pytest.raises(StateConflictError):
            await machine.complete(coach_actor, scheduled.id, "Notes")
        assert db.appointment(scheduled.id).status == AppointmentStatus.SCHEDULED
        assert db.coach(coach.id).balance == Decimal("10.00")
