"""
Unit tests for the coach directory.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from fakes import FIXED_NOW
from models.actor import ActorRole
from models.appointment import Appointment, AppointmentStatus
from models.withdrawal import WithdrawalStatus
from scheduling.coaches import CoachDirectory, compute_coach_stats
from utils.exceptions import (
    AuthorizationError,
    DuplicateRecordError,
    StateConflictError,
    ValidationError,
)


@pytest.fixture
def directory(db, app_settings, clock):
    return CoachDirectory(db, app_settings, clock)


def _appointment(patient_id, status):
    return Appointment(
        id=f"{patient_id}-{status}",
        patient_id=patient_id,
        coach_id="c1",
        date=FIXED_NOW,
        price=Decimal("35.00"),
        status=status,
    )


def test_compute_coach_stats():
    ledger = [
        _appointment("p1", AppointmentStatus.SCHEDULED),
        _appointment("p1", AppointmentStatus.COMPLETED),
        _appointment("p2", AppointmentStatus.COMPLETED),
        _appointment("p3", AppointmentStatus.CANCELLED),
        _appointment("p4", AppointmentStatus.PENDING_PAYMENT),
    ]

    stats = compute_coach_stats(ledger)

    assert stats.total_sessions == 3
    assert stats.completed_sessions == 2
    assert stats.total_patients == 2
    assert stats.active_patients == 1


def test_compute_coach_stats_empty_ledger():
    stats = compute_coach_stats([])

    assert stats.total_sessions == 0
    assert stats.active_patients == 0


class TestGetOrCreateProfile:
    """Test self-healing profile lookup."""

    @pytest.mark.asyncio
    async def test_creates_default_profile_for_coach(self, directory, db):
        actor = db.add_actor("new.coach@example.com", ActorRole.COACH, full_name="New Coach")

        profile = await directory.get_or_create_profile(actor)

        assert profile.user_id == actor.id
        assert profile.full_name == "New Coach"
        assert profile.price == Decimal("35.00")
        assert profile.balance == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_existing_profile_is_returned(self, directory, coach_actor, coach):
        profile = await directory.get_or_create_profile(coach_actor)

        assert profile.id == coach.id

    @pytest.mark.asyncio
    async def test_client_has_no_profile(self, directory, client_actor):
        assert await directory.get_or_create_profile(client_actor) is None

    @pytest.mark.asyncio
    async def test_concurrent_creation(self, directory, db, monkeypatch):
        actor = db.add_actor("race@example.com", ActorRole.COACH)
        winner = db.add_coach(actor)
        calls = []

        async def no_profile_then_winner(user_id):
            calls.append(user_id)
            return None if len(calls) == 1 else winner

        async def duplicate(data):
            raise DuplicateRecordError("duplicate coach")

        monkeypatch.setattr(db, "get_coach_by_user_id", no_profile_then_winner)
        monkeypatch.setattr(db, "create_coach", duplicate)

        profile = await directory.get_or_create_profile(actor)

        assert profile.id == winner.id

    @pytest.mark.asyncio
    async def test_stale_stats_are_refreshed(self, directory, db, coach_actor, coach, client_actor):
        db.add_appointment(
            patient_id=client_actor.id,
            coach_id=coach.id,
            date=FIXED_NOW + timedelta(days=1),
            price=Decimal("35.00"),
            status="scheduled",
        )

        profile = await directory.get_or_create_profile(coach_actor)

        assert profile.total_sessions == 1
        assert db.coach(coach.id).active_patients == 1


class TestWithdraw:
    """Test balance withdrawals."""

    @pytest.fixture
    def funded(self, db, coach_actor):
        other = db.add_actor("funded@example.com", ActorRole.COACH)
        return other, db.add_coach(other, balance=Decimal("120.00"))

    @pytest.mark.asyncio
    async def test_withdraw_debits_balance(self, directory, db, funded):
        actor, profile = funded

        withdrawal = await directory.withdraw(actor, profile.id, Decimal("70.00"))

        assert withdrawal.amount == Decimal("70.00")
        assert withdrawal.status == WithdrawalStatus.PENDING
        assert db.coach(profile.id).balance == Decimal("50.00")
        assert len(db.withdrawals()) == 1

    @pytest.mark.asyncio
    async def test_balance_below_minimum(self, directory, coach_actor, coach):
        with pytest.raises(ValidationError, match="minimum"):
            await directory.withdraw(coach_actor, coach.id, Decimal("10.00"))

    @pytest.mark.asyncio
    async def test_amount_above_balance(self, directory, db, funded):
        actor, profile = funded

        with pytest.raises(ValidationError):
            await directory.withdraw(actor, profile.id, Decimal("500.00"))
        assert db.withdrawals() == []

    @pytest.mark.asyncio
    async def test_non_positive_amount(self, directory, funded):
        actor, profile = funded

        with pytest.raises(ValidationError):
            await directory.withdraw(actor, profile.id, Decimal("0"))

    @pytest.mark.asyncio
    async def test_admin_cannot_withdraw_for_coach(self, directory, funded, admin_actor):
        _, profile = funded

        with pytest.raises(AuthorizationError):
            await directory.withdraw(admin_actor, profile.id, Decimal("60.00"))

    @pytest.mark.asyncio
    async def test_concurrent_balance_change(self, directory, db, funded, monkeypatch):
        actor, profile = funded
        stale = db.coach(profile.id)
        db.tables["coaches"][profile.id]["balance"] = "100.00"

        async def stale_coach(coach_id):
            return stale

        monkeypatch.setattr(directory, "require_coach", stale_coach)

        with pytest.raises(StateConflictError):
            await directory.withdraw(actor, profile.id, Decimal("60.00"))
        assert db.withdrawals() == []
        assert db.coach(profile.id).balance == Decimal("100.00")


class TestUpdatePrice:
    """Test session price changes."""

    @pytest.mark.asyncio
    async def test_owner_updates_price(self, directory, db, coach_actor, coach):
        updated = await directory.update_price(coach_actor, coach.id, Decimal("40.5"))

        assert updated.price == Decimal("40.50")
        assert db.coach(coach.id).price == Decimal("40.50")

    @pytest.mark.asyncio
    async def test_admin_updates_price(self, directory, admin_actor, coach):
        updated = await directory.update_price(admin_actor, coach.id, Decimal("45.00"))

        assert updated.price == Decimal("45.00")

    @pytest.mark.asyncio
    async def test_price_must_be_positive(self, directory, coach_actor, coach):
        with pytest.raises(ValidationError):
            await directory.update_price(coach_actor, coach.id, Decimal("0"))

    @pytest.mark.asyncio
    async def test_client_refused(self, directory, client_actor, coach):
        with pytest.raises(AuthorizationError):
            await directory.update_price(client_actor, coach.id, Decimal("45.00"))
