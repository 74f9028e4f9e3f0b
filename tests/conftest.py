"""
Pytest configuration and shared fixtures.
"""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from config import Settings
from models.actor import ActorRole
from scheduling.actions import BookingActions
from fakes import FIXED_NOW, FrozenClock, InMemoryDatastore

VIP_EMAIL = "vip@example.com"


@pytest.fixture
def app_settings():
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        supabase_url="https://test.supabase.co",
        supabase_key="test_key",
        stripe_secret_key="sk_test_123",
        stripe_publishable_key="pk_test_123",
        stripe_webhook_secret="whsec_test_123",
        environment="test",
        app_base_url="https://coaching.test",
        priority_actors=VIP_EMAIL,
        redis_url=None,
    )


@pytest.fixture
def clock():
    return FrozenClock(FIXED_NOW)


@pytest.fixture
def db(clock):
    return InMemoryDatastore(clock)


@pytest.fixture
def actions(db, app_settings, clock):
    return BookingActions(db, app_settings, clock)


@pytest.fixture
def coach_actor(db):
    return db.add_actor("laura@example.com", ActorRole.COACH, full_name="Laura Coach")


@pytest.fixture
def coach(db, coach_actor):
    return db.add_coach(coach_actor, price=Decimal("35.00"))


@pytest.fixture
def client_actor(db):
    return db.add_actor("ana@example.com", ActorRole.CLIENT, full_name="Ana")


@pytest.fixture
def vip_actor(db):
    return db.add_actor(VIP_EMAIL, ActorRole.CLIENT, full_name="Vip")


@pytest.fixture
def admin_actor(db):
    return db.add_actor("admin@example.com", ActorRole.ADMIN, full_name="Admin")


@pytest.fixture
def slot(db, coach):
    """Unbooked slot starting tomorrow at 10:00."""
    return db.add_slot(coach.id, FIXED_NOW + timedelta(days=1, hours=1))


@pytest.fixture
def mock_supabase_client():
    """Create a mock Supabase client."""
    mock_client = MagicMock()
    mock_table = MagicMock()
    mock_client.table.return_value = mock_table
    return mock_client, mock_table
