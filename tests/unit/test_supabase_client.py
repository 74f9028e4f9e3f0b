"""
Unit tests for Supabase database client.
Tests with mocked Supabase API calls.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from postgrest.exceptions import APIError

from db.supabase_client import SupabaseClient
from db.unit_of_work import UnitOfWork
from models.actor import ActorCreate
from models.slot import SlotCreate
from utils.exceptions import ConflictingWriteError, DatabaseError, DuplicateRecordError


@pytest.fixture
def supabase_client(mock_supabase_client):
    """Create SupabaseClient with mocked client."""
    mock_client, _ = mock_supabase_client
    with patch("db.supabase_client.create_client", return_value=mock_client):
        client = SupabaseClient()
        client.client = mock_client
        return client


def _response(data, count=None):
    response = MagicMock()
    response.data = data
    response.count = count
    return response


@pytest.mark.asyncio
async def test_get_actor_by_email_normalizes(supabase_client, mock_supabase_client):
    """Test lookup by email uses the normalized address."""
    _, mock_table = mock_supabase_client
    mock_table.select.return_value.eq.return_value.execute.return_value = _response(
        [{"id": "u1", "email": "ana@example.com", "role": "client"}]
    )

    result = await supabase_client.get_actor_by_email("  Ana@Example.com ")

    assert result.id == "u1"
    mock_table.select.return_value.eq.assert_called_with("email", "ana@example.com")


@pytest.mark.asyncio
async def test_create_actor_duplicate(supabase_client, mock_supabase_client):
    """Test unique violations surface as DuplicateRecordError."""
    _, mock_table = mock_supabase_client
    mock_table.insert.return_value.execute.side_effect = APIError(
        {"message": "duplicate key value", "code": "23505", "details": None, "hint": None}
    )

    with pytest.raises(DuplicateRecordError):
        await supabase_client.create_actor(ActorCreate(email="ana@example.com"))


@pytest.mark.asyncio
async def test_create_slot_success(supabase_client, mock_supabase_client):
    """Test successful slot creation."""
    _, mock_table = mock_supabase_client
    start_time = datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc)
    end_time = start_time + timedelta(hours=1)
    mock_table.insert.return_value.execute.return_value = _response(
        [
            {
                "id": "slot_123",
                "coach_id": "coach_1",
                "start_time": "2026-01-15T10:00:00+00:00",
                "end_time": "2026-01-15T11:00:00+00:00",
                "is_booked": False,
            }
        ]
    )

    result = await supabase_client.create_slot(
        SlotCreate(coach_id="coach_1", start_time=start_time, end_time=end_time)
    )

    assert result.id == "slot_123"
    assert result.start_time == start_time
    inserted = mock_table.insert.call_args[0][0]
    assert inserted["start_time"] == "2026-01-15T10:00:00+00:00"


@pytest.mark.asyncio
async def test_get_slots_filters(supabase_client, mock_supabase_client):
    """Test slot listing applies booking and window filters in order."""
    _, mock_table = mock_supabase_client
    query = mock_table.select.return_value.eq.return_value
    query.eq.return_value = query
    query.gte.return_value = query
    query.lte.return_value = query
    query.order.return_value.execute.return_value = _response([])

    start = datetime(2026, 1, 10, tzinfo=timezone.utc)
    end = start + timedelta(days=30)
    result = await supabase_client.get_slots("coach_1", is_booked=False, start_from=start, end_before=end)

    assert result == []
    query.eq.assert_called_with("is_booked", False)
    query.gte.assert_called_with("start_time", "2026-01-10T00:00:00+00:00")
    query.lte.assert_called_with("end_time", "2026-02-09T00:00:00+00:00")
    query.order.assert_called_with("start_time", desc=False)


@pytest.mark.asyncio
async def test_count_appointments_uses_exact_count(supabase_client, mock_supabase_client):
    """Test appointment counting relies on the exact count header."""
    _, mock_table = mock_supabase_client
    query = mock_table.select.return_value.eq.return_value
    query.eq.return_value = query
    query.execute.return_value = _response([{"id": "a1"}], count=3)

    result = await supabase_client.count_appointments("u1", discount_code_id="d1")

    assert result == 3
    mock_table.select.assert_called_with("id", count="exact")
    query.eq.assert_called_with("discount_code_id", "d1")


@pytest.mark.asyncio
async def test_get_discount_code_rereads_row(supabase_client, mock_supabase_client):
    """Test only the code lookup is cached and a deactivated code is seen at once."""
    _, mock_table = mock_supabase_client
    query = mock_table.select.return_value.eq.return_value
    query.execute.side_effect = [
        _response([{"id": "d1", "code": "PRIMERA25", "discount_percentage": 25}]),
        _response([{"id": "d1", "code": "PRIMERA25", "discount_percentage": 25, "active": False}]),
    ]

    first = await supabase_client.get_discount_code(" primera25 ")
    second = await supabase_client.get_discount_code("PRIMERA25")

    assert first.active is True
    assert second.active is False
    mock_table.select.return_value.eq.assert_called_with("id", "d1")


@pytest.mark.asyncio
async def test_set_checkout_session_stores_expiry(supabase_client, mock_supabase_client):
    """Test the session id and its expiry are written together."""
    _, mock_table = mock_supabase_client
    mock_table.update.return_value.eq.return_value.execute.return_value = _response([])
    expires_at = datetime(2026, 1, 10, 12, 30, tzinfo=timezone.utc)

    await supabase_client.set_checkout_session("a1", "cs_1", expires_at)

    values = mock_table.update.call_args.args[0]
    assert values["checkout_session_id"] == "cs_1"
    assert values["checkout_expires_at"] == "2026-01-10T12:30:00+00:00"


@pytest.mark.asyncio
async def test_get_appointment_database_error(supabase_client, mock_supabase_client):
    """Test raw client failures become DatabaseError."""
    _, mock_table = mock_supabase_client
    mock_table.select.return_value.eq.return_value.execute.side_effect = Exception("boom")

    with pytest.raises(DatabaseError):
        await supabase_client.get_appointment_by_id("a1")


class TestCommit:
    """Test the unit of work RPC call."""

    @pytest.mark.asyncio
    async def test_commit_calls_rpc(self, supabase_client, mock_supabase_client):
        """Test commit sends the serialized operations."""
        mock_client, _ = mock_supabase_client
        mock_client.rpc.return_value.execute.return_value = _response([[{"id": "s1"}]])
        unit = UnitOfWork("delete_slot")
        unit.delete("availability_slots", match={"id": "s1"}, label="delete_slot")

        result = await supabase_client.commit(unit)

        assert result == [[{"id": "s1"}]]
        mock_client.rpc.assert_called_once_with(
            "apply_unit_of_work", {"operations": unit.payload()}
        )

    @pytest.mark.asyncio
    async def test_commit_empty_unit_skips_rpc(self, supabase_client, mock_supabase_client):
        mock_client, _ = mock_supabase_client

        assert await supabase_client.commit(UnitOfWork("noop")) == []
        mock_client.rpc.assert_not_called()

    @pytest.mark.asyncio
    async def test_commit_conflict(self, supabase_client, mock_supabase_client):
        """Test the conflict signal maps to ConflictingWriteError with its label."""
        mock_client, _ = mock_supabase_client
        mock_client.rpc.return_value.execute.side_effect = APIError(
            {
                "message": "unit_of_work_conflict:claim_slot",
                "code": "P0001",
                "details": None,
                "hint": None,
            }
        )
        unit = UnitOfWork("reserve_slot")
        unit.update(
            "availability_slots",
            {"is_booked": True},
            match={"id": "s1", "is_booked": False},
            label="claim_slot",
            expect_rows=1,
        )

        with pytest.raises(ConflictingWriteError) as exc_info:
            await supabase_client.commit(unit)

        assert exc_info.value.label == "claim_slot"

    @pytest.mark.asyncio
    async def test_commit_other_error(self, supabase_client, mock_supabase_client):
        mock_client, _ = mock_supabase_client
        mock_client.rpc.return_value.execute.side_effect = Exception("timeout")
        unit = UnitOfWork("delete_slot")
        unit.delete("availability_slots", match={"id": "s1"}, label="delete_slot")

        with pytest.raises(DatabaseError, match="delete_slot"):
            await supabase_client.commit(unit)
