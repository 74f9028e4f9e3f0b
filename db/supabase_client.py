"""
Supabase database client with the reads and writes of the booking engine.
Handles all database interactions for actors, coaches, slots, appointments,
discount codes and withdrawals.

Concurrency Notes:
==================
The engine may run as several stateless instances, so every cross-request
race is settled in Postgres:

1. Single-row conditional writes are PostgREST updates filtered on the
   expected current state (e.g. ``is_booked = false``).
2. Multi-row writes go through ``commit()``, which calls the
   ``apply_unit_of_work`` function defined in
   ``db/migrations/001_booking_engine.sql``. The function runs every operation
   in one transaction and raises ``unit_of_work_conflict:<label>`` when a
   conditional operation matches the wrong number of rows.
3. The partial unique index ``appointments_live_slot`` rejects a second live
   appointment for the same slot even if a caller bypasses the engine.

This client uses the service key, which bypasses RLS. Authorization is
enforced by the scheduling layer before any write is issued.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from postgrest.exceptions import APIError
from supabase import Client as SupabaseClientType
from supabase import create_client

from config import settings
from db.unit_of_work import CONFLICT_SIGNAL, UnitOfWork, to_row
from models.actor import Actor, ActorCreate
from models.appointment import Appointment, AppointmentStatus
from models.coach import CoachProfile, CoachProfileCreate
from models.discount import DiscountCode, DiscountCodeCreate
from models.slot import AvailabilitySlot, SlotCreate
from utils.constants import (
    APPOINTMENTS_TABLE,
    COACHES_TABLE,
    DISCOUNT_CODES_TABLE,
    SLOTS_TABLE,
    USERS_TABLE,
)
from utils.datetime_utils import parse_iso_datetime, to_iso_string, utc_now
from utils.exceptions import ConflictingWriteError, DatabaseError, DuplicateRecordError
from utils.logging_config import log_context, setup_logging
from utils.validation import normalize_discount_code, normalize_email

logger = setup_logging(name=__name__, log_level="INFO", log_file="db.log", log_dir="logs")

UNIQUE_VIOLATION = "23505"


class SupabaseClient:
    """
    Supabase database client wrapper.

    The code -> id mapping of discount codes is cached in memory for a short
    TTL; code values never change once created.
    """

    def __init__(self, client: Optional[SupabaseClientType] = None):
        """
        Initialize Supabase client.

        Args:
            client: Pre-built Supabase client (tests inject a mock here)
        """
        self.client: SupabaseClientType = client or create_client(
            settings.supabase_url, settings.supabase_key
        )

        # Format: {cache_key: (data, expiry_time)}
        self._cache: Dict[str, Tuple[Any, datetime]] = {}
        self._cache_ttl = timedelta(minutes=5)

    # ========== Cache Helpers ==========

    def _get_from_cache(self, key: str) -> Optional[Any]:
        """Get value from cache if not expired."""
        if key not in self._cache:
            return None

        data, expiry = self._cache[key]
        if utc_now() > expiry:
            del self._cache[key]
            return None

        return data

    def _set_cache(self, key: str, value: Any) -> None:
        """Set value in cache with TTL."""
        self._cache[key] = (value, utc_now() + self._cache_ttl)

    def _clear_cache(self, pattern: Optional[str] = None) -> None:
        """Clear cache entries matching pattern, or all if pattern is None."""
        if pattern is None:
            self._cache.clear()
        else:
            for key in [k for k in self._cache if pattern in k]:
                del self._cache[key]

    # ========== Actor Operations ==========

    async def get_actor_by_email(self, email: str) -> Optional[Actor]:
        """Get actor by email (case-insensitive)."""
        try:
            response = (
                self.client.table(USERS_TABLE)
                .select("*")
                .eq("email", normalize_email(email))
                .execute()
            )
            if response.data:
                return self._parse_actor(response.data[0])
            return None
        except Exception as e:
            raise DatabaseError(f"Failed to get actor by email: {e}") from e

    async def create_actor(self, actor_data: ActorCreate) -> Actor:
        """
        Create a new actor.

        Raises:
            DuplicateRecordError: If another request created the same email first
            DatabaseError: On any other failure
        """
        data = to_row(actor_data.model_dump(exclude_none=True))
        data["email"] = normalize_email(data["email"])
        try:
            response = self.client.table(USERS_TABLE).insert(data).execute()
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                raise DuplicateRecordError(f"Actor already exists: {data['email']}") from e
            raise DatabaseError(f"Failed to create actor: {e}") from e
        except Exception as e:
            raise DatabaseError(f"Failed to create actor: {e}") from e

        if not response.data:
            raise DatabaseError("Failed to create actor: no data returned")
        return self._parse_actor(response.data[0])

    # ========== Coach Operations ==========

    async def get_coach_by_id(self, coach_id: str) -> Optional[CoachProfile]:
        """Get coach profile by ID."""
        try:
            response = (
                self.client.table(COACHES_TABLE).select("*").eq("id", coach_id).execute()
            )
            if response.data:
                return CoachProfile(**response.data[0])
            return None
        except Exception as e:
            raise DatabaseError(f"Failed to get coach: {e}") from e

    async def get_coach_by_user_id(self, user_id: str) -> Optional[CoachProfile]:
        """Get the coach profile owned by an actor."""
        try:
            response = (
                self.client.table(COACHES_TABLE)
                .select("*")
                .eq("user_id", user_id)
                .limit(1)
                .execute()
            )
            if response.data:
                return CoachProfile(**response.data[0])
            return None
        except Exception as e:
            raise DatabaseError(f"Failed to get coach by user: {e}") from e

    async def create_coach(self, coach_data: CoachProfileCreate) -> CoachProfile:
        """Create a coach profile."""
        try:
            data = to_row(coach_data.model_dump(exclude_none=True))
            response = self.client.table(COACHES_TABLE).insert(data).execute()
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                raise DuplicateRecordError(
                    f"Coach profile already exists for user {coach_data.user_id}"
                ) from e
            raise DatabaseError(f"Failed to create coach: {e}") from e
        except Exception as e:
            raise DatabaseError(f"Failed to create coach: {e}") from e

        if not response.data:
            raise DatabaseError("Failed to create coach: no data returned")
        return CoachProfile(**response.data[0])

    async def update_coach_price(self, coach_id: str, price: Decimal) -> Optional[CoachProfile]:
        """Update the per-session price of a coach."""
        try:
            response = (
                self.client.table(COACHES_TABLE)
                .update({"price": str(price)})
                .eq("id", coach_id)
                .execute()
            )
            if not response.data:
                return None
            return CoachProfile(**response.data[0])
        except Exception as e:
            raise DatabaseError(f"Failed to update coach price: {e}") from e

    # ========== Slot Operations ==========

    async def create_slot(self, slot_data: SlotCreate) -> AvailabilitySlot:
        """Create a new availability slot."""
        try:
            data = to_row(slot_data.model_dump())
            response = self.client.table(SLOTS_TABLE).insert(data).execute()

            if not response.data:
                raise ValueError("no data returned")

            return self._parse_slot(response.data[0])
        except Exception as e:
            raise DatabaseError(f"Failed to create slot: {e}") from e

    async def get_slot_by_id(self, slot_id: str) -> Optional[AvailabilitySlot]:
        """Get slot by ID."""
        try:
            response = self.client.table(SLOTS_TABLE).select("*").eq("id", slot_id).execute()
            if response.data:
                return self._parse_slot(response.data[0])
            return None
        except Exception as e:
            raise DatabaseError(f"Failed to get slot: {e}") from e

    async def get_slots(
        self,
        coach_id: str,
        is_booked: Optional[bool] = None,
        start_from: Optional[datetime] = None,
        end_before: Optional[datetime] = None,
    ) -> List[AvailabilitySlot]:
        """
        Get slots of a coach ordered by start time.

        Args:
            coach_id: Coach profile ID
            is_booked: Filter on booking state (None returns both)
            start_from: Only slots starting at or after this time
            end_before: Only slots ending at or before this time

        Returns:
            List of slots matching criteria
        """
        try:
            query = self.client.table(SLOTS_TABLE).select("*").eq("coach_id", coach_id)

            if is_booked is not None:
                query = query.eq("is_booked", is_booked)
            if start_from:
                query = query.gte("start_time", to_iso_string(start_from))
            if end_before:
                query = query.lte("end_time", to_iso_string(end_before))

            response = query.order("start_time", desc=False).execute()
            return [self._parse_slot(item) for item in response.data]
        except Exception as e:
            raise DatabaseError(f"Failed to get slots: {e}") from e

    # ========== Appointment Operations ==========

    async def get_appointment_by_id(self, appointment_id: str) -> Optional[Appointment]:
        """Get appointment by ID."""
        try:
            response = (
                self.client.table(APPOINTMENTS_TABLE)
                .select("*")
                .eq("id", appointment_id)
                .execute()
            )
            if response.data:
                return self._parse_appointment(response.data[0])
            return None
        except Exception as e:
            raise DatabaseError(f"Failed to get appointment: {e}") from e

    async def get_appointments_by_patient(self, patient_id: str) -> List[Appointment]:
        """Get all appointments of a client, most recent first."""
        try:
            response = (
                self.client.table(APPOINTMENTS_TABLE)
                .select("*")
                .eq("patient_id", patient_id)
                .order("date", desc=True)
                .execute()
            )
            return [self._parse_appointment(item) for item in response.data]
        except Exception as e:
            raise DatabaseError(f"Failed to get appointments: {e}") from e

    async def get_appointments_by_coach(self, coach_id: str) -> List[Appointment]:
        """Get the full appointment ledger of a coach."""
        try:
            response = (
                self.client.table(APPOINTMENTS_TABLE)
                .select("*")
                .eq("coach_id", coach_id)
                .order("date", desc=True)
                .execute()
            )
            return [self._parse_appointment(item) for item in response.data]
        except Exception as e:
            raise DatabaseError(f"Failed to get coach appointments: {e}") from e

    async def count_appointments(
        self, patient_id: str, discount_code_id: Optional[str] = None
    ) -> int:
        """
        Count appointments of any status created by a client.

        Args:
            patient_id: Client actor ID
            discount_code_id: Only count appointments referencing this code
        """
        try:
            query = (
                self.client.table(APPOINTMENTS_TABLE)
                .select("id", count="exact")
                .eq("patient_id", patient_id)
            )
            if discount_code_id:
                query = query.eq("discount_code_id", discount_code_id)
            response = query.execute()
            if response.count is not None:
                return response.count
            return len(response.data or [])
        except Exception as e:
            raise DatabaseError(f"Failed to count appointments: {e}") from e

    async def get_stale_pending_appointments(
        self, created_before: datetime, limit: int = 100
    ) -> List[Appointment]:
        """Get pending-payment appointments created before a cutoff."""
        try:
            response = (
                self.client.table(APPOINTMENTS_TABLE)
                .select("*")
                .eq("status", AppointmentStatus.PENDING_PAYMENT.value)
                .lt("created_at", to_iso_string(created_before))
                .order("created_at", desc=False)
                .limit(limit)
                .execute()
            )
            return [self._parse_appointment(item) for item in response.data]
        except Exception as e:
            raise DatabaseError(f"Failed to get stale appointments: {e}") from e

    async def set_checkout_session(
        self, appointment_id: str, session_id: str, expires_at: Optional[datetime] = None
    ) -> Optional[Appointment]:
        """Store the payment gateway session id and its expiry on an appointment."""
        try:
            response = (
                self.client.table(APPOINTMENTS_TABLE)
                .update(
                    {
                        "checkout_session_id": session_id,
                        "checkout_expires_at": to_iso_string(expires_at) if expires_at else None,
                        "updated_at": to_iso_string(utc_now()),
                    }
                )
                .eq("id", appointment_id)
                .execute()
            )
            if not response.data:
                return None
            return self._parse_appointment(response.data[0])
        except Exception as e:
            raise DatabaseError(f"Failed to store checkout session: {e}") from e

    # ========== Discount Code Operations ==========

    async def get_discount_code(self, code: str) -> Optional[DiscountCode]:
        """
        Get discount code by its normalized value.

        Only the code -> id mapping is cached; the row itself is read fresh
        so deactivation and expiry changes apply immediately.
        """
        normalized = normalize_discount_code(code)
        cache_key = f"discount:code:{normalized}"

        cached_id = self._get_from_cache(cache_key)
        if cached_id is not None:
            discount = await self.get_discount_code_by_id(cached_id)
            if discount is not None:
                return discount
            self._clear_cache(cache_key)

        try:
            response = (
                self.client.table(DISCOUNT_CODES_TABLE)
                .select("*")
                .eq("code", normalized)
                .execute()
            )
            if response.data:
                discount = self._parse_discount(response.data[0])
                self._set_cache(cache_key, discount.id)
                return discount
            return None
        except Exception as e:
            raise DatabaseError(f"Failed to get discount code: {e}") from e

    async def get_discount_code_by_id(self, discount_code_id: str) -> Optional[DiscountCode]:
        """Get discount code by ID."""
        try:
            response = (
                self.client.table(DISCOUNT_CODES_TABLE)
                .select("*")
                .eq("id", discount_code_id)
                .execute()
            )
            if response.data:
                return self._parse_discount(response.data[0])
            return None
        except Exception as e:
            raise DatabaseError(f"Failed to get discount code: {e}") from e

    async def create_discount_code(self, code_data: DiscountCodeCreate) -> DiscountCode:
        """Create a discount code."""
        try:
            data = to_row(code_data.model_dump(exclude_none=True))
            response = self.client.table(DISCOUNT_CODES_TABLE).insert(data).execute()
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                raise DuplicateRecordError(f"Discount code exists: {code_data.code}") from e
            raise DatabaseError(f"Failed to create discount code: {e}") from e
        except Exception as e:
            raise DatabaseError(f"Failed to create discount code: {e}") from e

        if not response.data:
            raise DatabaseError("Failed to create discount code: no data returned")

        self._clear_cache(f"discount:code:{code_data.code}")
        return self._parse_discount(response.data[0])

    # ========== Unit of Work ==========

    async def commit(self, unit: UnitOfWork) -> List[List[Dict[str, Any]]]:
        """
        Apply a unit of work atomically.

        Args:
            unit: Operations to apply all-or-nothing

        Returns:
            Affected rows per operation, in operation order

        Raises:
            ConflictingWriteError: If a conditional operation did not apply
            DatabaseError: On any other failure
        """
        if not unit.operations:
            return []

        try:
            response = self.client.rpc(
                "apply_unit_of_work", {"operations": unit.payload()}
            ).execute()
        except APIError as e:
            message = e.message or str(e)
            if CONFLICT_SIGNAL in message:
                label = message.split(":", 1)[1].strip() if ":" in message else unit.name
                logger.info(
                    f"Unit of work rejected: {log_context(unit=unit.name, operation=label)}"
                )
                raise ConflictingWriteError(label) from e
            raise DatabaseError(f"Failed to apply unit of work {unit.name}: {e}") from e
        except Exception as e:
            raise DatabaseError(f"Failed to apply unit of work {unit.name}: {e}") from e

        return response.data or []

    # ========== Helper Methods ==========

    def _parse_actor(self, item: dict) -> Actor:
        item = item.copy()
        if item.get("created_at"):
            item["created_at"] = parse_iso_datetime(item["created_at"])
        return Actor(**item)

    def _parse_slot(self, item: dict) -> AvailabilitySlot:
        """
        Parse slot data from database response.

        Args:
            item: Raw slot data from database

        Returns:
            Parsed AvailabilitySlot object
        """
        item = item.copy()
        for field in ["start_time", "end_time", "created_at"]:
            if item.get(field):
                item[field] = parse_iso_datetime(item[field])
        return AvailabilitySlot(**item)

    def _parse_appointment(self, item: dict) -> Appointment:
        """
        Parse appointment data from database response.

        Args:
            item: Raw appointment data from database

        Returns:
            Parsed Appointment object
        """
        item = item.copy()
        for field in ["date", "checkout_expires_at", "created_at", "updated_at"]:
            if item.get(field):
                item[field] = parse_iso_datetime(item[field])
        return Appointment(**item)

    def _parse_discount(self, item: dict) -> DiscountCode:
        item = item.copy()
        for field in ["expires_at", "created_at"]:
            if item.get(field):
                item[field] = parse_iso_datetime(item[field])
        return DiscountCode(**item)


# Global database client instance
_db_client: Optional[SupabaseClient] = None


def get_db_client() -> SupabaseClient:
    """Get or create database client instance."""
    global _db_client
    if _db_client is None:
        _db_client = SupabaseClient()
    return _db_client
