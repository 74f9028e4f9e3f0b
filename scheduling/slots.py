"""
Slot registry: a coach's bookable time inventory.

Booked slots are owned by their appointment and are never deleted or edited
here. Every delete is issued as a conditional write on ``is_booked = false``
so a slot that gets booked between our read and our write survives.
"""

from datetime import datetime
from typing import Callable, Iterable, List, Optional

from config import Settings, settings as default_settings
from db import UnitOfWork, get_db_client
from models.actor import Actor
from models.slot import AvailabilitySlot, DesiredSlot, ReconciliationPlan, SlotCreate
from scheduling.coaches import CoachDirectory
from scheduling.permissions import require_coach_owner
from utils.constants import SLOT_NOT_OWNED_MESSAGE, SLOTS_TABLE
from utils.datetime_utils import default_window, utc_now
from utils.exceptions import (
    ConflictingWriteError,
    SlotNotFoundError,
    StateConflictError,
    ValidationError,
)
from utils.logging_config import log_context, setup_logging
from utils.validation import is_placeholder_id

logger = setup_logging(name=__name__, log_level="INFO", log_file="booking.log", log_dir="logs")


def plan_reconciliation(
    coach_id: str,
    current_unbooked: Iterable[AvailabilitySlot],
    desired: Iterable[DesiredSlot],
) -> ReconciliationPlan:
    """
    Compute the writes that turn the stored unbooked slots into the desired set.

    Desired entries with a persisted id are kept as they are. Entries with a
    placeholder id are inserted. Stored unbooked slots missing from the
    desired set are deleted. Booked slots are not part of the input, so they
    can never end up in the plan.
    """
    kept_ids: List[str] = []
    to_insert: List[SlotCreate] = []

    for entry in desired:
        if is_placeholder_id(entry.id):
            to_insert.append(
                SlotCreate(
                    coach_id=coach_id,
                    start_time=entry.start_time,
                    end_time=entry.end_time,
                )
            )
        else:
            kept_ids.append(entry.id)

    kept = set(kept_ids)
    to_delete = [slot.id for slot in current_unbooked if slot.id not in kept]

    return ReconciliationPlan(kept_ids=kept_ids, to_delete=to_delete, to_insert=to_insert)


class SlotRegistry:
    """Create, delete, list and bulk-reconcile availability slots."""

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

    async def create(
        self,
        actor: Optional[Actor],
        coach_id: str,
        start_time: datetime,
        end_time: datetime,
    ) -> AvailabilitySlot:
        """
        Publish a new unbooked slot.

        Raises:
            AuthorizationError: If the actor does not manage the coach
            ValidationError: If the interval is empty or reversed
        """
        coach = await self.coaches.require_coach(coach_id)
        require_coach_owner(actor, coach)

        if end_time <= start_time:
            raise ValidationError("The slot must end after it starts.")

        slot = await self.db.create_slot(
            SlotCreate(coach_id=coach.id, start_time=start_time, end_time=end_time)
        )
        logger.info(
            f"Slot created: {log_context(slot_id=slot.id, coach_id=coach.id, start=slot.start_time)}"
        )
        return slot

    async def delete(self, actor: Optional[Actor], slot_id: str) -> None:
        """
        Remove an unbooked slot.

        Raises:
            SlotNotFoundError: If the slot does not exist
            AuthorizationError: If the slot belongs to another coach
            StateConflictError: If the slot is (or just became) booked
        """
        slot = await self.db.get_slot_by_id(slot_id)
        if slot is None:
            raise SlotNotFoundError("This slot does not exist.")

        coach = await self.coaches.require_coach(slot.coach_id)
        require_coach_owner(actor, coach, message=SLOT_NOT_OWNED_MESSAGE)

        if slot.is_booked:
            raise StateConflictError("Booked slots cannot be deleted.")

        unit = UnitOfWork("delete_slot")
        unit.delete(
            SLOTS_TABLE,
            match={"id": slot.id, "coach_id": coach.id, "is_booked": False},
            label="delete_slot",
            expect_rows=1,
        )
        try:
            await self.db.commit(unit)
        except ConflictingWriteError as e:
            raise StateConflictError("Booked slots cannot be deleted.") from e

        logger.info(f"Slot deleted: {log_context(slot_id=slot.id, coach_id=coach.id)}")

    async def list_available(
        self,
        coach_id: str,
        range_start: Optional[datetime] = None,
        range_end: Optional[datetime] = None,
    ) -> List[AvailabilitySlot]:
        """
        List unbooked slots of a coach inside a window, earliest first.

        The window defaults to now through now plus ``slot_window_days``.
        """
        start, end = default_window(
            range_start, range_end, self.settings.slot_window_days, now=self.clock()
        )
        return await self.db.get_slots(
            coach_id, is_booked=False, start_from=start, end_before=end
        )

    async def reconcile(
        self,
        actor: Optional[Actor],
        coach_id: str,
        desired_slots: Iterable[DesiredSlot],
    ) -> ReconciliationPlan:
        """
        Replace the unbooked inventory of a coach with a submitted schedule.

        Args:
            actor: Current actor
            coach_id: Coach profile ID
            desired_slots: Full desired set of unbooked slots

        Returns:
            The plan that was applied

        Raises:
            AuthorizationError: If the actor does not manage the coach
            DatabaseError: If the datastore rejected the writes (nothing applied)
        """
        coach = await self.coaches.require_coach(coach_id)
        require_coach_owner(actor, coach)

        current = await self.db.get_slots(coach.id, is_booked=False)
        plan = plan_reconciliation(coach.id, current, desired_slots)

        if plan.is_noop:
            logger.debug(f"Reconcile no-op: {log_context(coach_id=coach.id)}")
            return plan

        unit = UnitOfWork("reconcile_slots")
        for slot_id in plan.to_delete:
            # Unconditional on row count: a slot booked meanwhile just stays
            unit.delete(
                SLOTS_TABLE,
                match={"id": slot_id, "coach_id": coach.id, "is_booked": False},
                label=f"delete_slot:{slot_id}",
            )
        for slot in plan.to_insert:
            unit.insert(SLOTS_TABLE, slot.model_dump(), label="insert_slot")

        await self.db.commit(unit)

        logger.info(
            f"Schedule reconciled: "
            f"{log_context(coach_id=coach.id, kept=len(plan.kept_ids), deleted=len(plan.to_delete), inserted=len(plan.to_insert))}"
        )
        return plan
