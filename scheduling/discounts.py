"""
Discount code evaluation.

Rules are checked in order and the first failing rule decides the error:

1. the code exists (trimmed, case-insensitive) and is active;
2. the code has not expired;
3. first-session codes are refused to actors with any earlier appointment;
4. a code is refused to an actor who already booked with it.

Usage is derived by scanning appointments rather than by a counter, so there
is a single source of truth at the cost of a count query per validation.
"""

from decimal import Decimal
from typing import Callable, Optional

from config import Settings, settings as default_settings
from db import get_db_client
from models.actor import Actor
from models.discount import DiscountCode, DiscountCodeCreate
from scheduling.permissions import require_admin
from utils.constants import (
    DISCOUNT_ALREADY_USED_MESSAGE,
    DISCOUNT_EXPIRED_MESSAGE,
    DISCOUNT_FIRST_SESSION_MESSAGE,
    DISCOUNT_INVALID_MESSAGE,
    GUEST_ACTOR,
)
from utils.datetime_utils import ensure_aware, utc_now
from utils.exceptions import DiscountRejectedError, DuplicateRecordError, ValidationError
from utils.logging_config import log_context, setup_logging
from utils.validation import normalize_discount_code

logger = setup_logging(name=__name__, log_level="INFO", log_file="booking.log", log_dir="logs")

_HUNDRED = Decimal("100")


def apply_discount(price: Decimal, percentage: int) -> Decimal:
    """
    Apply a percentage discount without rounding.

    Callers round with ``to_money`` when persisting or displaying, so repeated
    recalculation never compounds rounding error.
    """
    return Decimal(price) * (Decimal(1) - Decimal(percentage) / _HUNDRED)


class DiscountEvaluator:
    """Stateless rule engine answering whether a code is usable for a booking."""

    def __init__(
        self,
        db=None,
        app_settings: Optional[Settings] = None,
        clock: Callable = utc_now,
    ):
        self.db = db or get_db_client()
        self.settings = app_settings or default_settings
        self.clock = clock

    def is_first_session_code(self, discount: DiscountCode) -> bool:
        reserved = normalize_discount_code(self.settings.first_session_code)
        return discount.is_first_session_only or (bool(reserved) and discount.code == reserved)

    async def validate(
        self,
        code: str,
        actor_id: str = GUEST_ACTOR,
        email: Optional[str] = None,
    ) -> DiscountCode:
        """
        Check whether a code is usable by an actor.

        Args:
            code: Code as typed by the user
            actor_id: Authenticated actor id, or "guest"
            email: Contact email used to identify guests

        Returns:
            The usable discount code

        Raises:
            DiscountRejectedError: With the reason of the first failing rule
        """
        normalized = normalize_discount_code(code)
        discount = await self.db.get_discount_code(normalized) if normalized else None
        if discount is None or not discount.active:
            raise DiscountRejectedError(DISCOUNT_INVALID_MESSAGE)

        if discount.expires_at and ensure_aware(discount.expires_at) < self.clock():
            raise DiscountRejectedError(DISCOUNT_EXPIRED_MESSAGE)

        target_id = await self._resolve_target(actor_id, email)

        if target_id and self.is_first_session_code(discount):
            if await self.db.count_appointments(target_id) > 0:
                raise DiscountRejectedError(DISCOUNT_FIRST_SESSION_MESSAGE)

        if target_id:
            used = await self.db.count_appointments(target_id, discount_code_id=discount.id)
            if used > 0:
                raise DiscountRejectedError(DISCOUNT_ALREADY_USED_MESSAGE)

        logger.debug(
            f"Discount accepted: {log_context(code=discount.code, actor_id=target_id)}"
        )
        return discount

    async def _resolve_target(self, actor_id: str, email: Optional[str]) -> Optional[str]:
        if actor_id and actor_id != GUEST_ACTOR:
            return actor_id
        if email:
            actor = await self.db.get_actor_by_email(email)
            if actor is not None:
                return actor.id
        return None

    async def create_code(self, actor: Optional[Actor], data: DiscountCodeCreate) -> DiscountCode:
        """Create a new discount code (admins only)."""
        require_admin(actor)
        try:
            discount = await self.db.create_discount_code(data)
        except DuplicateRecordError as e:
            raise ValidationError("A discount code with this value already exists.") from e
        logger.info(f"Discount code created: {log_context(code=discount.code)}")
        return discount
