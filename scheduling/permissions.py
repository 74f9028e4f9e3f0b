"""Authorization checks shared by the scheduling components."""

from typing import Optional

from models.actor import Actor
from models.coach import CoachProfile
from utils.constants import SIGN_IN_REQUIRED_MESSAGE
from utils.exceptions import AuthorizationError


def require_actor(actor: Optional[Actor]) -> Actor:
    """Return the actor or fail when the caller is anonymous."""
    if actor is None:
        raise AuthorizationError(SIGN_IN_REQUIRED_MESSAGE)
    return actor


def owns_coach_profile(actor: Optional[Actor], coach: CoachProfile) -> bool:
    return actor is not None and coach.user_id == actor.id


def require_coach_owner(
    actor: Optional[Actor],
    coach: CoachProfile,
    allow_admin: bool = True,
    message: str = "You do not manage this coach profile.",
) -> Actor:
    """
    Ensure the actor owns the coach profile.

    Args:
        actor: Current actor
        coach: Profile being acted on
        allow_admin: Whether admins pass the check
        message: Error message on failure

    Raises:
        AuthorizationError: If the actor is neither the owner nor an allowed admin
    """
    actor = require_actor(actor)
    if owns_coach_profile(actor, coach):
        return actor
    if allow_admin and actor.is_admin:
        return actor
    raise AuthorizationError(message)


def require_admin(actor: Optional[Actor]) -> Actor:
    actor = require_actor(actor)
    if not actor.is_admin:
        raise AuthorizationError("This action is restricted to administrators.")
    return actor
