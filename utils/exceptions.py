"""
Custom exception classes for the booking engine.
Each error carries the category the action layer reports to callers.
"""

from models.result import ErrorKind


class BookingEngineError(Exception):
    """Base exception for booking engine operations."""

    kind: ErrorKind = ErrorKind.COLLABORATOR


class AuthorizationError(BookingEngineError):
    """Raised when an actor lacks the role or ownership an operation needs."""

    kind = ErrorKind.AUTHORIZATION


class StateConflictError(BookingEngineError):
    """Raised when a slot or appointment is in an incompatible state."""

    kind = ErrorKind.CONFLICT


class SlotNotAvailableError(StateConflictError):
    """Raised when attempting to reserve an already booked slot."""

    pass


class InvalidTransitionError(StateConflictError):
    """Raised when an appointment transition is not allowed from its status."""

    pass


class ValidationError(BookingEngineError):
    """Raised when input validation fails."""

    kind = ErrorKind.VALIDATION


class DiscountRejectedError(ValidationError):
    """Raised when a discount code cannot be used for a booking."""

    pass


class NotFoundError(BookingEngineError):
    """Raised when a referenced record does not exist."""

    kind = ErrorKind.NOT_FOUND


class SlotNotFoundError(NotFoundError):
    """Raised when a slot is not found."""

    pass


class AppointmentNotFoundError(NotFoundError):
    """Raised when an appointment is not found."""

    pass


class CoachNotFoundError(NotFoundError):
    """Raised when a coach profile is not found."""

    pass


class CollaboratorError(BookingEngineError):
    """Base exception for failures of external collaborators."""

    kind = ErrorKind.COLLABORATOR


class DatabaseError(CollaboratorError):
    """Raised when a datastore call fails."""

    pass


class PaymentError(CollaboratorError):
    """Raised when a payment gateway call fails."""

    pass


class WebhookVerificationError(Exception):
    """Raised when webhook signature verification fails."""

    pass


class WebhookPayloadError(Exception):
    """Raised when a webhook payload is malformed."""

    pass


class ConflictingWriteError(StateConflictError):
    """Raised when a conditional operation of a unit of work matched the wrong rows."""

    def __init__(self, label: str):
        super().__init__(f"Conditional write '{label}' did not apply")
        self.label = label


class DuplicateRecordError(DatabaseError):
    """Raised when an insert violates a unique constraint."""

    pass
