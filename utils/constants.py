"""
Application-wide constants.
Centralizes user-facing messages and fixed values.
"""

# Table names
USERS_TABLE = "users"
COACHES_TABLE = "coaches"
SLOTS_TABLE = "availability_slots"
APPOINTMENTS_TABLE = "appointments"
DISCOUNT_CODES_TABLE = "discount_codes"
WITHDRAWALS_TABLE = "withdrawals"

# Placeholder prefix for slots created client-side before saving
PLACEHOLDER_SLOT_PREFIX = "temp-"

# Guest marker for discount validation
GUEST_ACTOR = "guest"

# Refund policy
PRIORITY_REFUND_PERCENTAGE = 100
STANDARD_REFUND_PERCENTAGE = 50
COACH_CANCELLATION_NOTE = "[CANCELLED BY COACH - PENALTY APPLIED]"

# Validation limits
MAX_NOTES_LENGTH = 5000
MAX_DISPLAY_NAME_LENGTH = 120
APPOINTMENT_ID_DISPLAY_LENGTH = 8

# User-facing messages
GENERIC_FAILURE_MESSAGE = "Something went wrong. Please try again later."
PAYMENT_RETRY_MESSAGE = "We could not start the payment. Please try again."
PAID_AFTER_RELEASE_MESSAGE = "Payment received after the reservation expired. It will be refunded."
SLOT_NOT_OWNED_MESSAGE = "This slot no longer belongs to you."
SLOT_TAKEN_MESSAGE = "This slot is no longer available."
DISCOUNT_INVALID_MESSAGE = "Invalid or inactive code."
DISCOUNT_EXPIRED_MESSAGE = "This code has expired."
DISCOUNT_FIRST_SESSION_MESSAGE = "This code is valid only for your first session."
DISCOUNT_ALREADY_USED_MESSAGE = "You have already used this code."
INSUFFICIENT_BALANCE_MESSAGE = "Insufficient balance (minimum {minimum})."
PRIORITY_CANCELLATION_MESSAGE = "Appointment cancelled. A full refund will be issued."
STANDARD_CANCELLATION_MESSAGE = (
    "Appointment cancelled. Under our cancellation policy 50% of the session "
    "price will be refunded."
)
COACH_CANCELLATION_MESSAGE = (
    "Appointment cancelled. A full refund has been issued to the client."
)
CONCURRENT_UPDATE_MESSAGE = (
    "This record changed while we were processing your request. Please try again."
)
SIGN_IN_REQUIRED_MESSAGE = "Please sign in to continue."
