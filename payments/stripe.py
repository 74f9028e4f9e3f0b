"""
Stripe Checkout integration for session payments.
"""

import asyncio
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import stripe

from config import settings
from utils.exceptions import PaymentError
from utils.logging_config import log_context, setup_logging
from utils.validation import to_money

logger = setup_logging(
    name=__name__,
    log_level="INFO",
    log_file="payments.log",
    log_dir="logs"
)

# Initialize Stripe
stripe.api_key = settings.stripe_secret_key

# Retry configuration
_MAX_RETRIES = 3
_RETRY_DELAY = 1.0  # seconds
_RETRY_BACKOFF = 2.0  # exponential backoff multiplier

# Stripe accepts expires_at between 30 minutes and 24 hours after creation
MIN_SESSION_LIFETIME = timedelta(minutes=31)
MAX_SESSION_LIFETIME = timedelta(hours=24)

CONFIRM_EVENTS = {
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
}
RELEASE_EVENTS = {
    "checkout.session.expired",
    "checkout.session.async_payment_failed",
}


def to_minor_units(amount: Decimal) -> int:
    """Convert a money amount to cents as Stripe expects."""
    return int((to_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def checkout_expiry(deadline: datetime, now: datetime) -> datetime:
    """Clamp a payment deadline to the session lifetimes Stripe accepts."""
    return min(max(deadline, now + MIN_SESSION_LIFETIME), now + MAX_SESSION_LIFETIME)


async def create_checkout_session(
    appointment_id: str,
    amount: Decimal,
    coach_name: str,
    session_date: datetime,
    return_url: str,
    currency: Optional[str] = None,
    expires_at: Optional[datetime] = None,
) -> stripe.checkout.Session:
    """
    Create a Stripe Checkout Session for an appointment.

    Uses a worker thread to avoid blocking the event loop.
    Includes retry logic for transient failures.

    Args:
        appointment_id: Appointment ID, stored in metadata
        amount: Final price of the session
        coach_name: Shown on the Stripe payment page
        session_date: Session start, shown on the payment page
        return_url: Page the client returns to after paying or cancelling
        currency: Currency code (defaults to the configured currency)
        expires_at: When the session stops accepting payment (Stripe default: 24h)

    Returns:
        Stripe Checkout Session

    Raises:
        ValueError: If input validation fails
        PaymentError: If the Stripe API call fails after retries
    """
    unit_amount = to_minor_units(amount)
    if unit_amount <= 0:
        raise ValueError(f"Invalid amount: {amount} must be positive")

    if not appointment_id:
        raise ValueError("Appointment ID is required")

    optional = {"expires_at": int(expires_at.timestamp())} if expires_at else {}
    delay = _RETRY_DELAY

    for attempt in range(_MAX_RETRIES):
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create,
                mode="payment",
                line_items=[
                    {
                        "price_data": {
                            "currency": currency or settings.currency,
                            "product_data": {
                                "name": f"Session with {coach_name}",
                                "description": (
                                    f"Booked for {session_date.strftime('%Y-%m-%d %H:%M')} UTC"
                                ),
                            },
                            "unit_amount": unit_amount,
                        },
                        "quantity": 1,
                    }
                ],
                success_url=f"{return_url}?success=true&session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{return_url}?canceled=true&appt={appointment_id}",
                client_reference_id=appointment_id,
                metadata={"appointment_id": appointment_id},
                **optional,
            )

            logger.info(
                f"Created checkout session: {log_context(session_id=session.id, appointment_id=appointment_id)}"
            )
            return session

        except stripe.StripeError as e:
            # Don't retry on client errors (4xx), only on server errors (5xx) or network issues
            if e.http_status and 400 <= e.http_status < 500:
                logger.error(
                    f"Stripe client error creating checkout for appointment {appointment_id}: {e}",
                    exc_info=True
                )
                raise PaymentError(f"Payment processing error: {e}") from e

            if attempt < _MAX_RETRIES - 1:
                logger.warning(
                    f"Stripe error (attempt {attempt + 1}/{_MAX_RETRIES}) for appointment {appointment_id}: {e}. Retrying in {delay}s..."
                )
                await asyncio.sleep(delay)
                delay *= _RETRY_BACKOFF
            else:
                logger.error(
                    f"Stripe error creating checkout for appointment {appointment_id} after {_MAX_RETRIES} attempts: {e}",
                    exc_info=True
                )
                raise PaymentError(f"Payment processing error after {_MAX_RETRIES} attempts: {e}") from e

    raise PaymentError("Failed to create checkout session")


async def get_checkout_session(session_id: str) -> Optional[stripe.checkout.Session]:
    """
    Get a Checkout Session by ID.

    Args:
        session_id: Stripe Checkout Session ID

    Returns:
        Checkout Session or None if not found or unreachable

    Raises:
        ValueError: If session_id is empty
    """
    if not session_id:
        raise ValueError("Checkout session ID is required")

    delay = _RETRY_DELAY

    for attempt in range(_MAX_RETRIES):
        try:
            return await asyncio.to_thread(stripe.checkout.Session.retrieve, session_id)
        except stripe.StripeError as e:
            # Don't retry on 404 (not found) or client errors
            if e.http_status and 400 <= e.http_status < 500:
                logger.debug(f"Checkout session {session_id} not found or client error: {e}")
                return None

            if attempt < _MAX_RETRIES - 1:
                logger.warning(
                    f"Stripe error (attempt {attempt + 1}/{_MAX_RETRIES}) retrieving checkout session {session_id}: {e}. Retrying in {delay}s..."
                )
                await asyncio.sleep(delay)
                delay *= _RETRY_BACKOFF
            else:
                logger.error(
                    f"Stripe error retrieving checkout session {session_id} after {_MAX_RETRIES} attempts: {e}",
                    exc_info=True
                )
                return None

    return None


async def expire_checkout_session(session_id: str) -> Optional[str]:
    """
    Close an open Checkout Session so it can no longer be paid.

    Args:
        session_id: Stripe Checkout Session ID

    Returns:
        Session status afterwards: "expired", or "complete" when the client
        paid before the session was closed. None if Stripe does not know it.

    Raises:
        ValueError: If session_id is empty
        PaymentError: If Stripe stays unreachable after retries
    """
    if not session_id:
        raise ValueError("Checkout session ID is required")

    delay = _RETRY_DELAY

    for attempt in range(_MAX_RETRIES):
        try:
            session = await asyncio.to_thread(stripe.checkout.Session.expire, session_id)
            logger.info(f"Expired checkout session: {log_context(session_id=session_id)}")
            return session.status
        except stripe.StripeError as e:
            # Only open sessions can be expired; report what the session is now
            if e.http_status and 400 <= e.http_status < 500:
                session = await get_checkout_session(session_id)
                return session.status if session is not None else None

            if attempt < _MAX_RETRIES - 1:
                logger.warning(
                    f"Stripe error (attempt {attempt + 1}/{_MAX_RETRIES}) expiring checkout session {session_id}: {e}. Retrying in {delay}s..."
                )
                await asyncio.sleep(delay)
                delay *= _RETRY_BACKOFF
            else:
                logger.error(
                    f"Stripe error expiring checkout session {session_id} after {_MAX_RETRIES} attempts: {e}",
                    exc_info=True
                )
                raise PaymentError(f"Could not expire checkout session after {_MAX_RETRIES} attempts: {e}") from e

    raise PaymentError("Failed to expire checkout session")


def appointment_id_from_session(session: dict) -> Optional[str]:
    metadata = session.get("metadata") or {}
    return metadata.get("appointment_id") or session.get("client_reference_id")


async def handle_webhook(event_data: dict) -> dict:
    """
    Handle Stripe webhook events.

    Completed payments confirm the appointment; expired or failed checkouts
    release the reservation right away instead of waiting for the lease sweep,
    unless the client has since moved on to a newer Checkout Session.

    Args:
        event_data: Stripe webhook event data

    Returns:
        Response dict
    """
    event_type = event_data.get("type")
    session = event_data.get("data", {}).get("object")

    if not session:
        return {"status": "error", "message": "Invalid webhook data"}

    if event_type not in CONFIRM_EVENTS and event_type not in RELEASE_EVENTS:
        return {"status": "processed", "event_type": event_type}

    appointment_id = appointment_id_from_session(session)
    if not appointment_id:
        logger.warning("Webhook received without appointment_id")
        return {"status": "ignored", "message": "No appointment_id in metadata"}

    from scheduling import get_booking_actions

    actions = get_booking_actions()

    if event_type in CONFIRM_EVENTS:
        # Delayed payment methods complete the session before the money arrives
        if session.get("payment_status") not in ("paid", "no_payment_required"):
            logger.info(f"Checkout completed, payment pending: {log_context(appointment_id=appointment_id)}")
            return {"status": "pending", "appointment_id": appointment_id}

        result = await actions.confirm_payment(appointment_id)
        if getattr(result.data, "refund_due", False):
            logger.warning(f"Payment arrived after release: {log_context(appointment_id=appointment_id)}")
            return {"status": "refund_due", "appointment_id": appointment_id}

        logger.info(f"Payment confirmed for appointment {appointment_id}")
        return {"status": "success", "appointment_id": appointment_id}

    result = await actions.expire_reservation(appointment_id, session.get("id"))
    if not result.success:
        logger.warning(
            f"Could not release reservation: {log_context(appointment_id=appointment_id, error=result.error)}"
        )
        return {"status": "failed", "appointment_id": appointment_id}

    if result.data is None:
        logger.info(f"Nothing to release after {event_type}: {log_context(appointment_id=appointment_id)}")
        return {"status": "skipped", "appointment_id": appointment_id}

    logger.info(f"Reservation released after {event_type}: {log_context(appointment_id=appointment_id)}")
    return {"status": "released", "appointment_id": appointment_id}
