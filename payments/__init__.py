"""Payment processing with Stripe."""

from .stripe import (
    create_checkout_session,
    expire_checkout_session,
    get_checkout_session,
    handle_webhook,
)

__all__ = [
    "create_checkout_session",
    "expire_checkout_session",
    "get_checkout_session",
    "handle_webhook",
]
