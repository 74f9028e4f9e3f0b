"""Background jobs of the booking engine."""

from .expiry import release_stale_reservations, setup_scheduler, shutdown_scheduler

__all__ = ["release_stale_reservations", "setup_scheduler", "shutdown_scheduler"]
