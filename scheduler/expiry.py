"""
Lease sweep for unpaid reservations using APScheduler.

A reservation holds its slot while the client pays. Appointments still in
pending_payment after the lease are cancelled and their slot is released.

Supports Redis backend for horizontal scaling (multiple engine instances).
"""

from datetime import timedelta
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

# Redis jobstore is optional - only import if Redis is configured
try:
    from apscheduler.jobstores.redis import RedisJobStore

    REDIS_AVAILABLE = True
except ImportError:
    REDIS_AVAILABLE = False
    RedisJobStore = None

from config import Settings, settings
from utils.datetime_utils import ensure_aware
from utils.exceptions import BookingEngineError, DatabaseError
from utils.logging_config import log_context, setup_logging

logger = setup_logging(
    name=__name__, log_level="INFO", log_file="scheduler.log", log_dir="logs"
)

SWEEP_JOB_ID = "release_stale_reservations"


def _redis_jobstores(redis_url: str) -> Dict[str, Any]:
    """Job stores backed by Redis so several engine instances share one sweep."""
    parsed = urlparse(redis_url)
    db = parsed.path.lstrip("/")
    store = RedisJobStore(
        host=parsed.hostname or "localhost",
        port=parsed.port or 6379,
        db=int(db) if db else 0,
        password=parsed.password or None,
    )
    return {"default": store}


def _create_scheduler(app_settings: Optional[Settings] = None) -> AsyncIOScheduler:
    """
    Create the sweep scheduler.

    Uses Redis job stores when a Redis URL is configured and the redis
    extra is installed, in-memory job stores otherwise.
    """
    redis_url = (app_settings or settings).redis_url
    if not redis_url:
        logger.info("Scheduler using in-memory backend (single instance mode)")
        return AsyncIOScheduler()

    if not REDIS_AVAILABLE:
        logger.warning(
            "Redis URL configured but RedisJobStore not available. Install the redis extra."
        )
        return AsyncIOScheduler()

    try:
        jobstores = _redis_jobstores(redis_url)
    except Exception as e:
        logger.warning(f"Failed to initialize Redis scheduler: {e}. Using in-memory scheduler.")
        return AsyncIOScheduler()

    logger.info(f"Scheduler using Redis backend: {log_context(host=urlparse(redis_url).hostname)}")
    return AsyncIOScheduler(jobstores=jobstores)


scheduler = _create_scheduler()


async def release_stale_reservations(
    actions=None, app_settings: Optional[Settings] = None, batch_size: int = 100
) -> int:
    """
    Expire pending-payment appointments older than the lease.

    Reservations whose Checkout Session is still open are left for a later
    run; the session can outlive the lease when it was started late.

    Args:
        actions: Booking actions facade (defaults to the global instance)
        app_settings: Settings providing the lease length
        batch_size: Maximum appointments handled per run

    Returns:
        Number of reservations released
    """
    app_settings = app_settings or settings
    if actions is None:
        from scheduling import get_booking_actions

        actions = get_booking_actions()

    lease = timedelta(minutes=app_settings.pending_payment_lease_minutes)
    now = actions.appointments.clock()
    cutoff = now - lease

    try:
        stale = await actions.db.get_stale_pending_appointments(cutoff, limit=batch_size)
    except DatabaseError as e:
        logger.error(f"Database error loading stale reservations: {e}", exc_info=True)
        return 0

    if not stale:
        logger.debug("No stale reservations at this time")
        return 0

    logger.info(f"Processing {len(stale)} stale reservations")

    released = 0
    failed = 0
    for appointment in stale:
        if appointment.checkout_expires_at and ensure_aware(appointment.checkout_expires_at) > now:
            logger.debug(f"Checkout still open: {log_context(appointment_id=appointment.id)}")
            continue
        try:
            if await actions.appointments.expire(appointment.id) is not None:
                released += 1
        except BookingEngineError as e:
            failed += 1
            logger.warning(
                f"Could not release reservation: {log_context(appointment_id=appointment.id, error=e)}"
            )

    logger.info(f"Lease sweep complete: {released} released, {failed} failed")
    return released


def setup_scheduler() -> None:
    """Setup and start the scheduler."""
    scheduler.add_job(
        release_stale_reservations,
        trigger=IntervalTrigger(minutes=settings.expiry_sweep_interval_minutes),
        id=SWEEP_JOB_ID,
        name="Release unpaid reservations after the payment lease",
        replace_existing=True,
    )

    scheduler.start()
    logger.info("Scheduler started")


def shutdown_scheduler():
    """Shutdown the scheduler."""
    scheduler.shutdown()
    logger.info("Scheduler stopped")
