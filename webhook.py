"""
Stripe webhook service of the booking engine.

POST /webhook/stripe confirms paid appointments and releases abandoned
reservations; GET /health reports event counters. Started as a script, the
service also runs the reservation lease sweep.
"""

import json
import time
from collections import Counter, OrderedDict, deque
from typing import Any, Dict, Optional

import stripe
from aiohttp import web
from aiohttp.web import Request, Response

from config import settings
from payments import handle_webhook
from scheduler import setup_scheduler, shutdown_scheduler
from utils.exceptions import WebhookPayloadError, WebhookVerificationError
from utils.logging_config import log_context, setup_logging

logger = setup_logging(
    name=__name__, log_level="INFO", log_file="webhook.log", log_dir="logs"
)

MAX_REQUEST_BODY_SIZE = 1024 * 1024  # 1MB
EVENT_ID_TTL_SECONDS = 86400
EVENT_ID_CACHE_SIZE = 10000
RECENT_EVENT_HISTORY = 1000
MAX_TRACKED_EVENT_TYPES = 50

REQUIRED_EVENT_FIELDS = (("id", str), ("type", str), ("data", dict))


class EventLedger:
    """
    Idempotency record of Stripe event ids.

    An id is claimed before its event is processed and released again when
    processing fails, so the redelivery Stripe sends afterwards is handled.
    Claims expire after ``ttl`` seconds; beyond ``max_size`` the oldest go.
    """

    def __init__(
        self,
        ttl: float = EVENT_ID_TTL_SECONDS,
        max_size: int = EVENT_ID_CACHE_SIZE,
        clock=time.monotonic,
    ):
        self.ttl = ttl
        self.max_size = max_size
        self.clock = clock
        self._claimed: "OrderedDict[str, float]" = OrderedDict()
        self.recent: deque = deque(maxlen=RECENT_EVENT_HISTORY)

    def __len__(self) -> int:
        return len(self._claimed)

    def purge(self) -> int:
        """Drop expired claims; returns how many were dropped."""
        cutoff = self.clock() - self.ttl
        dropped = 0
        while self._claimed:
            oldest = next(iter(self._claimed.values()))
            if oldest >= cutoff:
                break
            self._claimed.popitem(last=False)
            dropped += 1
        if dropped:
            logger.debug(f"Dropped {dropped} expired webhook event ids")
        return dropped

    def claim(self, event_id: str) -> bool:
        """Claim an event id; False when it was already claimed."""
        self.purge()
        if event_id in self._claimed:
            return False
        self._claimed[event_id] = self.clock()
        if len(self._claimed) > self.max_size:
            self._claimed.popitem(last=False)
        return True

    def release(self, event_id: str) -> None:
        self._claimed.pop(event_id, None)

    def record(self, event_id: str, event_type: str) -> None:
        self.recent.append({"id": event_id, "type": event_type, "timestamp": time.time()})


_ledger = EventLedger()
_metrics: Counter = Counter()
_event_types: Counter = Counter()
_started_at = time.time()


def verify_event(payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """
    Verify the Stripe signature of a webhook body and parse it.

    Without a configured webhook secret, unsigned events are accepted only
    while running on Stripe test keys.

    Raises:
        WebhookVerificationError: If the signature is missing or wrong
        WebhookPayloadError: If the body is not JSON
    """
    secret = settings.stripe_webhook_secret
    if not secret:
        if not settings.stripe_secret_key.startswith("sk_test_"):
            raise WebhookVerificationError(
                "Stripe webhook secret is required outside test mode"
            )
        logger.warning(
            "STRIPE_WEBHOOK_SECRET not set - accepting unsigned webhook (test mode only)"
        )
    else:
        if not signature:
            raise WebhookVerificationError("Missing Stripe-Signature header")
        try:
            stripe.WebhookSignature.verify_header(payload.decode("utf-8"), signature, secret)
        except stripe.SignatureVerificationError as e:
            raise WebhookVerificationError(f"Invalid signature: {e}") from e

    try:
        return json.loads(payload)
    except ValueError as e:
        raise WebhookPayloadError(f"Invalid JSON payload: {e}") from e


def validate_event(event: Any) -> None:
    """
    Check the envelope fields the handler relies on.

    Raises:
        WebhookPayloadError: If a field is missing, empty or of the wrong type
    """
    if not isinstance(event, dict):
        raise WebhookPayloadError("Webhook payload must be a JSON object")

    for field, expected in REQUIRED_EVENT_FIELDS:
        value = event.get(field)
        if value is None:
            raise WebhookPayloadError(f"Webhook payload missing '{field}' field")
        if not isinstance(value, expected) or (expected is str and not value):
            raise WebhookPayloadError(
                f"Webhook '{field}' must be a non-empty {expected.__name__}"
            )


def _error_response(status: int, error: str, message: str) -> Response:
    return web.json_response(
        {"status": "error", "error": error, "message": message}, status=status
    )


def _too_large(size: int) -> Response:
    logger.warning(f"Request body too large: {size} bytes")
    _metrics["validation_failures"] += 1
    return _error_response(
        413,
        "request_too_large",
        f"Request body exceeds maximum size of {MAX_REQUEST_BODY_SIZE} bytes",
    )


def _count_event_type(event_type: str) -> None:
    if event_type in _event_types or len(_event_types) < MAX_TRACKED_EVENT_TYPES:
        _event_types[event_type] += 1


@web.middleware
async def security_headers_middleware(request: Request, handler):
    """Add security headers to every response."""
    response = await handler(request)

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    if request.path.startswith("/webhook/"):
        response.headers["Allow"] = "POST"

    return response


async def stripe_webhook_handler(request: Request) -> Response:
    """
    Receive a Stripe event.

    Responds 401 to unverifiable events, 400 to malformed ones and 200 to
    duplicates without processing them again. A processing failure responds
    500 and releases the event id so Stripe's retry is processed.
    """
    declared = request.content_length
    if declared is not None and declared > MAX_REQUEST_BODY_SIZE:
        return _too_large(declared)

    raw_body = await request.read()
    if len(raw_body) > MAX_REQUEST_BODY_SIZE:
        return _too_large(len(raw_body))
    if not raw_body:
        logger.warning("Received empty webhook payload")
        _metrics["validation_failures"] += 1
        return _error_response(400, "empty_payload", "Empty payload")

    try:
        event = verify_event(raw_body, request.headers.get("Stripe-Signature"))
        validate_event(event)
    except WebhookVerificationError as e:
        logger.warning(f"Webhook verification failed: {e}")
        _metrics["verification_failures"] += 1
        return _error_response(401, "verification_failed", "Invalid webhook signature")
    except WebhookPayloadError as e:
        logger.warning(f"Invalid webhook payload: {e}")
        _metrics["validation_failures"] += 1
        return _error_response(400, "validation_failed", str(e))

    event_id = event["id"]
    event_type = event["type"]
    logger.info(f"Received Stripe webhook: {log_context(event_id=event_id, type=event_type)}")

    if not _ledger.claim(event_id):
        _metrics["duplicate_events"] += 1
        logger.info(f"Duplicate webhook event skipped: {log_context(event_id=event_id)}")
        return web.json_response(
            {
                "status": "success",
                "message": "Event already processed",
                "event_id": event_id,
                "event_type": event_type,
            }
        )

    _metrics["total_events"] += 1
    try:
        result = await handle_webhook(event)
    except Exception as e:
        _ledger.release(event_id)
        _metrics["failed_events"] += 1
        logger.error(
            f"Webhook processing failed: {log_context(event_id=event_id, type=event_type, error=e)}",
            exc_info=True,
        )
        return _error_response(
            500, "processing_failed", "Internal server error while processing webhook"
        )

    _ledger.record(event_id, event_type)
    _metrics["successful_events"] += 1
    _count_event_type(event_type)
    logger.info(f"Processed webhook: {log_context(event_id=event_id, result=result.get('status'))}")

    return web.json_response(
        {
            "status": "success",
            "event_id": event_id,
            "event_type": event_type,
            "result": result,
        }
    )


async def health_check(request: Request) -> Response:
    """Service status with event counters."""
    _ledger.purge()

    total = _metrics["total_events"]
    success_rate = _metrics["successful_events"] / total * 100 if total else 0.0
    recent_types = Counter(event["type"] for event in _ledger.recent)

    return web.json_response(
        {
            "status": "ok",
            "service": "coaching-booking-engine",
            "timestamp": time.time(),
            "uptime_hours": round((time.time() - _started_at) / 3600, 2),
            "metrics": {
                "total_events": total,
                "successful_events": _metrics["successful_events"],
                "failed_events": _metrics["failed_events"],
                "verification_failures": _metrics["verification_failures"],
                "validation_failures": _metrics["validation_failures"],
                "duplicate_events": _metrics["duplicate_events"],
                "success_rate_percent": round(success_rate, 2),
                "event_ids_tracked": len(_ledger),
                "recent_event_types": dict(recent_types),
                "event_type_counts": dict(_event_types),
            },
            "configuration": {
                "webhook_secret_configured": bool(settings.stripe_webhook_secret),
                "max_request_size_bytes": MAX_REQUEST_BODY_SIZE,
                "lease_minutes": settings.pending_payment_lease_minutes,
            },
        }
    )


async def _start_scheduler(app: web.Application) -> None:
    setup_scheduler()


async def _stop_scheduler(app: web.Application) -> None:
    shutdown_scheduler()


def create_app(with_scheduler: bool = False) -> web.Application:
    """
    Create the aiohttp application.

    Args:
        with_scheduler: Run the reservation lease sweep alongside the server
    """
    app = web.Application(middlewares=[security_headers_middleware])
    app.router.add_post("/webhook/stripe", stripe_webhook_handler)
    app.router.add_get("/health", health_check)

    if with_scheduler:
        app.on_startup.append(_start_scheduler)
        app.on_cleanup.append(_stop_scheduler)

    return app


if __name__ == "__main__":
    settings.validate_all_required()
    logger.info(f"Starting webhook server on {settings.host}:{settings.port}")
    web.run_app(create_app(with_scheduler=True), host=settings.host, port=settings.port)
