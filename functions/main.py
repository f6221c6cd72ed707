"""
Firebase entrypoints for the marketplace lifecycle engine.

Scheduled sweeps (one function per job) plus the payment-gateway webhook.
Every invocation is a complete, idempotent unit of work; overlapping runs are
safe because each item is re-validated inside its own transaction.
"""

import json
import logging
from functools import lru_cache
from typing import Any

from firebase_functions import https_fn, scheduler_fn

from ranchmarket.common.errors import GatewayError, MarketplaceError, ValidationError
from ranchmarket.common.logging import bind_run_id, init_structured_logging, log_event
from ranchmarket.jobs import registry
from ranchmarket.runtime import Services

init_structured_logging(service="ranchmarket-functions")
logger = logging.getLogger(__name__)

STRIPE_SECRETS = ["STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET"]


@lru_cache(maxsize=1)
def _services() -> Services:
    return Services.from_env()


def _run(name: str) -> None:
    report = registry.run_named_job(name, _services())
    if report.errors:
        logger.warning("%s: %d item(s) failed; last_error=%s", name, report.errors, report.last_error)


@scheduler_fn.on_schedule(schedule=registry.SCHEDULES[registry.EXPIRE_UNPAID_AUCTIONS])
def expire_unpaid_auctions(event: scheduler_fn.ScheduledEvent) -> None:
    _ = event  # unused
    _run(registry.EXPIRE_UNPAID_AUCTIONS)


@scheduler_fn.on_schedule(schedule=registry.SCHEDULES[registry.CLEAR_EXPIRED_RESERVATIONS])
def clear_expired_reservations(event: scheduler_fn.ScheduledEvent) -> None:
    _ = event  # unused
    _run(registry.CLEAR_EXPIRED_RESERVATIONS)


@scheduler_fn.on_schedule(schedule=registry.SCHEDULES[registry.PROCESS_NOTIFICATION_EVENTS])
def process_notification_events(event: scheduler_fn.ScheduledEvent) -> None:
    _ = event  # unused
    _run(registry.PROCESS_NOTIFICATION_EVENTS)


@scheduler_fn.on_schedule(schedule=registry.SCHEDULES[registry.RELEASE_PAYOUT_HOLDS])
def release_payout_holds(event: scheduler_fn.ScheduledEvent) -> None:
    _ = event  # unused
    _run(registry.RELEASE_PAYOUT_HOLDS)


@scheduler_fn.on_schedule(schedule=registry.SCHEDULES[registry.SEND_FULFILLMENT_REMINDERS])
def send_fulfillment_reminders(event: scheduler_fn.ScheduledEvent) -> None:
    _ = event  # unused
    _run(registry.SEND_FULFILLMENT_REMINDERS)


def _json(body: dict[str, Any], status: int) -> https_fn.Response:
    return https_fn.Response(json.dumps(body, default=str), status=status, mimetype="application/json")


def handle_webhook(payload: bytes, signature: str) -> tuple[dict[str, Any], int]:
    """
    Verify and ingest one gateway callback. A non-2xx status makes the gateway
    redeliver, so only failures worth retrying return 5xx.
    """
    services = _services()
    with bind_run_id(trigger="stripe_webhook"):
        try:
            event = services.gateway.construct_event(payload=payload, sig_header=signature)
        except ValidationError as e:
            log_event(logger, "webhook.rejected", severity="WARNING", error=str(e)[:500])
            return {"ok": False, "error": "invalid_signature"}, 400

        try:
            result = services.ingestor.handle_event(event)
        except ValidationError as e:
            log_event(logger, "webhook.invalid_payload", severity="ERROR", error=str(e)[:500])
            return {"ok": False, "error": "invalid_payload"}, 400
        except GatewayError as e:
            return {"ok": False, "error": e.code or "gateway_error"}, 503 if e.retryable else 500
        except MarketplaceError as e:
            log_event(logger, "webhook.failed", severity="ERROR", exc_info=True, error=str(e)[:500])
            return {"ok": False, "error": getattr(e, "code", None) or "failed"}, 500

        return {"ok": True, "outcome": result.outcome, "order_id": result.order_id}, 200


@https_fn.on_request(secrets=STRIPE_SECRETS)
def stripe_webhook(req: https_fn.Request) -> https_fn.Response:
    body, status = handle_webhook(req.get_data(), req.headers.get("Stripe-Signature", ""))
    return _json(body, status)
