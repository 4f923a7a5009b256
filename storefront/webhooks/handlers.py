"""Webhook HTTP handlers: FastAPI routes for inbound Stripe webhooks.

Each delivery:
1. Reads raw body (needed for HMAC verification)
2. Verifies the Stripe-Signature header
3. Parses the event envelope
4. Skips event ids already acknowledged (delivery ledger)
5. Dispatches; checkout completions create the order synchronously
6. Returns 200 only once the order is persisted

Response codes:
- 200 on success, duplicate, or ignored event type
- 400 on missing/invalid signature or malformed envelope (permanent)
- 500 on misconfiguration or persistence failure (provider retries)

Never return error details to the webhook caller.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from storefront.config import Settings
from storefront.errors import (
    ConfigurationError,
    PersistenceFailure,
    VerificationError,
)
from storefront.webhooks.dispatcher import DispatchStatus, EventDispatcher
from storefront.webhooks.idempotency import DeliveryLedger
from storefront.webhooks.verification import SIGNATURE_HEADER, construct_event

logger = logging.getLogger(__name__)

_PROVIDER = "stripe"


@dataclass
class WebhookResponse:
    status_code: int
    body: dict[str, Any]


def _log_webhook(event_type: str, event_id: str, status: str) -> None:
    """Audit log for webhook activity."""
    logger.info(
        "WEBHOOK_AUDIT provider=%s event=%s id=%s status=%s",
        _PROVIDER,
        event_type,
        event_id,
        status,
    )


def process_webhook(
    body: bytes,
    signature: str | None,
    settings: Settings,
    dispatcher: EventDispatcher,
    ledger: DeliveryLedger | None = None,
) -> WebhookResponse:
    """Run one delivery through verification and dispatch."""
    start = time.time()

    try:
        event = construct_event(
            body, signature, settings.webhook_secret, settings.signature_tolerance_s
        )
    except ConfigurationError:
        logger.critical("Webhook rejected: server misconfigured (STRIPE_WEBHOOK_SECRET)")
        _log_webhook("unknown", "unknown", "misconfigured")
        return WebhookResponse(500, {"error": "Webhook not configured"})
    except VerificationError as e:
        logger.warning("Webhook verification failed: %s", type(e).__name__)
        _log_webhook("unknown", "unknown", "rejected")
        return WebhookResponse(400, {"error": "Webhook verification failed"})

    if ledger is not None and ledger.is_duplicate(event.id):
        _log_webhook(event.type, event.id, "duplicate")
        return WebhookResponse(200, {"received": True, "status": DispatchStatus.DUPLICATE.value})

    try:
        outcome = dispatcher.dispatch(event)
    except VerificationError:
        _log_webhook(event.type, event.id, "malformed")
        return WebhookResponse(400, {"error": "Webhook verification failed"})
    except PersistenceFailure:
        logger.exception("Order persistence failed for event %s", event.id)
        _log_webhook(event.type, event.id, "persistence_failed")
        return WebhookResponse(500, {"error": "Failed to create order"})
    except Exception:
        logger.exception("Failed to process webhook event %s (%s)", event.id, event.type)
        _log_webhook(event.type, event.id, "failed")
        return WebhookResponse(500, {"error": "Failed to create order"})

    if ledger is not None:
        ledger.mark_seen(event.id)
    _log_webhook(event.type, event.id, outcome.status.value)

    elapsed_ms = (time.time() - start) * 1000
    logger.debug("Webhook processed in %.1fms: %s", elapsed_ms, event.type)

    return WebhookResponse(200, {"received": True, "status": outcome.status.value})


async def _handle_stripe(request: Request) -> JSONResponse:
    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    state = request.app.state
    response = await run_in_threadpool(
        process_webhook,
        body,
        signature,
        state.settings,
        state.dispatcher,
        state.ledger,
    )
    return JSONResponse(response.body, status_code=response.status_code)


router = APIRouter()


@router.post("/webhooks/stripe")
async def stripe_webhook(request: Request):
    """Receive Stripe webhooks (signature-verified)."""
    return await _handle_stripe(request)


@router.post("/api/webhook")
async def legacy_stripe_webhook(request: Request):
    """Endpoint registered in the Stripe dashboard before /webhooks/stripe."""
    return await _handle_stripe(request)
