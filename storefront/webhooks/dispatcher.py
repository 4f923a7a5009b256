"""Webhook event dispatcher: routes verified events to their handler.

Only checkout.session.completed reaches order reconciliation. Every other
event type is acknowledged and ignored so Stripe stops redelivering it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from storefront.errors import MalformedEvent
from storefront.orders.models import CheckoutSession
from storefront.orders.reconciliation import (
    ReconciliationEngine,
    ReconciliationResult,
    ReconciliationStatus,
)
from storefront.webhooks.verification import WebhookEvent

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"


class DispatchStatus(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


@dataclass
class DispatchOutcome:
    """What happened to one verified event."""

    event_id: str
    event_type: str
    status: DispatchStatus
    result: ReconciliationResult | None = None

    @property
    def order_id(self) -> str | None:
        return self.result.order_id if self.result else None


class EventDispatcher:
    """Maps event types to handlers; unknown types are acknowledged no-ops."""

    def __init__(self, engine: ReconciliationEngine):
        self._engine = engine
        self._handlers: dict[str, Callable[[WebhookEvent], DispatchOutcome]] = {
            CHECKOUT_COMPLETED: self._on_checkout_completed,
        }

    @property
    def handled_types(self) -> set[str]:
        return set(self._handlers)

    def dispatch(self, event: WebhookEvent) -> DispatchOutcome:
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info("Ignoring webhook event %s (%s)", event.id, event.type)
            return DispatchOutcome(event.id, event.type, DispatchStatus.IGNORED)
        return handler(event)

    def _on_checkout_completed(self, event: WebhookEvent) -> DispatchOutcome:
        obj = event.data.object
        if not obj.get("id"):
            raise MalformedEvent("checkout session has no id")
        session = CheckoutSession.from_payload(obj)

        result = self._engine.reconcile(session)
        status = (
            DispatchStatus.CREATED
            if result.status == ReconciliationStatus.CREATED
            else DispatchStatus.DUPLICATE
        )
        return DispatchOutcome(event.id, event.type, status, result)
