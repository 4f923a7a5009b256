"""FastAPI application factory for the fulfillment service.

Collaborators (settings, order store, Stripe line-item source, delivery
ledger) are built here once and hung on app.state; tests pass their own.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from storefront.config import Settings
from storefront.errors import ConfigurationError
from storefront.orders.provider import LineItemSource, StripeLineItemSource
from storefront.orders.reconciliation import ReconciliationEngine
from storefront.orders.routes import router as orders_router
from storefront.orders.store import OrderStore, PostgresOrderStore
from storefront.webhooks.dispatcher import EventDispatcher
from storefront.webhooks.handlers import router as webhook_router
from storefront.webhooks.idempotency import DeliveryLedger

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Install a root handler once; LOG_LEVEL overrides the default INFO."""
    level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=level, format=_LOG_FORMAT)


def create_app(
    settings: Settings | None = None,
    *,
    store: OrderStore | None = None,
    line_items: LineItemSource | None = None,
    ledger: DeliveryLedger | None = None,
) -> FastAPI:
    """Build the app. Run with: uvicorn --factory storefront.app:create_app"""
    configure_logging()
    settings = settings or Settings.from_env()

    owns_store = store is None
    if store is None:
        store = PostgresOrderStore(settings.database_url)
    if line_items is None:
        line_items = StripeLineItemSource(settings.stripe_api_key)
    if ledger is None:
        ledger = DeliveryLedger.from_url(settings.redis_url)

    try:
        settings.require_webhook_secret()
    except ConfigurationError:
        logger.critical("STRIPE_WEBHOOK_SECRET not set; all webhooks will be rejected")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if owns_store and not os.environ.get("TESTING"):
            store.init_tables()
        yield

    app = FastAPI(title="Storefront Fulfillment", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.ledger = ledger
    app.state.dispatcher = EventDispatcher(ReconciliationEngine(store, line_items, settings))

    app.include_router(webhook_router)
    app.include_router(orders_router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    logger.info("Routes registered: /webhooks/stripe, /api/webhook, /api/orders/*")
    return app
