"""Shared fixtures for the storefront fulfillment test suite.

No test touches a real database, Redis, or Stripe. InMemoryOrderStore
mirrors PostgresOrderStore's guarantees: the session id is unique and
record_order applies order, items and stock decrements under one lock.
"""

from __future__ import annotations

import copy
import json
import threading
import time
from decimal import Decimal
from typing import Any
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from storefront.app import create_app
from storefront.config import Settings
from storefront.errors import DuplicateSessionIgnored, PersistenceFailure
from storefront.orders.models import LineItem, Order, OrderStatus, Product, check_transition
from storefront.orders.reconciliation import ReconciliationEngine
from storefront.orders.store import MIN_TRACKING_REF_LENGTH
from storefront.webhooks.dispatcher import EventDispatcher
from storefront.webhooks.verification import compute_signature

WEBHOOK_SECRET = "whsec_test_secret"


class InMemoryOrderStore:
    """OrderStore test double with the same atomicity guarantees."""

    def __init__(self, products: list[Product] | None = None):
        self.products: dict[str, Product] = {p.id: p for p in (products or [])}
        self.orders: dict[str, Order] = {}
        self._by_session: dict[str, str] = {}
        self._lock = threading.Lock()
        self.fail_writes = False

    def find_order_by_session(self, session_id: str) -> Order | None:
        order_id = self._by_session.get(session_id)
        return self.orders.get(order_id) if order_id else None

    def find_product_by_id(self, product_id: str) -> Product | None:
        return self.products.get(product_id)

    def find_product_by_name(self, name: str) -> Product | None:
        for p in self.products.values():
            if p.name == name:
                return p
        return None

    def record_order(self, order: Order) -> dict[str, int]:
        if self.fail_writes:
            raise PersistenceFailure("record_order", ConnectionError("store down"))
        with self._lock:
            if order.stripe_session_id in self._by_session:
                raise DuplicateSessionIgnored(
                    order.stripe_session_id, self._by_session[order.stripe_session_id]
                )
            self.orders[order.id] = copy.deepcopy(order)
            self._by_session[order.stripe_session_id] = order.id
            remaining = {}
            for item in order.items:
                product = self.products[item.product_id]
                product.stock -= item.quantity
                remaining[item.product_id] = product.stock
            return remaining

    def get_order(self, order_id: str) -> Order | None:
        return self.orders.get(order_id)

    def track_order(self, order_ref: str, email: str) -> Order | None:
        mine = [o for o in self.orders.values() if o.customer.email.lower() == email.lower()]
        for order in mine:
            if order.id == order_ref:
                return order
        if len(order_ref) < MIN_TRACKING_REF_LENGTH:
            return None
        matches = [o for o in mine if order_ref in o.id]
        return matches[0] if len(matches) == 1 else None

    def list_orders(self, limit: int = 50) -> list[Order]:
        ordered = sorted(self.orders.values(), key=lambda o: o.created_at, reverse=True)
        return ordered[:limit]

    def update_status(self, order_id: str, status: OrderStatus) -> Order | None:
        order = self.orders.get(order_id)
        if order is None:
            return None
        check_transition(order.status, status)
        order.status = status
        return order


class StaticLineItems:
    """LineItemSource returning canned line items per session id."""

    def __init__(self, by_session: dict[str, list[LineItem]] | None = None):
        self.by_session = by_session or {}
        self.calls: list[str] = []

    def fetch_line_items(self, session_id: str) -> list[LineItem]:
        self.calls.append(session_id)
        return list(self.by_session.get(session_id, []))


def sign(body: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a valid Stripe-Signature header for body."""
    ts = timestamp if timestamp is not None else int(time.time())
    return f"t={ts},v1={compute_signature(secret, ts, body)}"


def checkout_session_payload(session_id: str = "cs_test_1", **overrides: Any) -> dict[str, Any]:
    """A checkout.session object as Stripe sends it."""
    obj: dict[str, Any] = {
        "id": session_id,
        "object": "checkout.session",
        "payment_intent": "pi_test_1",
        "customer_email": "a@b.com",
        "amount_total": 8747,
        "payment_status": "paid",
        "metadata": {
            "customerName": "Jane Doe",
            "customerEmail": "a@b.com",
            "customerPhone": "",
            "customerAddress": "1 Lavender Lane",
            "customerCity": "Portland",
            "customerState": "OR",
            "customerZip": "97201",
            "customerCountry": "US",
        },
    }
    obj.update(overrides)
    return obj


def event_body(
    obj: dict[str, Any],
    event_type: str = "checkout.session.completed",
    event_id: str = "evt_test_1",
) -> bytes:
    return json.dumps(
        {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}
    ).encode()


@pytest.fixture
def settings() -> Settings:
    return Settings(webhook_secret=WEBHOOK_SECRET, stripe_api_key="sk_test_x")


@pytest.fixture
def products() -> list[Product]:
    return [
        Product(id="P1", name="Soap", price=Decimal("25.00"), stock=10),
        Product(id="P2", name="Lavender Candle", price=Decimal("18.00"), stock=5),
    ]


@pytest.fixture
def store(products) -> InMemoryOrderStore:
    return InMemoryOrderStore(products)


@pytest.fixture
def line_items() -> StaticLineItems:
    return StaticLineItems(
        {
            "cs_test_1": [
                LineItem(name="Soap", quantity=3, amount_total=7500, product_ref="P1"),
                LineItem(name="Shipping", quantity=1, amount_total=599),
            ]
        }
    )


@pytest.fixture
def engine(store, line_items, settings) -> ReconciliationEngine:
    return ReconciliationEngine(store, line_items, settings)


@pytest.fixture
def dispatcher(engine) -> EventDispatcher:
    return EventDispatcher(engine)


@pytest.fixture
def ledger() -> MagicMock:
    mock = MagicMock()
    mock.is_duplicate.return_value = False
    return mock


@pytest.fixture
def app(settings, store, line_items, ledger):
    return create_app(settings, store=store, line_items=line_items, ledger=ledger)


@pytest.fixture
def client(app):
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture
def sign_body():
    """Factory: body -> valid Stripe-Signature header."""
    return sign


@pytest.fixture
def make_session():
    """Factory for checkout.session payloads."""
    return checkout_session_payload


@pytest.fixture
def make_event_body():
    """Factory for serialized event envelopes."""
    return event_body


@pytest.fixture
def make_store():
    """Factory for empty or seeded in-memory stores."""
    return InMemoryOrderStore


@pytest.fixture
def make_line_items():
    return StaticLineItems
