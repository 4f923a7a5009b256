"""Order ledger data models.

Order and OrderItem are written together by the reconciliation engine and
by nothing else. Product is owned by the catalog; the engine may only
decrement its stock.

CheckoutSession and LineItem are the trusted provider-side view of what
was paid for, normalized from Stripe payloads.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from storefront.errors import InvalidStatusTransition
from storefront.money import ZERO, from_minor_units


class OrderStatus(str, Enum):
    """Order lifecycle states."""
    PENDING = "pending"
    PROCESSING = "processing"  # Paid, created by reconciliation
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


_TERMINAL_STATUSES = {OrderStatus.DELIVERED, OrderStatus.CANCELLED}


def check_transition(current: OrderStatus, requested: OrderStatus) -> None:
    """Admin may move an order anywhere except out of a terminal state."""
    if current in _TERMINAL_STATUSES and requested != current:
        raise InvalidStatusTransition(current.value, requested.value)


def new_order_id() -> str:
    return f"ord_{uuid.uuid4().hex[:20]}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Product:
    """Catalog row as seen by the fulfillment core."""

    id: str
    name: str
    price: Decimal
    stock: int = 0


@dataclass
class ShippingAddress:
    street: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = ""


@dataclass
class CustomerSnapshot:
    """Customer details captured at order time, independent of any account."""

    email: str = ""
    name: str = ""
    phone: str | None = None
    address: ShippingAddress = field(default_factory=ShippingAddress)


@dataclass
class OrderItem:
    order_id: str
    product_id: str
    quantity: int
    price: Decimal  # per unit, at time of purchase

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity


@dataclass
class Order:
    """One completed, paid checkout session."""

    id: str
    customer: CustomerSnapshot
    subtotal: Decimal
    shipping: Decimal
    tax: Decimal
    total: Decimal
    stripe_session_id: str
    stripe_payment_id: str | None = None
    status: OrderStatus = OrderStatus.PROCESSING
    items: list[OrderItem] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready view used by the lookup endpoints."""
        addr = self.customer.address
        return {
            "id": self.id,
            "email": self.customer.email,
            "name": self.customer.name,
            "phone": self.customer.phone,
            "address": addr.street,
            "city": addr.city,
            "state": addr.state,
            "zip": addr.postal_code,
            "country": addr.country,
            "status": self.status.value,
            "subtotal": str(self.subtotal),
            "shipping": str(self.shipping),
            "tax": str(self.tax),
            "total": str(self.total),
            "stripeSessionId": self.stripe_session_id,
            "stripePaymentId": self.stripe_payment_id,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "items": [
                {
                    "productId": item.product_id,
                    "quantity": item.quantity,
                    "price": str(item.price),
                }
                for item in self.items
            ],
        }


# ---------------------------------------------------------------------------
# Provider-side view
# ---------------------------------------------------------------------------


@dataclass
class LineItem:
    """One priced entry of a checkout session."""

    name: str
    quantity: int
    amount_total: int  # minor units actually charged for the whole line
    product_ref: str | None = None  # catalog id from the price's product metadata

    @property
    def amount(self) -> Decimal:
        return from_minor_units(self.amount_total)


def _value(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


@dataclass
class CheckoutSession:
    """The subset of a Stripe checkout session the engine relies on."""

    id: str
    payment_intent: str | None = None
    customer_email: str | None = None
    amount_total: int | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    customer_details: dict[str, Any] = field(default_factory=dict)
    shipping_details: dict[str, Any] = field(default_factory=dict)

    @property
    def total(self) -> Decimal:
        if self.amount_total is None:
            return ZERO
        return from_minor_units(self.amount_total)

    @property
    def shipping_address(self) -> dict[str, Any]:
        """Address collected by the provider, if any."""
        addr = _value(self.shipping_details, "address") or _value(self.customer_details, "address")
        return addr or {}

    @classmethod
    def from_payload(cls, obj: dict[str, Any]) -> CheckoutSession:
        """Build from the event's data.object (a checkout.session)."""
        payment_intent = obj.get("payment_intent")
        if isinstance(payment_intent, dict):
            payment_intent = payment_intent.get("id")

        shipping = obj.get("shipping_details")
        if not shipping:
            # Newer API versions nest it under collected_information
            shipping = (obj.get("collected_information") or {}).get("shipping_details")

        return cls(
            id=obj["id"],
            payment_intent=payment_intent or None,
            customer_email=obj.get("customer_email"),
            amount_total=obj.get("amount_total"),
            metadata={k: v for k, v in (obj.get("metadata") or {}).items() if v is not None},
            customer_details=obj.get("customer_details") or {},
            shipping_details=shipping or {},
        )
