"""Stripe line-item source.

The webhook body is not trusted to carry complete item data, so the
engine re-fetches the session's line items with the API key. Each line's
catalog id comes from the expanded price.product metadata (set by checkout
as ``productId``).
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import stripe

from storefront.errors import ConfigurationError
from storefront.orders.models import LineItem

logger = logging.getLogger(__name__)

_PRODUCT_REF_KEY = "productId"
_PAGE_SIZE = 100


class LineItemSource(Protocol):
    def fetch_line_items(self, session_id: str) -> list[LineItem]: ...


def _get(obj: Any, key: str) -> Any:
    """Field access that works for StripeObjects, dicts and plain ids."""
    if obj is None or isinstance(obj, str):
        return None
    try:
        return obj.get(key)
    except AttributeError:
        return getattr(obj, key, None)


def line_item_from_stripe(item: Any) -> LineItem:
    """Normalize one Stripe line item (price.product expanded)."""
    price = _get(item, "price")
    product = _get(price, "product")
    metadata = _get(product, "metadata") or {}

    name = _get(product, "name") or _get(item, "description") or ""
    product_ref = _get(metadata, _PRODUCT_REF_KEY) or None
    quantity = _get(item, "quantity")

    return LineItem(
        name=name,
        quantity=1 if quantity is None else int(quantity),
        amount_total=int(_get(item, "amount_total") or 0),
        product_ref=product_ref,
    )


class StripeLineItemSource:
    """Fetches checkout session line items through the Stripe API."""

    def __init__(self, api_key: str, client: stripe.StripeClient | None = None):
        if client is None:
            if not api_key:
                raise ConfigurationError("STRIPE_SECRET_KEY")
            client = stripe.StripeClient(api_key=api_key, max_network_retries=2)
        self._client = client

    def fetch_line_items(self, session_id: str) -> list[LineItem]:
        page = self._client.checkout.sessions.line_items.list(
            session_id,
            params={"limit": _PAGE_SIZE, "expand": ["data.price.product"]},
        )
        items = [line_item_from_stripe(i) for i in page.auto_paging_iter()]
        logger.info("Fetched %d line items for session %s", len(items), session_id)
        return items
