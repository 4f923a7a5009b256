"""Order reconciliation: turns a paid checkout session into one Order.

Only provider data is trusted: line items are re-fetched from Stripe and
the client-side cart is never consulted.

Flow:
1. Skip if an order already exists for the session (fast path)
2. Fetch line items, split off the reserved shipping line
3. Derive subtotal / shipping / tax; take the charged total from the event;
   warn when shipping disagrees with the free-shipping rule
4. Snapshot customer + address (metadata first, provider fields second)
5. Resolve each product line (metadata id, then name); unresolved lines
   are logged and skipped, never fatal
6. Record order + items + stock decrements in one transaction; a unique
   violation on the session id means another delivery won the race
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from storefront.config import Settings
from storefront.errors import DuplicateSessionIgnored, UnresolvedProductReference
from storefront.money import (
    ZERO,
    compute_tax,
    quantize,
    remaining_for_free_shipping,
    shipping_for_subtotal,
    unit_price,
    within_one_cent,
)
from storefront.orders.models import (
    CheckoutSession,
    CustomerSnapshot,
    LineItem,
    Order,
    OrderItem,
    OrderStatus,
    Product,
    ShippingAddress,
    new_order_id,
)
from storefront.orders.provider import LineItemSource
from storefront.orders.store import OrderStore

logger = logging.getLogger(__name__)


class LineStatus(str, Enum):
    RESOLVED = "resolved"
    UNRESOLVED = "unresolved"


class ReconciliationStatus(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"


@dataclass
class LineResolution:
    """Outcome of mapping one paid line item to the catalog."""

    line: LineItem
    status: LineStatus
    item: OrderItem | None = None
    error: UnresolvedProductReference | None = None


@dataclass
class Totals:
    subtotal: Decimal
    shipping: Decimal
    tax: Decimal
    total: Decimal


@dataclass
class ReconciliationResult:
    """Aggregate outcome for one checkout session."""

    session_id: str
    status: ReconciliationStatus
    order_id: str | None = None
    order: Order | None = None
    lines: list[LineResolution] = field(default_factory=list)
    remaining_stock: dict[str, int] = field(default_factory=dict)

    @property
    def unresolved(self) -> list[LineResolution]:
        return [r for r in self.lines if r.status == LineStatus.UNRESOLVED]

    @property
    def is_partial(self) -> bool:
        return bool(self.unresolved)


def partition_lines(
    lines: list[LineItem], shipping_name: str
) -> tuple[list[LineItem], list[LineItem]]:
    """Split line items into (shipping, product) lists by the reserved name."""
    shipping = [li for li in lines if li.name == shipping_name]
    products = [li for li in lines if li.name != shipping_name]
    return shipping, products


def derive_totals(
    product_lines: list[LineItem],
    shipping_lines: list[LineItem],
    charged_total: Decimal,
    tax_rate: Decimal,
) -> Totals:
    """Monetary fields of the order.

    No shipping line means checkout granted free shipping, so shipping is 0.
    """
    subtotal = quantize(sum((li.amount for li in product_lines), ZERO))
    shipping = quantize(sum((li.amount for li in shipping_lines), ZERO))
    tax = compute_tax(subtotal, shipping, tax_rate)
    return Totals(subtotal=subtotal, shipping=shipping, tax=tax, total=quantize(charged_total))


def snapshot_customer(session: CheckoutSession, default_country: str) -> CustomerSnapshot:
    """Customer fields from checkout metadata, falling back to Stripe's own."""
    meta = session.metadata
    details = session.customer_details
    addr = session.shipping_address

    def pick(meta_key: str, *fallbacks: str | None) -> str:
        value = meta.get(meta_key)
        if value:
            return value
        for fb in fallbacks:
            if fb:
                return fb
        return ""

    return CustomerSnapshot(
        email=session.customer_email or pick("customerEmail", details.get("email")),
        name=pick("customerName", session.shipping_details.get("name"), details.get("name")),
        phone=pick("customerPhone", details.get("phone")) or None,
        address=ShippingAddress(
            street=pick("customerAddress", addr.get("line1")),
            city=pick("customerCity", addr.get("city")),
            state=pick("customerState", addr.get("state")),
            postal_code=pick("customerZip", addr.get("postal_code")),
            country=pick("customerCountry", addr.get("country")) or default_country,
        ),
    )


class ReconciliationEngine:
    """Creates exactly one Order per paid checkout session."""

    def __init__(self, store: OrderStore, line_items: LineItemSource, settings: Settings):
        self._store = store
        self._line_items = line_items
        self._settings = settings

    def _resolve_product(self, line: LineItem) -> Product | None:
        product = None
        if line.product_ref:
            product = self._store.find_product_by_id(line.product_ref)
        if product is None and line.name:
            product = self._store.find_product_by_name(line.name)
        return product

    def _resolve_line(self, line: LineItem, order_id: str) -> LineResolution:
        if line.quantity < 1:
            return LineResolution(
                line=line,
                status=LineStatus.UNRESOLVED,
                error=UnresolvedProductReference(line.product_ref, line.name),
            )

        product = self._resolve_product(line)
        if product is None:
            return LineResolution(
                line=line,
                status=LineStatus.UNRESOLVED,
                error=UnresolvedProductReference(line.product_ref, line.name),
            )

        item = OrderItem(
            order_id=order_id,
            product_id=product.id,
            quantity=line.quantity,
            price=unit_price(line.amount, line.quantity),
        )
        return LineResolution(line=line, status=LineStatus.RESOLVED, item=item)

    def _check_shipping(self, session_id: str, totals: Totals, had_shipping_line: bool) -> None:
        """Compare charged shipping against the checkout rule for the subtotal."""
        threshold = self._settings.free_shipping_threshold
        expected = shipping_for_subtotal(
            totals.subtotal, self._settings.standard_shipping, threshold
        )
        if not had_shipping_line:
            if expected > ZERO:
                logger.warning(
                    "Session %s has no shipping line but subtotal %s is %s below "
                    "the free-shipping threshold %s",
                    session_id,
                    totals.subtotal,
                    remaining_for_free_shipping(totals.subtotal, threshold),
                    threshold,
                )
        elif totals.shipping != expected:
            logger.warning(
                "Session %s shipping %s does not match checkout rate %s for subtotal %s",
                session_id,
                totals.shipping,
                expected,
                totals.subtotal,
            )

    def reconcile(self, session: CheckoutSession) -> ReconciliationResult:
        """Reconcile one completed checkout session.

        Raises PersistenceFailure (and lets provider errors through) so the
        webhook handler can answer 500 and the provider retries.
        """
        existing = self._store.find_order_by_session(session.id)
        if existing is not None:
            logger.info("Session %s already reconciled as order %s", session.id, existing.id)
            return ReconciliationResult(
                session_id=session.id,
                status=ReconciliationStatus.DUPLICATE,
                order_id=existing.id,
                order=existing,
            )

        lines = self._line_items.fetch_line_items(session.id)
        shipping_lines, product_lines = partition_lines(lines, self._settings.shipping_line_name)
        if len(shipping_lines) > 1:
            logger.warning(
                "Session %s has %d shipping lines; summing them",
                session.id,
                len(shipping_lines),
            )

        totals = derive_totals(
            product_lines, shipping_lines, session.total, self._settings.tax_rate
        )
        self._check_shipping(session.id, totals, bool(shipping_lines))
        expected = totals.subtotal + totals.shipping + totals.tax
        if not within_one_cent(expected, totals.total):
            logger.warning(
                "Session %s charged total %s differs from derived %s",
                session.id,
                totals.total,
                expected,
            )

        order_id = new_order_id()
        resolutions = [self._resolve_line(line, order_id) for line in product_lines]
        for r in resolutions:
            if r.error is not None:
                logger.error(
                    "Unresolved line item in session %s: %s (qty=%d, amount=%s)",
                    session.id,
                    r.error,
                    r.line.quantity,
                    r.line.amount,
                )

        order = Order(
            id=order_id,
            customer=snapshot_customer(session, self._settings.default_country),
            subtotal=totals.subtotal,
            shipping=totals.shipping,
            tax=totals.tax,
            total=totals.total,
            stripe_session_id=session.id,
            stripe_payment_id=session.payment_intent,
            status=OrderStatus.PROCESSING,
            items=[r.item for r in resolutions if r.item is not None],
        )

        try:
            remaining = self._store.record_order(order)
        except DuplicateSessionIgnored as dup:
            logger.info("Concurrent delivery already recorded session %s", session.id)
            return ReconciliationResult(
                session_id=session.id,
                status=ReconciliationStatus.DUPLICATE,
                order_id=dup.order_id,
                lines=resolutions,
            )

        for product_id, stock in remaining.items():
            if stock < 0:
                logger.warning("Product %s oversold: stock now %d", product_id, stock)

        logger.info(
            "Order %s created for session %s: %d items, total=%s",
            order.id,
            session.id,
            len(order.items),
            order.total,
        )
        return ReconciliationResult(
            session_id=session.id,
            status=ReconciliationStatus.CREATED,
            order_id=order.id,
            order=order,
            lines=resolutions,
            remaining_stock=remaining,
        )
