"""Order ledger and catalog persistence: protocol + Postgres implementation.

Security contract:
- stripe_session_id is UNIQUE; an insert conflict means the session was
  already reconciled (DuplicateSessionIgnored), never a second order
- Order, items and stock decrements commit in one transaction
- Stock is decremented in SQL (stock = stock - n), never read-modify-write
- Stock is allowed to go negative (no checkout-time reservation)
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Protocol

import psycopg
from psycopg.rows import dict_row

from storefront.errors import DuplicateSessionIgnored, PersistenceFailure
from storefront.orders.models import (
    CustomerSnapshot,
    Order,
    OrderItem,
    OrderStatus,
    Product,
    ShippingAddress,
    check_transition,
)

logger = logging.getLogger(__name__)

# Shortest order-id fragment accepted by tracking lookups
MIN_TRACKING_REF_LENGTH = 8


class OrderStore(Protocol):
    """Persistence boundary consumed by the reconciliation engine."""

    def find_order_by_session(self, session_id: str) -> Order | None: ...

    def find_product_by_id(self, product_id: str) -> Product | None: ...

    def find_product_by_name(self, name: str) -> Product | None: ...

    def record_order(self, order: Order) -> dict[str, int]:
        """Atomically write order + items and decrement stock.

        Returns the remaining stock per decremented product id.
        Raises DuplicateSessionIgnored if the session already has an order.
        """
        ...

    def get_order(self, order_id: str) -> Order | None: ...

    def track_order(self, order_ref: str, email: str) -> Order | None: ...

    def list_orders(self, limit: int = 50) -> list[Order]: ...

    def update_status(self, order_id: str, status: OrderStatus) -> Order | None: ...


# ── Schema ────────────────────────────────────────────────────────────────

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS products (
        id          TEXT PRIMARY KEY,
        name        TEXT NOT NULL,
        price       NUMERIC(10, 2) NOT NULL,
        stock       INT NOT NULL DEFAULT 0,
        created_at  TIMESTAMPTZ DEFAULT now(),
        updated_at  TIMESTAMPTZ DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id                 TEXT PRIMARY KEY,
        email              TEXT NOT NULL,
        name               TEXT NOT NULL DEFAULT '',
        phone              TEXT,
        address            TEXT NOT NULL DEFAULT '',
        city               TEXT NOT NULL DEFAULT '',
        state              TEXT NOT NULL DEFAULT '',
        zip                TEXT NOT NULL DEFAULT '',
        country            TEXT NOT NULL DEFAULT 'US',
        status             TEXT NOT NULL DEFAULT 'pending',
        subtotal           NUMERIC(10, 2) NOT NULL,
        shipping           NUMERIC(10, 2) NOT NULL,
        tax                NUMERIC(10, 2) NOT NULL,
        total              NUMERIC(10, 2) NOT NULL,
        stripe_session_id  TEXT NOT NULL,
        stripe_payment_id  TEXT,
        created_at         TIMESTAMPTZ DEFAULT now(),
        updated_at         TIMESTAMPTZ DEFAULT now(),
        CONSTRAINT orders_stripe_session_id_key UNIQUE (stripe_session_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_items (
        id          SERIAL PRIMARY KEY,
        order_id    TEXT NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
        product_id  TEXT NOT NULL REFERENCES products(id),
        quantity    INT NOT NULL CHECK (quantity >= 1),
        price       NUMERIC(10, 2) NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_orders_email ON orders (lower(email))",
    "CREATE INDEX IF NOT EXISTS idx_order_items_order ON order_items (order_id)",
)

_ORDER_COLUMNS = """id, email, name, phone, address, city, state, zip, country,
    status, subtotal, shipping, tax, total, stripe_session_id,
    stripe_payment_id, created_at, updated_at"""


def _row_to_order(row: dict[str, Any], items: list[dict[str, Any]]) -> Order:
    return Order(
        id=row["id"],
        customer=CustomerSnapshot(
            email=row["email"],
            name=row["name"],
            phone=row["phone"],
            address=ShippingAddress(
                street=row["address"],
                city=row["city"],
                state=row["state"],
                postal_code=row["zip"],
                country=row["country"],
            ),
        ),
        subtotal=row["subtotal"],
        shipping=row["shipping"],
        tax=row["tax"],
        total=row["total"],
        stripe_session_id=row["stripe_session_id"],
        stripe_payment_id=row["stripe_payment_id"],
        status=OrderStatus(row["status"]),
        items=[
            OrderItem(
                order_id=row["id"],
                product_id=i["product_id"],
                quantity=i["quantity"],
                price=i["price"],
            )
            for i in items
        ],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_product(row: dict[str, Any]) -> Product:
    return Product(id=row["id"], name=row["name"], price=row["price"], stock=row["stock"])


class PostgresOrderStore:
    """psycopg-backed order ledger and catalog reader."""

    def __init__(self, database_url: str):
        self._database_url = database_url

    def _get_conn(self) -> psycopg.Connection:
        return psycopg.connect(self._database_url, autocommit=True, row_factory=dict_row)

    @contextmanager
    def _connection(self, operation: str) -> Iterator[psycopg.Connection]:
        """Open a connection, translating driver errors to PersistenceFailure."""
        try:
            with self._get_conn() as conn:
                yield conn
        except psycopg.Error as e:
            logger.exception("Order store %s failed", operation)
            raise PersistenceFailure(operation, e) from e

    def init_tables(self) -> None:
        """Create ledger tables if they don't exist.  Idempotent."""
        with self._connection("init_tables") as conn:
            for ddl in _SCHEMA:
                conn.execute(ddl)
        logger.info("Order ledger tables initialized")

    # ── Catalog reads ─────────────────────────────────────────────────────

    def find_product_by_id(self, product_id: str) -> Product | None:
        with self._connection("find_product_by_id") as conn:
            row = conn.execute(
                "SELECT id, name, price, stock FROM products WHERE id = %s",
                (product_id,),
            ).fetchone()
        return _row_to_product(row) if row else None

    def find_product_by_name(self, name: str) -> Product | None:
        with self._connection("find_product_by_name") as conn:
            row = conn.execute(
                """SELECT id, name, price, stock FROM products
                   WHERE name = %s ORDER BY created_at LIMIT 1""",
                (name,),
            ).fetchone()
        return _row_to_product(row) if row else None

    # ── Order writes ──────────────────────────────────────────────────────

    def record_order(self, order: Order) -> dict[str, int]:
        addr = order.customer.address
        remaining: dict[str, int] = {}
        with self._connection("record_order") as conn:
            with conn.transaction():
                row = conn.execute(
                    """INSERT INTO orders
                       (id, email, name, phone, address, city, state, zip, country,
                        status, subtotal, shipping, tax, total,
                        stripe_session_id, stripe_payment_id)
                       VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s,
                               %s, %s, %s, %s, %s, %s, %s)
                       ON CONFLICT (stripe_session_id) DO NOTHING
                       RETURNING id""",
                    (
                        order.id,
                        order.customer.email,
                        order.customer.name,
                        order.customer.phone,
                        addr.street,
                        addr.city,
                        addr.state,
                        addr.postal_code,
                        addr.country,
                        order.status.value,
                        order.subtotal,
                        order.shipping,
                        order.tax,
                        order.total,
                        order.stripe_session_id,
                        order.stripe_payment_id,
                    ),
                ).fetchone()
                if row is None:
                    existing = conn.execute(
                        "SELECT id FROM orders WHERE stripe_session_id = %s",
                        (order.stripe_session_id,),
                    ).fetchone()
                    raise DuplicateSessionIgnored(
                        order.stripe_session_id, existing["id"] if existing else None
                    )

                for item in order.items:
                    conn.execute(
                        """INSERT INTO order_items (order_id, product_id, quantity, price)
                           VALUES (%s, %s, %s, %s)""",
                        (order.id, item.product_id, item.quantity, item.price),
                    )
                    stock_row = conn.execute(
                        """UPDATE products
                           SET stock = stock - %s, updated_at = now()
                           WHERE id = %s
                           RETURNING stock""",
                        (item.quantity, item.product_id),
                    ).fetchone()
                    if stock_row is not None:
                        remaining[item.product_id] = stock_row["stock"]
        return remaining

    def update_status(self, order_id: str, status: OrderStatus) -> Order | None:
        """Status change made from the admin dashboard; terminal states are final."""
        with self._connection("update_status") as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT status FROM orders WHERE id = %s FOR UPDATE",
                    (order_id,),
                ).fetchone()
                if row is None:
                    return None
                check_transition(OrderStatus(row["status"]), status)
                conn.execute(
                    "UPDATE orders SET status = %s, updated_at = now() WHERE id = %s",
                    (status.value, order_id),
                )
        logger.info("Order %s status -> %s", order_id, status.value)
        return self.get_order(order_id)

    # ── Order reads ───────────────────────────────────────────────────────

    def _load_items(self, conn: psycopg.Connection, order_ids: list[str]) -> dict[str, list]:
        grouped: dict[str, list] = {oid: [] for oid in order_ids}
        if not order_ids:
            return grouped
        rows = conn.execute(
            """SELECT order_id, product_id, quantity, price FROM order_items
               WHERE order_id = ANY(%s) ORDER BY id""",
            (order_ids,),
        ).fetchall()
        for r in rows:
            grouped[r["order_id"]].append(r)
        return grouped

    def _fetch_one(self, operation: str, where: str, params: tuple) -> Order | None:
        with self._connection(operation) as conn:
            row = conn.execute(
                f"SELECT {_ORDER_COLUMNS} FROM orders WHERE {where} "
                "ORDER BY created_at DESC LIMIT 1",
                params,
            ).fetchone()
            if row is None:
                return None
            items = self._load_items(conn, [row["id"]])
        return _row_to_order(row, items[row["id"]])

    def find_order_by_session(self, session_id: str) -> Order | None:
        return self._fetch_one("find_order_by_session", "stripe_session_id = %s", (session_id,))

    def get_order(self, order_id: str) -> Order | None:
        return self._fetch_one("get_order", "id = %s", (order_id,))

    def track_order(self, order_ref: str, email: str) -> Order | None:
        """Find an order by full id, or an id fragment, plus customer email.

        A fragment must identify exactly one of the customer's orders.
        """
        if order_ref and len(order_ref) < MIN_TRACKING_REF_LENGTH:
            return self._fetch_one(
                "track_order", "id = %s AND lower(email) = lower(%s)", (order_ref, email)
            )
        with self._connection("track_order") as conn:
            rows = conn.execute(
                f"SELECT {_ORDER_COLUMNS} FROM orders "
                "WHERE position(%s in id) > 0 AND lower(email) = lower(%s) "
                "ORDER BY (id = %s) DESC, created_at DESC LIMIT 2",
                (order_ref, email, order_ref),
            ).fetchall()
            if not rows:
                return None
            row = rows[0]
            if len(rows) > 1 and row["id"] != order_ref:
                logger.info("Tracking reference %s matches several orders", order_ref)
                return None
            items = self._load_items(conn, [row["id"]])
        return _row_to_order(row, items[row["id"]])

    def list_orders(self, limit: int = 50) -> list[Order]:
        """Newest orders first, with items. Read by the admin order list."""
        with self._connection("list_orders") as conn:
            rows = conn.execute(
                f"SELECT {_ORDER_COLUMNS} FROM orders ORDER BY created_at DESC LIMIT %s",
                (limit,),
            ).fetchall()
            items = self._load_items(conn, [r["id"] for r in rows])
        return [_row_to_order(r, items[r["id"]]) for r in rows]
