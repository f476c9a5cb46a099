# storage/order_store.py
# ============================================================================
# ECHOBEATS LANDING — ORDER STORE
# ============================================================================
# Pluggable persistence for orders and newsletter subscribers.
# InMemoryStore for tests/dev, PostgresStore for production; create_store()
# picks one from configuration.
# ============================================================================

import asyncio
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, List, Optional

import asyncpg
import structlog

from config import AppConfig
from database import Database
from schemas.orders import DEFAULT_CURRENCY, Order, OrderStatus, Subscriber

logger = structlog.get_logger(component="order_store")


# =============================================================================
# INTERFACES
# =============================================================================

class IOrderStore(ABC):
    """Order persistence interface"""

    backend_name: str = "unknown"

    @abstractmethod
    async def create_order(
        self,
        product_id: str,
        product_name: str,
        amount: Decimal,
        currency: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> Order:
        pass

    @abstractmethod
    async def update_order_status(
        self, order_id: int, status: OrderStatus, gateway_reference: str
    ) -> Optional[Order]:
        """Replace status and gateway reference together. None if not found."""
        pass

    @abstractmethod
    async def get_order(self, order_id: int) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_order_by_gateway_reference(self, reference: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def list_orders(self, status: Optional[OrderStatus] = None) -> List[Order]:
        pass

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass


class ISubscriberStore(ABC):
    """Newsletter subscriber persistence interface"""

    @abstractmethod
    async def create_subscriber(self, email: str) -> Subscriber:
        """Idempotent: an existing email returns the existing record."""
        pass

    @abstractmethod
    async def get_subscriber_by_email(self, email: str) -> Optional[Subscriber]:
        pass

    @abstractmethod
    async def list_subscribers(self) -> List[Subscriber]:
        pass


class IStore(IOrderStore, ISubscriberStore):
    """Everything the API needs from persistence"""


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================

class InMemoryStore(IStore):
    """
    In-memory store for development and tests.

    Orders are frozen models replaced wholesale on update, so a reader always
    sees either the old or the new version of an order.
    """

    backend_name = "memory"

    def __init__(self):
        self._orders: Dict[int, Order] = {}
        self._by_reference: Dict[str, int] = {}
        self._subscribers: Dict[int, Subscriber] = {}
        self._by_email: Dict[str, int] = {}
        self._next_order_id = 1
        self._next_subscriber_id = 1
        self._lock = asyncio.Lock()

    async def create_order(
        self,
        product_id: str,
        product_name: str,
        amount: Decimal,
        currency: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> Order:
        async with self._lock:
            order_id = self._next_order_id
            self._next_order_id += 1
            order = Order(
                id=order_id,
                product_id=product_id,
                product_name=product_name,
                amount=amount,
                currency=currency or DEFAULT_CURRENCY,
                customer_email=customer_email or None,
                status=OrderStatus.PENDING,
                gateway_reference="",
            )
            self._orders[order_id] = order
            return order

    async def update_order_status(
        self, order_id: int, status: OrderStatus, gateway_reference: str
    ) -> Optional[Order]:
        async with self._lock:
            current = self._orders.get(order_id)
            if current is None:
                return None
            if current.status == status and current.gateway_reference == gateway_reference:
                return current

            updated = current.with_status(OrderStatus(status), gateway_reference)
            if current.gateway_reference and current.gateway_reference != gateway_reference:
                self._by_reference.pop(current.gateway_reference, None)
            if gateway_reference:
                self._by_reference[gateway_reference] = order_id
            self._orders[order_id] = updated
            return updated

    async def get_order(self, order_id: int) -> Optional[Order]:
        async with self._lock:
            return self._orders.get(order_id)

    async def get_order_by_gateway_reference(self, reference: str) -> Optional[Order]:
        if not reference:
            return None
        async with self._lock:
            order_id = self._by_reference.get(reference)
            return self._orders.get(order_id) if order_id is not None else None

    async def list_orders(self, status: Optional[OrderStatus] = None) -> List[Order]:
        async with self._lock:
            orders = sorted(self._orders.values(), key=lambda o: o.id)
        if status is not None:
            orders = [o for o in orders if o.status == status]
        return orders

    async def create_subscriber(self, email: str) -> Subscriber:
        async with self._lock:
            existing_id = self._by_email.get(email)
            if existing_id is not None:
                return self._subscribers[existing_id]

            subscriber = Subscriber(id=self._next_subscriber_id, email=email)
            self._next_subscriber_id += 1
            self._subscribers[subscriber.id] = subscriber
            self._by_email[email] = subscriber.id
            return subscriber

    async def get_subscriber_by_email(self, email: str) -> Optional[Subscriber]:
        async with self._lock:
            subscriber_id = self._by_email.get(email)
            return self._subscribers.get(subscriber_id) if subscriber_id is not None else None

    async def list_subscribers(self) -> List[Subscriber]:
        async with self._lock:
            return sorted(self._subscribers.values(), key=lambda s: s.id)


# =============================================================================
# POSTGRES IMPLEMENTATION
# =============================================================================

_ORDER_COLUMNS = """
    id, product_id, product_name, amount, currency, customer_email,
    status, stripe_payment_intent_id, created_at, updated_at
"""


def _order_from_row(row: asyncpg.Record) -> Order:
    return Order(
        id=row["id"],
        product_id=row["product_id"],
        product_name=row["product_name"],
        amount=row["amount"],
        currency=row["currency"],
        customer_email=row["customer_email"],
        status=OrderStatus(row["status"]),
        gateway_reference=row["stripe_payment_intent_id"] or "",
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _subscriber_from_row(row: asyncpg.Record) -> Subscriber:
    return Subscriber(id=row["id"], email=row["email"], created_at=row["created_at"])


class PostgresStore(IStore):
    """PostgreSQL-backed store. Ids come from SERIAL columns."""

    backend_name = "postgres"

    def __init__(self, db: Database):
        self._db = db

    async def initialize(self) -> None:
        await self._db.initialize(run_migrations=True)

    async def close(self) -> None:
        await self._db.close()

    async def create_order(
        self,
        product_id: str,
        product_name: str,
        amount: Decimal,
        currency: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> Order:
        row = await self._db.fetch_one(
            f"""
            INSERT INTO orders
            (product_id, product_name, amount, currency, customer_email, status, stripe_payment_intent_id)
            VALUES ($1, $2, $3, $4, $5, $6, '')
            RETURNING {_ORDER_COLUMNS}
            """,
            product_id,
            product_name,
            amount,
            currency or DEFAULT_CURRENCY,
            customer_email or None,
            OrderStatus.PENDING.value,
        )
        return _order_from_row(row)

    async def update_order_status(
        self, order_id: int, status: OrderStatus, gateway_reference: str
    ) -> Optional[Order]:
        row = await self._db.fetch_one(
            f"""
            UPDATE orders
            SET status = $1,
                stripe_payment_intent_id = $2,
                updated_at = CASE
                    WHEN status = $1 AND stripe_payment_intent_id = $2 THEN updated_at
                    ELSE NOW()
                END
            WHERE id = $3
            RETURNING {_ORDER_COLUMNS}
            """,
            OrderStatus(status).value,
            gateway_reference,
            order_id,
        )
        return _order_from_row(row) if row else None

    async def get_order(self, order_id: int) -> Optional[Order]:
        row = await self._db.fetch_one(
            f"SELECT {_ORDER_COLUMNS} FROM orders WHERE id = $1", order_id
        )
        return _order_from_row(row) if row else None

    async def get_order_by_gateway_reference(self, reference: str) -> Optional[Order]:
        if not reference:
            return None
        row = await self._db.fetch_one(
            f"""
            SELECT {_ORDER_COLUMNS} FROM orders
            WHERE stripe_payment_intent_id = $1
            ORDER BY id DESC
            LIMIT 1
            """,
            reference,
        )
        return _order_from_row(row) if row else None

    async def list_orders(self, status: Optional[OrderStatus] = None) -> List[Order]:
        if status is not None:
            rows = await self._db.fetch_all(
                f"SELECT {_ORDER_COLUMNS} FROM orders WHERE status = $1 ORDER BY id",
                OrderStatus(status).value,
            )
        else:
            rows = await self._db.fetch_all(f"SELECT {_ORDER_COLUMNS} FROM orders ORDER BY id")
        return [_order_from_row(row) for row in rows]

    async def create_subscriber(self, email: str) -> Subscriber:
        # DO NOTHING returns no row on conflict, hence the follow-up select.
        async with self._db.transaction() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO subscribers (email) VALUES ($1)
                ON CONFLICT (email) DO NOTHING
                RETURNING id, email, created_at
                """,
                email,
            )
            if row is None:
                row = await conn.fetchrow(
                    "SELECT id, email, created_at FROM subscribers WHERE email = $1", email
                )
        return _subscriber_from_row(row)

    async def get_subscriber_by_email(self, email: str) -> Optional[Subscriber]:
        row = await self._db.fetch_one(
            "SELECT id, email, created_at FROM subscribers WHERE email = $1", email
        )
        return _subscriber_from_row(row) if row else None

    async def list_subscribers(self) -> List[Subscriber]:
        rows = await self._db.fetch_all("SELECT id, email, created_at FROM subscribers ORDER BY id")
        return [_subscriber_from_row(row) for row in rows]


# =============================================================================
# FACTORY
# =============================================================================

def create_store(config: AppConfig) -> IStore:
    """Select the storage backend from configuration."""
    backend = config.storage_backend
    if backend == "auto":
        backend = "postgres" if config.database_url else "memory"

    if backend == "postgres":
        logger.info("store_selected", backend="postgres")
        return PostgresStore(Database.from_config(config))

    if config.storage_backend == "auto":
        logger.warning("store_selected", backend="memory", reason="DATABASE_URL not set")
    else:
        logger.info("store_selected", backend="memory")
    return InMemoryStore()
