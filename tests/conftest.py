"""
Shared fixtures: a throwaway SQLite database seeded with a small catalog,
two customers and their carts, plus the services wired against it.
"""
import asyncio
from decimal import Decimal
from typing import List, Tuple

import pytest
import pytest_asyncio

from storefront.collaborators import (
    SqlCartService, SqlCatalog, SqlOwnerDirectory,
)
from storefront.config import Settings
from storefront.infra.sql import make_database
from storefront.model.checkoutgate import new_gate
from storefront.model.db import Base, CartItem, Customer, Product
from storefront.orders import OrderCoordinator, ShippingAddress
from storefront.pricing import CartSnapshot, LineItem
from storefront.reconcile import ReconciliationService


PRODUCTS = [
    {"id": "p1", "name": "Regular Ticket", "price": 1000, "stock": 10},
    {"id": "p2", "name": "Event T-Shirt", "price": 500, "stock": 10},
    {"id": "p3", "name": "VIP Ticket", "price": 7000, "stock": 1},
]

CUSTOMERS = [
    {"id": "alice", "name": "Alice", "email": "alice@example.com",
     "phone": "0712345678"},
    {"id": "bob", "name": "Bob", "email": "bob@example.com",
     "phone": "0722000000"},
]

CART = [
    {"owner_id": "alice", "product_id": "p1", "quantity": 2},
    {"owner_id": "alice", "product_id": "p2", "quantity": 1, "variation": "L"},
    {"owner_id": "bob", "product_id": "p3", "quantity": 1},
]


async def seed(database_url: str) -> None:
    db = make_database(database_url)
    async with db.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with db.sessions() as s:
        async with s.begin():
            s.add_all([Product(**p) for p in PRODUCTS])
            s.add_all([Customer(**c) for c in CUSTOMERS])
            s.add_all([CartItem(**c) for c in CART])
    await db.dispose()


def two_ticket_cart() -> CartSnapshot:
    # 2 x 1000 + 1 x 500 = 2500, tax 16% = 400, total 2900
    return CartSnapshot.of([
        LineItem("p1", unit_price=1000, quantity=2),
        LineItem("p2", unit_price=500, quantity=1, variation="L"),
    ])


def an_address(**overrides) -> ShippingAddress:
    fields = dict(
        recipient="Alice Wanjiku",
        phone="+254 712 345 678",
        street="Moi Avenue 12",
        city="Nairobi",
        county="Nairobi",
        country="Kenya",
    )
    fields.update(overrides)
    return ShippingAddress(**fields)


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: List[Tuple[str, str]] = []

    async def send_order_confirmation(self, order, recipient) -> None:
        self.sent.append((order.external_reference, recipient.email))


class FailingNotifier:
    def __init__(self) -> None:
        self.calls = 0

    async def send_order_confirmation(self, order, recipient) -> None:
        self.calls += 1
        raise ConnectionRefusedError("smtp down")


class FailingCarts:
    def __init__(self) -> None:
        self.calls = 0

    async def clear(self, owner_id) -> None:
        self.calls += 1
        raise ConnectionResetError("cart store down")


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'shop.db'}"


@pytest.fixture
def settings(database_url) -> Settings:
    return Settings(
        database_url=database_url,
        tax_rate=Decimal("0.16"),
        payment_channel_id="1234",
        payment_url="https://pay.example.com/lipwa/1234",
        payment_script_url="https://pay.example.com/button_sdk.js",
        payment_script_timeout=0.5,
        webhook_secret="test-secret",
        public_base_url="https://shop.example.com",
    )


@pytest_asyncio.fixture
async def db(database_url):
    await seed(database_url)
    database = make_database(database_url)
    yield database
    await database.dispose()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def coordinator(db, notifier, settings) -> OrderCoordinator:
    return OrderCoordinator(
        db=db,
        catalog=SqlCatalog(db),
        directory=SqlOwnerDirectory(db),
        notifier=notifier,
        gate=new_gate("sql", db=db),
        settings=settings,
        notify_in_background=False,
    )


@pytest.fixture
def reconciler(db) -> ReconciliationService:
    return ReconciliationService(db, carts=SqlCartService(db))


@pytest.fixture
def seeded_database_url(database_url) -> str:
    asyncio.run(seed(database_url))
    return database_url
