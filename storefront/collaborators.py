"""
Contracts the checkout core consumes from the rest of the storefront, plus
the SQL-backed implementations the server wires in.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Protocol, TYPE_CHECKING

from sqlalchemy import delete, select

from .infra.sql import Database
from .model.db import CartItem, Customer, Product

if TYPE_CHECKING:
    from .model.order import Order


@dataclass(frozen=True)
class OwnerProfile:
    owner_id: str
    email: Optional[str]
    name: Optional[str]
    phone: Optional[str]


class Catalog(Protocol):
    async def get_price(self, product_id: str) -> Optional[int]: ...

    async def get_stock(
        self, product_id: str, variation: Optional[str] = None
    ) -> int: ...


class OwnerDirectory(Protocol):
    async def get_owner(self, owner_id: str) -> Optional[OwnerProfile]: ...


class Notifier(Protocol):
    async def send_order_confirmation(
        self, order: "Order", recipient: OwnerProfile
    ) -> None: ...


class CartService(Protocol):
    async def clear(self, owner_id: str) -> None: ...


# ----------------------------
# SQL implementations
# ----------------------------
class SqlCatalog:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def get_price(self, product_id: str) -> Optional[int]:
        async with self.db.gated():
            async with self.db.sessions() as s:
                row = (await s.execute(
                    select(Product.price).where(Product.id == product_id)
                )).first()
        return int(row[0]) if row else None

    async def get_stock(
        self, product_id: str, variation: Optional[str] = None
    ) -> int:
        # stock is tracked per product; variations share it
        async with self.db.gated():
            async with self.db.sessions() as s:
                row = (await s.execute(
                    select(Product.stock).where(Product.id == product_id)
                )).first()
        return int(row[0]) if row else 0


class SqlOwnerDirectory:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def get_owner(self, owner_id: str) -> Optional[OwnerProfile]:
        async with self.db.gated():
            async with self.db.sessions() as s:
                c = (await s.execute(
                    select(Customer).where(Customer.id == owner_id)
                )).scalar_one_or_none()
        if c is None:
            return None
        return OwnerProfile(
            owner_id=c.id, email=c.email, name=c.name, phone=c.phone
        )


class SqlCartService:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def clear(self, owner_id: str) -> None:
        async with self.db.gated():
            async with self.db.sessions() as s:
                async with s.begin():
                    await s.execute(
                        delete(CartItem).where(CartItem.owner_id == owner_id)
                    )
