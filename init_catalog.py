import asyncio
import os
import sys

from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.dialects.postgresql import insert as pg_insert

from storefront.infra.sql import make_database
from storefront.model.db import Product, Customer
from storefront.model.order import Base

# Demo catalog, prices in cents
PRODUCTS = [
    {"id": "ticket-regular", "name": "Regular Ticket", "price": 100_000,
     "stock": 5_000},
    {"id": "ticket-vip", "name": "VIP Ticket", "price": 250_000,
     "stock": 500},
    {"id": "tshirt", "name": "Event T-Shirt", "price": 150_000,
     "stock": 200},
]

CUSTOMERS = [
    {"id": "demo-user", "name": "Demo User", "email": "demo@example.com",
     "phone": "0712345678"},
]


async def seed(database_url: str) -> None:
    db = make_database(database_url)
    insert = pg_insert if db.dialect == "postgresql" else sqlite_insert
    async with db.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await conn.execute(
            insert(Product).on_conflict_do_nothing(index_elements=["id"]),
            PRODUCTS,
        )
        print('✅ products seeded')
        await conn.execute(
            insert(Customer).on_conflict_do_nothing(index_elements=["id"]),
            CUSTOMERS,
        )
        print('✅ customers seeded')
    await db.dispose()


if __name__ == '__main__':
    url = os.environ.get("DATABASE_URL")
    if url is None:
        print("NEED DATABASE_URL!")
        sys.exit(1)
    asyncio.run(seed(url))
