from typing import Optional
import redis.asyncio as redis

from ...infra.sql import Database
from ._sql import CheckoutGate as SqlCheckoutGate
from ._redis import CheckoutGate as RedisCheckoutGate

BACKENDS = ("sql", "redis")


# Factory keeps server.py simple and constructor-agnostic:
def new_gate(backend: str, *, db: Optional[Database] = None,
             r: Optional[redis.Redis] = None,
             ttl_seconds: int = 24 * 3600):
    if backend == "sql":
        if db is None:
            raise RuntimeError("CheckoutGate(sql) requires db=Database")
        return SqlCheckoutGate(db=db)
    if backend == "redis":
        if r is None:
            raise RuntimeError("CheckoutGate(redis) requires r=redis.Redis")
        return RedisCheckoutGate(r=r, ttl_seconds=ttl_seconds)
    raise RuntimeError(
        f"unknown checkout gate backend {backend!r}, expected one of "
        f"{BACKENDS}"
    )


__all__ = ["SqlCheckoutGate", "RedisCheckoutGate", "new_gate", "BACKENDS"]
