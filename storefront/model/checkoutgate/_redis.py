from __future__ import annotations
from typing import Optional
import redis.asyncio as redis


# ---- keys
def k_checkout(session_id: str) -> str: return f"checkout:{session_id}"


class CheckoutGate:
    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def claim(self, session_id: str, reference: str) -> str:
        # NX gate: first reference for the session sticks until the TTL runs
        # out
        pipe = self.r.pipeline(transaction=True)
        pipe.set(k_checkout(session_id), reference, nx=True, ex=self.ttl)
        pipe.get(k_checkout(session_id))
        _, stored = await pipe.execute()
        if isinstance(stored, bytes):
            stored = stored.decode()
        return stored or reference

    async def lookup(self, session_id: str) -> Optional[str]:
        stored = await self.r.get(k_checkout(session_id))
        if isinstance(stored, bytes):
            stored = stored.decode()
        return stored

