from __future__ import annotations
from typing import Optional
from sqlalchemy import text

from ...infra.sql import Database
from ...helpers import now_ts


class CheckoutGate:
    """
    One external reference per checkout session, kept in the
    `checkout_sessions` table.

    The first caller's reference wins; every later claim for the same
    session gets that reference back.
    """

    def __init__(self, *, db: Database) -> None:
        self.db = db

    async def claim(self, session_id: str, reference: str) -> str:
        async with self.db.gated():
            async with self.db.sessions() as s:
                async with s.begin():
                    await s.execute(text("""
                      INSERT INTO checkout_sessions(
                        session_id, external_reference, created_at
                      ) VALUES (:sid, :ref, :ts)
                      ON CONFLICT (session_id) DO NOTHING
                    """), {"sid": session_id, "ref": reference,
                           "ts": now_ts()})
                    row = (await s.execute(text("""
                      SELECT external_reference FROM checkout_sessions
                      WHERE session_id = :sid
                    """), {"sid": session_id})).first()
        return row[0]

    async def lookup(self, session_id: str) -> Optional[str]:
        async with self.db.gated():
            async with self.db.sessions() as s:
                row = (await s.execute(text("""
                  SELECT external_reference FROM checkout_sessions
                  WHERE session_id = :sid
                """), {"sid": session_id})).first()
        return row[0] if row else None

