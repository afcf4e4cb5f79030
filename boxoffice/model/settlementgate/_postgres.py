from __future__ import annotations
from typing import Callable, AsyncContextManager
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncSession, AsyncConnection, async_sessionmaker
)

from ...helpers import now_ts


# ------------------------------------------------------------------------------
# DDL (idempotent)
# ------------------------------------------------------------------------------
SQL_CREATE_SETTLED_REFERENCES = r"""
-- one row per payment reference whose settlement completed in full
CREATE TABLE IF NOT EXISTS settled_references (
  reference   TEXT PRIMARY KEY,
  created_at  DOUBLE PRECISION NOT NULL
);
"""


async def create_schema(db_or_conn: AsyncSession | AsyncConnection):
    await db_or_conn.execute(text(SQL_CREATE_SETTLED_REFERENCES))


class SettlementGate:
    def __init__(
        self, *, sessions: async_sessionmaker,
        gated: Callable[[], AsyncContextManager[None]]
    ) -> None:
        self.sessions = sessions
        self.gated = gated

    async def is_settled(self, reference: str) -> bool:
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    row = (await db.execute(text("""
                        SELECT 1 FROM settled_references WHERE reference = :r
                    """), {"r": reference})).first()
        return row is not None

    async def mark_settled(self, reference: str) -> bool:
        """True if this call set the marker, False if it already existed."""
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    row = (await db.execute(text("""
                        INSERT INTO settled_references(reference, created_at)
                        VALUES (:r, :c)
                        ON CONFLICT (reference) DO NOTHING
                        RETURNING reference
                    """), {"r": reference, "c": now_ts()})).first()
        return row is not None
