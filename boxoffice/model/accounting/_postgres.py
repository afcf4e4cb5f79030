# model/accounting/_postgres.py
"""
PostgreSQL accounting backend mirroring the TigerBeetle one:
- one row per leg in ledger_entries, keyed by (reference, leg)
- all legs of a settlement commit together
- replays are no-ops
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, AsyncContextManager, Dict, Iterable, List

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, async_sessionmaker

from ...helpers import now_ts
from ...logger_config import logger
from ._legs import Leg

Gated = Callable[[], AsyncContextManager[None]]


@dataclass
class GatedSessions:
    sessions: async_sessionmaker
    gated: Gated


# ------------------------------------------------------------------------------
# DDL (idempotent)
# ------------------------------------------------------------------------------
SQL_CREATE_LEDGER_ENTRIES = r"""
-- ledger_entries: immutable debit/credit pairs, amounts in minor units
CREATE TABLE IF NOT EXISTS ledger_entries (
    id              TEXT PRIMARY KEY,
    reference       TEXT NOT NULL,
    leg             TEXT NOT NULL,
    debit_account   TEXT NOT NULL,
    credit_account  TEXT NOT NULL,
    amount          BIGINT NOT NULL CHECK (amount > 0),
    currency        TEXT NOT NULL,
    created_at      DOUBLE PRECISION NOT NULL,
    UNIQUE (reference, leg)
);
"""

SQL_CREATE_LEDGER_ACCOUNT_IDX = r"""
CREATE INDEX IF NOT EXISTS ledger_entries_currency_idx
    ON ledger_entries(currency);
"""


async def ensure_schema(conn: AsyncConnection) -> None:
    await conn.execute(text(SQL_CREATE_LEDGER_ENTRIES))
    await conn.execute(text(SQL_CREATE_LEDGER_ACCOUNT_IDX))


async def create_accounts(
    conn: AsyncConnection, currencies: Iterable[str] = ()
) -> bool:
    """
    For parity with TB: accounts are implicit in ledger_entries, so this
    only ensures the schema.
    """
    await ensure_schema(conn)
    logger.info("ledger_entries ready")
    return True


async def post_settlement(
    ac: GatedSessions, reference: str, legs: List[Leg]
) -> int:
    """Insert all legs in one transaction; returns how many were new."""
    if not legs:
        return 0
    posted = 0
    now = now_ts()
    async with ac.gated():
        async with ac.sessions() as db:
            async with db.begin():
                for leg in legs:
                    row = (await db.execute(text("""
                        INSERT INTO ledger_entries(
                            id, reference, leg, debit_account,
                            credit_account, amount, currency, created_at)
                        VALUES (:id, :ref, :leg, :dr, :cr, :amt, :cur, :c)
                        ON CONFLICT (reference, leg) DO NOTHING
                        RETURNING id
                    """), {
                        "id": f"{reference}:{leg.name}",
                        "ref": reference,
                        "leg": leg.name,
                        "dr": leg.debit,
                        "cr": leg.credit,
                        "amt": leg.amount,
                        "cur": leg.currency,
                        "c": now,
                    })).first()
                    if row is not None:
                        posted += 1
    return posted


async def balances(ac: GatedSessions, currency: str) -> Dict[str, int]:
    """Net balance (credits - debits) per account, minor units."""
    out: Dict[str, int] = {}
    async with ac.gated():
        async with ac.sessions() as db:
            async with db.begin():
                rows = (await db.execute(text("""
                    SELECT account, SUM(amount) AS total FROM (
                        SELECT credit_account AS account, amount
                        FROM ledger_entries WHERE currency = :cur
                        UNION ALL
                        SELECT debit_account AS account, -amount
                        FROM ledger_entries WHERE currency = :cur
                    ) AS legs
                    GROUP BY account
                """), {"cur": currency.upper()})).all()
    for account, total in rows:
        out[account] = int(total)
    return out
