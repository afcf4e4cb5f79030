# model/inventory.py
"""
Sold counters for ticket tiers, add-ons and discount usage.

Increments happen in the store, never as read-modify-write in Python, so
two settlements selling the last unit of a tier cannot both succeed.
"""
from __future__ import annotations

from typing import Dict, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import InventoryContention, InventoryExhausted, InvalidReservation
from ..logger_config import logger

# table -> (counter column, cap column). Cap NULL means unlimited.
COUNTERS: Dict[str, Tuple[str, str]] = {
    "ticket_tiers": ("quantity_sold", "total_quantity"),
    "add_ons": ("quantity_sold", "total_quantity"),
    "discounts": ("used_count", "usage_limit"),
}

MAX_CAS_ATTEMPTS = 8


def supports_update_returning(db: AsyncSession) -> bool:
    return bool(getattr(db.get_bind().dialect, "update_returning", False))


async def _exists(db: AsyncSession, table: str, row_id: str) -> bool:
    row = (await db.execute(
        text(f"SELECT 1 FROM {table} WHERE id = :id"), {"id": row_id}
    )).first()
    return row is not None


async def _increment_returning(
    db: AsyncSession, table: str, row_id: str, n: int
) -> int:
    col, cap = COUNTERS[table]
    row = (await db.execute(text(f"""
        UPDATE {table}
        SET {col} = {col} + :n
        WHERE id = :id
          AND ({cap} IS NULL OR {col} + :n <= {cap})
        RETURNING {col}
    """), {"id": row_id, "n": n})).first()
    if row is not None:
        return int(row[0])
    if not await _exists(db, table, row_id):
        raise InvalidReservation(f"{table} {row_id} does not exist")
    raise InventoryExhausted(table, row_id, n)


async def _increment_cas(
    db: AsyncSession, table: str, row_id: str, n: int
) -> int:
    # Compare-and-swap for stores without UPDATE ... RETURNING. Under
    # snapshot isolation a lost race cannot be retried inside the same
    # transaction, so contention surfaces as InventoryContention and the
    # caller's retry of the whole settlement resolves it.
    col, cap = COUNTERS[table]
    for attempt in range(MAX_CAS_ATTEMPTS):
        row = (await db.execute(
            text(f"SELECT {col}, {cap} FROM {table} WHERE id = :id"),
            {"id": row_id},
        )).first()
        if row is None:
            raise InvalidReservation(f"{table} {row_id} does not exist")
        current = int(row[0] or 0)
        limit = row[1]
        if limit is not None and current + n > int(limit):
            raise InventoryExhausted(table, row_id, n)
        res = await db.execute(text(f"""
            UPDATE {table} SET {col} = :new
            WHERE id = :id AND {col} = :old
        """), {"id": row_id, "new": current + n, "old": current})
        if res.rowcount == 1:
            return current + n
        logger.debug(f"{table} {row_id}: CAS lost on attempt {attempt + 1}")
    raise InventoryContention(table, row_id)


async def increment(
    db: AsyncSession,
    table: str,
    row_id: str,
    n: int = 1,
    use_returning: Optional[bool] = None,
) -> int:
    """Add `n` to the counter of `table` row `row_id`; return the new value.

    Runs inside the caller's transaction.
    """
    if table not in COUNTERS:
        raise ValueError(f"no counter on table {table!r}")
    if n <= 0:
        raise ValueError("increment must be positive")
    if use_returning is None:
        use_returning = supports_update_returning(db)
    if use_returning:
        return await _increment_returning(db, table, row_id, n)
    return await _increment_cas(db, table, row_id, n)


async def tier_inventory(db: AsyncSession, tier_id: str) -> Optional[dict]:
    row = (await db.execute(text("""
        SELECT id, name, total_quantity, quantity_sold
        FROM ticket_tiers WHERE id = :id
    """), {"id": tier_id})).mappings().first()
    if row is None:
        return None
    total = int(row["total_quantity"])
    sold = int(row["quantity_sold"] or 0)
    return {
        "tier_id": row["id"],
        "name": row["name"],
        "total": total,
        "sold": sold,
        "available": total - sold,
        "sold_out": total - sold <= 0,
    }
