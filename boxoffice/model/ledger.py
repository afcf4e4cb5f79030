# model/ledger.py
"""
The financial record of a settled payment: one `transactions` row per
payment reference, first writer wins.
"""
from __future__ import annotations

from typing import Callable, AsyncContextManager, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..fees import from_minor_units
from ..helpers import now_ts, to_iso
from ..logger_config import logger
from .db import Ticket, Transaction

Gated = Callable[[], AsyncContextManager[None]]


async def record_transaction(
    db: AsyncSession,
    gated: Gated,
    *,
    reference: str,
    gateway_txn,
    order,
    reservation_ids: List[str],
) -> bool:
    """
    Insert the ledger row. Returns False if the reference was already
    recorded by an earlier or concurrent settlement.
    """
    total = order.total
    try:
        async with gated():
            async with db.begin():
                db.add(Transaction(
                    reference=reference,
                    amount=from_minor_units(gateway_txn.amount),
                    currency=(gateway_txn.currency or order.currency),
                    channel=gateway_txn.channel,
                    status=gateway_txn.status,
                    gateway_paid_at=gateway_txn.paid_at,
                    customer_email=gateway_txn.customer_email,
                    subtotal=total.subtotal,
                    platform_fee=total.platform_fee,
                    processor_fee=total.processor_fee,
                    client_fees=total.client_fees,
                    customer_total=total.customer_total,
                    organizer_payout=total.organizer_payout,
                    applied_platform_rate=order.rates.platform_fee_percent,
                    applied_processor_rate=order.rates.processor_fee_percent,
                    fee_bearer=order.fee_bearer,
                    organizer_id=order.organizer_id,
                    reservation_ids=list(reservation_ids),
                    gateway_metadata=dict(gateway_txn.metadata or {}),
                    created_at=now_ts(),
                ))
    except IntegrityError:
        # replay racing (or following) the first write
        await db.rollback()
        logger.info(f"transaction {reference} already recorded")
        return False
    return True


async def get_transaction(
    db: AsyncSession, reference: str
) -> Optional[Transaction]:
    return (await db.execute(
        select(Transaction).where(Transaction.reference == reference)
    )).scalars().first()


def transaction_as_dict(t: Transaction) -> dict:
    # amounts as strings: decimals must survive JSON untouched
    return {
        "reference": t.reference,
        "amount": str(t.amount),
        "currency": t.currency,
        "channel": t.channel,
        "status": t.status,
        "paid_at": t.gateway_paid_at,
        "subtotal": str(t.subtotal),
        "platform_fee": str(t.platform_fee),
        "processor_fee": str(t.processor_fee),
        "client_fees": str(t.client_fees),
        "customer_total": str(t.customer_total),
        "organizer_payout": str(t.organizer_payout),
        "applied_platform_rate": str(t.applied_platform_rate),
        "applied_processor_rate": str(t.applied_processor_rate),
        "fee_bearer": t.fee_bearer,
        "reservation_ids": list(t.reservation_ids or []),
        "created_at": to_iso(t.created_at),
    }


async def tickets_for_reference(
    db: AsyncSession, reference: str
) -> List[Ticket]:
    return list((await db.execute(
        select(Ticket)
        .where(Ticket.payment_reference == reference)
        .order_by(Ticket.reservation_id, Ticket.seq)
    )).scalars())
