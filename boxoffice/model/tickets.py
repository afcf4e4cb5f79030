# model/tickets.py
"""
Per-reservation ticket issuance.

One database transaction per reservation: existence check, claim of the
reservation, ticket inserts and counter increments commit together or not
at all. A concurrent settlement of the same reservation either loses the
claim or hits the (reservation_id, seq) unique constraint; both lead back
to the winner's tickets.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncContextManager, Callable, List, Optional, Tuple

from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import InvalidReservation
from ..helpers import new_id, new_qr_payload, new_ticket_code, now_ts
from ..logger_config import logger
from . import inventory
from .db import Ticket, R_CONFIRMED, T_VALID
from .records import ResolvedReservation

Gated = Callable[[], AsyncContextManager[None]]


@dataclass(frozen=True)
class TicketView:
    id: str
    seq: int
    tier_id: str
    qr_payload: str
    order_reference: str


@dataclass(frozen=True)
class Issuance:
    reservation_id: str
    newly_issued: bool
    tickets: Tuple[TicketView, ...]


class ClaimLost(Exception):
    """Another settlement confirmed the reservation first."""


def ticket_view(t: Ticket) -> TicketView:
    return TicketView(
        id=t.id,
        seq=t.seq,
        tier_id=t.tier_id,
        qr_payload=t.qr_payload,
        order_reference=t.order_reference,
    )


async def existing_tickets(
    db: AsyncSession, reservation_id: str
) -> List[Ticket]:
    return list((await db.execute(
        select(Ticket)
        .where(Ticket.reservation_id == reservation_id)
        .order_by(Ticket.seq)
    )).scalars())


SQL_CLAIM = """
    UPDATE reservations
    SET status = 'confirmed', payment_reference = :ref,
        confirmed_at = :now
    WHERE id = :id AND status = 'pending'
"""


async def claim_reservation(
    db: AsyncSession,
    reservation_id: str,
    reference: str,
    use_returning: Optional[bool] = None,
) -> None:
    """pending -> confirmed, or ClaimLost / InvalidReservation."""
    if use_returning is None:
        use_returning = inventory.supports_update_returning(db)
    params = {"id": reservation_id, "ref": reference, "now": now_ts()}
    if use_returning:
        row = (await db.execute(
            text(SQL_CLAIM + " RETURNING id"), params
        )).first()
        claimed = row is not None
    else:
        claimed = (await db.execute(text(SQL_CLAIM), params)).rowcount == 1
    if claimed:
        return
    status = (await db.execute(
        text("SELECT status FROM reservations WHERE id = :id"),
        {"id": reservation_id},
    )).scalar()
    if status == R_CONFIRMED:
        raise ClaimLost()
    raise InvalidReservation(
        f"reservation {reservation_id} is {status}, cannot issue tickets"
    )


async def issue_tickets(
    db: AsyncSession,
    gated: Gated,
    resolved: ResolvedReservation,
    reference: str,
    addon_lines: Tuple[Tuple[str, int], ...] = (),
) -> Issuance:
    res = resolved.reservation
    try:
        async with gated():
            async with db.begin():
                found = await existing_tickets(db, res.id)
                if found:
                    return Issuance(
                        res.id, False, tuple(map(ticket_view, found))
                    )

                await claim_reservation(db, res.id, reference)

                now = now_ts()
                rows = [
                    Ticket(
                        id=new_id(),
                        reservation_id=res.id,
                        seq=seq,
                        tier_id=resolved.tier.id,
                        event_id=resolved.event.id,
                        user_id=res.user_id,
                        qr_payload=new_qr_payload(),
                        order_reference=new_ticket_code(),
                        payment_reference=reference,
                        status=T_VALID,
                        created_at=now,
                    )
                    for seq in range(1, res.quantity + 1)
                ]
                db.add_all(rows)
                await db.flush()

                await inventory.increment(
                    db, "ticket_tiers", resolved.tier.id, res.quantity
                )
                for addon_id, qty in addon_lines:
                    await inventory.increment(db, "add_ons", addon_id, qty)
                if resolved.discount is not None:
                    await inventory.increment(
                        db, "discounts", resolved.discount.id, 1
                    )
        logger.info(
            f"issued {len(rows)} ticket(s) for reservation {res.id}"
        )
        return Issuance(res.id, True, tuple(map(ticket_view, rows)))
    except (IntegrityError, ClaimLost):
        # a concurrent settlement got there first; use its tickets
        await db.rollback()

    async with gated():
        async with db.begin():
            found = await existing_tickets(db, res.id)
    if not found:
        raise InvalidReservation(
            f"reservation {res.id} is confirmed but has no tickets"
        )
    return Issuance(res.id, False, tuple(map(ticket_view, found)))
