"""
Checkout: price pending reservations and ask the gateway for a payment page.

Uses the same resolver, rates and fee engine as settlement.
"""
from __future__ import annotations

from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from .errors import InvalidReservation
from .fees import FEE_BEARER_ORGANIZER, to_minor_units
from .gateway import InitializeRequest
from .helpers import is_valid_email, new_payment_reference
from .model.db import R_PENDING
from .model.reservations import load_resolved
from .model.settings import load_fee_defaults
from .quote import quote_order
from .rates import FeeDefaults


async def prepare_checkout(
    db: AsyncSession,
    reservation_ids: Sequence[str],
    email: str,
    callback_url: Optional[str] = None,
    fee_fallback: Optional[FeeDefaults] = None,
    extra_metadata: Optional[dict] = None,
) -> InitializeRequest:
    if not is_valid_email(email):
        raise InvalidReservation("a valid email is required")
    if not reservation_ids:
        raise InvalidReservation("no reservations to check out")

    ids = list(dict.fromkeys(reservation_ids))
    resolved = await load_resolved(db, ids)
    if len(resolved) != len(ids):
        unknown = set(ids) - {r.id for r in resolved}
        raise InvalidReservation(
            f"unknown reservations: {', '.join(sorted(unknown))}"
        )
    not_pending = [
        r.id for r in resolved if r.reservation.status != R_PENDING
    ]
    if not_pending:
        raise InvalidReservation(
            f"reservations not pending: {', '.join(not_pending)}"
        )
    if len({r.tier.currency for r in resolved}) > 1:
        raise InvalidReservation("all tickets must be in one currency")
    if len({r.event.organizer_id for r in resolved}) > 1:
        raise InvalidReservation("all tickets must be for one organizer")

    defaults = await load_fee_defaults(db, fee_fallback)
    order = quote_order(resolved, defaults)

    metadata = dict(extra_metadata or {})
    metadata["reservation_ids"] = [r.id for r in resolved]

    organizer = resolved[0].organizer
    subaccount = organizer.subaccount_code
    return InitializeRequest(
        reference=new_payment_reference(),
        email=email.strip(),
        amount=to_minor_units(order.total.customer_total),
        currency=order.currency,
        callback_url=callback_url,
        metadata=metadata,
        subaccount=subaccount,
        # the platform's cut; the gateway routes the rest to the organizer
        transaction_charge=(
            to_minor_units(order.total.platform_fee) if subaccount else None
        ),
        bearer=(
            ("subaccount" if order.fee_bearer == FEE_BEARER_ORGANIZER
             else "account") if subaccount else None
        ),
    )
