"""
Price a resolved reservation: discount, add-ons, effective rates, fees.

Settlement and checkout both quote through here so the amount the customer
is asked to pay and the amount recorded at settlement agree.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from .fees import FeeBreakdown, FeeRates, apply_discount, compute_fees, ZERO
from .logger_config import logger
from .model.records import ResolvedReservation
from .rates import FeeDefaults, resolve_rates


@dataclass(frozen=True)
class Quote:
    reservation_id: str
    ticket_subtotal: Decimal
    addon_subtotal: Decimal
    # (add_on_id, quantity) actually charged
    addon_lines: Tuple[Tuple[str, int], ...]
    fee_bearer: str
    rates: FeeRates
    fees: FeeBreakdown


@dataclass(frozen=True)
class OrderQuote:
    quotes: Tuple[Quote, ...]
    total: FeeBreakdown
    currency: str
    # rates/bearer recorded on the transaction (taken from the first line)
    rates: FeeRates
    fee_bearer: str
    organizer_id: str


def quote_reservation(
    r: ResolvedReservation, defaults: Optional[FeeDefaults]
) -> Quote:
    res = r.reservation
    gross = r.tier.price * res.quantity
    if r.discount is not None:
        tickets = apply_discount(gross, r.discount.type, r.discount.value)
    else:
        tickets = gross

    addon_total = ZERO
    lines: List[Tuple[str, int]] = []
    for addon_id, qty in res.addons:
        addon = r.addon_prices.get(addon_id)
        if addon is None:
            logger.warning(
                f"reservation {res.id}: add-on {addon_id} is not sold for "
                f"event {r.event.id}, not charged"
            )
            continue
        if qty <= 0:
            logger.warning(
                f"reservation {res.id}: add-on {addon_id} has quantity "
                f"{qty}, not charged"
            )
            continue
        addon_total += addon.price * qty
        lines.append((addon_id, qty))

    rates = resolve_rates(
        defaults,
        r.event.platform_fee_percent,
        r.organizer.platform_fee_percent,
    )
    return Quote(
        reservation_id=res.id,
        ticket_subtotal=tickets,
        addon_subtotal=addon_total,
        addon_lines=tuple(lines),
        fee_bearer=r.event.fee_bearer,
        rates=rates,
        fees=compute_fees(tickets, addon_total, r.event.fee_bearer, rates),
    )


def quote_order(
    resolved: Sequence[ResolvedReservation], defaults: Optional[FeeDefaults]
) -> OrderQuote:
    if not resolved:
        raise ValueError("nothing to quote")
    quotes = tuple(quote_reservation(r, defaults) for r in resolved)
    total = FeeBreakdown.zero()
    for q in quotes:
        total = total + q.fees

    first = quotes[0]
    if any(q.rates != first.rates or q.fee_bearer != first.fee_bearer
           for q in quotes[1:]):
        logger.warning(
            "reservations in one payment resolve to different fee policies; "
            "recording the first reservation's rates"
        )
    currencies = {r.tier.currency for r in resolved}
    if len(currencies) > 1:
        logger.warning(f"mixed currencies in one payment: {sorted(currencies)}")
    return OrderQuote(
        quotes=quotes,
        total=total,
        currency=resolved[0].tier.currency,
        rates=first.rates,
        fee_bearer=first.fee_bearer,
        organizer_id=resolved[0].organizer.id,
    )
