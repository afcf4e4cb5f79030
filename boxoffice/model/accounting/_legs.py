# model/accounting/_legs.py
"""
Double-entry view of one settled payment.

Money captured by the gateway lands in a clearing account and is split from
there. The capture leg is what the gateway actually charged; the organizer
payout takes whatever the separately rounded fee legs leave over, so clearing
always nets to zero per reference.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List

from ...fees import to_minor_units
from ...logger_config import logger

GATEWAY = "gateway"
CLEARING = "clearing"
PLATFORM = "platform"
PROCESSOR = "processor"


def organizer_account(organizer_id: str) -> str:
    return f"organizer:{organizer_id}"


@dataclass(frozen=True)
class Leg:
    name: str
    debit: str
    credit: str
    amount: int  # minor units
    currency: str


def settlement_legs(txn) -> List[Leg]:
    """Legs for a stored `Transaction`; zero-amount legs are left out."""
    currency = txn.currency.upper()
    organizer = organizer_account(txn.organizer_id or "unknown")
    capture = to_minor_units(txn.amount)
    fees = [
        Leg("platform_fee", CLEARING, PLATFORM,
            to_minor_units(txn.platform_fee), currency),
        Leg("processor_fee", CLEARING, PROCESSOR,
            to_minor_units(txn.processor_fee), currency),
    ]
    fees = [leg for leg in fees if leg.amount > 0]
    payout = capture - sum(leg.amount for leg in fees)
    if payout < 0:
        # captured less than the fees: nothing is left for the organizer
        logger.warning(
            f"captured {capture} does not cover fees for "
            f"organizer {txn.organizer_id}"
        )
        payout = 0
        capture = sum(leg.amount for leg in fees)
    if capture <= 0:
        return []
    split = fees
    if payout > 0:
        split = fees + [Leg(
            f"payout:{txn.organizer_id or 'unknown'}", CLEARING, organizer,
            payout, currency,
        )]
    return [Leg("capture", GATEWAY, CLEARING, capture, currency)] + split
