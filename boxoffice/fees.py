"""
Fee policy engine.

Pure functions: no I/O, no rounding. All money is `Decimal` in major
currency units; conversion to minor units happens only at the gateway and
accounting boundaries via `to_minor_units`.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

Number = Union[Decimal, int, float, str]

FEE_BEARER_CUSTOMER = "customer"
FEE_BEARER_ORGANIZER = "organizer"
FEE_BEARERS = (FEE_BEARER_CUSTOMER, FEE_BEARER_ORGANIZER)

DISCOUNT_PERCENTAGE = "percentage"
DISCOUNT_FIXED = "fixed"

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def to_decimal(value: Optional[Number]) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    # go through str so 0.1 stays 0.1 instead of its binary expansion
    return Decimal(str(value))


@dataclass(frozen=True)
class FeeRates:
    platform_fee_percent: Decimal
    processor_fee_percent: Decimal


@dataclass(frozen=True)
class FeeBreakdown:
    subtotal: Decimal
    platform_fee: Decimal
    processor_fee: Decimal
    client_fees: Decimal
    customer_total: Decimal
    organizer_payout: Decimal

    def __add__(self, other: "FeeBreakdown") -> "FeeBreakdown":
        return FeeBreakdown(
            subtotal=self.subtotal + other.subtotal,
            platform_fee=self.platform_fee + other.platform_fee,
            processor_fee=self.processor_fee + other.processor_fee,
            client_fees=self.client_fees + other.client_fees,
            customer_total=self.customer_total + other.customer_total,
            organizer_payout=self.organizer_payout + other.organizer_payout,
        )

    @classmethod
    def zero(cls) -> "FeeBreakdown":
        return cls(ZERO, ZERO, ZERO, ZERO, ZERO, ZERO)

    def as_dict(self) -> dict:
        return {
            "subtotal": str(self.subtotal),
            "platform_fee": str(self.platform_fee),
            "processor_fee": str(self.processor_fee),
            "client_fees": str(self.client_fees),
            "customer_total": str(self.customer_total),
            "organizer_payout": str(self.organizer_payout),
        }


def compute_fees(
    ticket_subtotal: Number,
    addon_subtotal: Number,
    fee_bearer: str,
    rates: FeeRates,
) -> FeeBreakdown:
    """
    Split one order's money between platform, processor and organizer.

    - platform fee applies to ticket revenue only, add-ons are exempt
    - processor fee applies to everything that moves through the gateway
    - with fee_bearer="customer" both fees are added on top of the price
    - with fee_bearer="organizer" the customer pays the platform fee and the
      processor fee comes out of the organizer's payout
    """
    tickets = to_decimal(ticket_subtotal)
    addons = to_decimal(addon_subtotal)
    if tickets < 0 or addons < 0:
        raise ValueError("subtotals must not be negative")
    if fee_bearer not in FEE_BEARERS:
        raise ValueError(f"unknown fee bearer: {fee_bearer!r}")

    subtotal = tickets + addons
    platform_fee = tickets * rates.platform_fee_percent
    processor_fee = subtotal * rates.processor_fee_percent

    if fee_bearer == FEE_BEARER_CUSTOMER:
        client_fees = platform_fee + processor_fee
        organizer_payout = subtotal
    else:
        client_fees = platform_fee
        organizer_payout = subtotal - processor_fee

    return FeeBreakdown(
        subtotal=subtotal,
        platform_fee=platform_fee,
        processor_fee=processor_fee,
        client_fees=client_fees,
        customer_total=subtotal + client_fees,
        organizer_payout=organizer_payout,
    )


def apply_discount(
    ticket_subtotal: Number, discount_type: Optional[str], value: Number
) -> Decimal:
    """Discounted ticket subtotal, never below zero.

    Percentage discounts are whole percents (10 means 10% off).
    """
    subtotal = to_decimal(ticket_subtotal)
    if discount_type is None:
        return subtotal
    amount = to_decimal(value)
    if discount_type == DISCOUNT_PERCENTAGE:
        discounted = subtotal * (1 - amount / HUNDRED)
    elif discount_type == DISCOUNT_FIXED:
        discounted = subtotal - amount
    else:
        raise ValueError(f"unknown discount type: {discount_type!r}")
    return max(ZERO, discounted)


def to_minor_units(amount: Number) -> int:
    return int(
        (to_decimal(amount) * HUNDRED).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
    )


def from_minor_units(amount: int) -> Decimal:
    return Decimal(int(amount)) / HUNDRED
