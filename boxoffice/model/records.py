"""
Typed, immutable views of joined rows.

The resolver converts ORM rows into these at the data-access boundary so
the fee engine and the orchestrator never see a missing tier, event or
organizer.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional, Tuple


@dataclass(frozen=True)
class OrganizerRecord:
    id: str
    name: str
    platform_fee_percent: Optional[Decimal]
    subaccount_code: Optional[str]


@dataclass(frozen=True)
class EventRecord:
    id: str
    organizer_id: str
    title: str
    venue_name: Optional[str]
    starts_at: Optional[float]
    fee_bearer: str
    platform_fee_percent: Optional[Decimal]


@dataclass(frozen=True)
class TierRecord:
    id: str
    event_id: str
    name: str
    price: Decimal
    currency: str
    total_quantity: int
    quantity_sold: int


@dataclass(frozen=True)
class DiscountRecord:
    id: str
    code: str
    type: str
    value: Decimal


@dataclass(frozen=True)
class AddOnRecord:
    id: str
    name: str
    price: Decimal


@dataclass(frozen=True)
class ReservationRecord:
    id: str
    event_id: str
    tier_id: str
    quantity: int
    status: str
    discount_id: Optional[str]
    addons: Tuple[Tuple[str, int], ...]
    user_id: Optional[str]
    buyer_name: Optional[str]
    buyer_email: Optional[str]
    buyer_phone: Optional[str]


@dataclass(frozen=True)
class ResolvedReservation:
    reservation: ReservationRecord
    tier: TierRecord
    event: EventRecord
    organizer: OrganizerRecord
    discount: Optional[DiscountRecord] = None
    # the event's add-on catalogue, keyed by add-on id
    addon_prices: Dict[str, AddOnRecord] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.reservation.id
