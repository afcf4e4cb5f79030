# model/reservations.py
"""
Reservation lookup and creation.

`resolve_reservations` is the only place that turns reservation rows (plus
their tier, event, organizer, discount and the event's add-ons) into the
typed records the fee engine works on.
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import InvalidReservation, ReservationNotFound
from ..fees import to_decimal, DISCOUNT_PERCENTAGE
from ..helpers import new_id, now_ts, is_valid_email
from ..logger_config import logger
from .db import (
    AddOn, Discount, Event, Organizer, Reservation, TicketTier, R_PENDING,
)
from .records import (
    AddOnRecord, DiscountRecord, EventRecord, OrganizerRecord,
    ReservationRecord, ResolvedReservation, TierRecord,
)


# ----------------------------------------------------------------------------
# which reservations does a payment pay for?
# ----------------------------------------------------------------------------
def _dedupe(ids: Iterable[Any]) -> List[str]:
    out: List[str] = []
    for i in ids:
        if i is None:
            continue
        s = str(i).strip()
        if s and s not in out:
            out.append(s)
    return out


def metadata_reservation_ids(metadata: Optional[Mapping[str, Any]]) -> List[str]:
    """
    Reservation ids carried in gateway metadata.

    `reservation_ids` (list) is primary; a single `reservation_id` is the
    fallback older checkouts sent. camelCase spellings are accepted too.
    """
    if not metadata:
        return []
    many = metadata.get("reservation_ids") or metadata.get("reservationIds")
    if isinstance(many, str):
        many = many.split(",")
    if many:
        ids = _dedupe(many)
        if ids:
            return ids
    one = metadata.get("reservation_id") or metadata.get("reservationId")
    return _dedupe([one]) if one else []


def reservation_ids_for(
    reference: str,
    explicit_ids: Optional[Sequence[str]] = None,
    metadata: Optional[Mapping[str, Any]] = None,
) -> List[str]:
    meta_ids = metadata_reservation_ids(metadata)
    if explicit_ids:
        ids = _dedupe(explicit_ids)
        if meta_ids:
            stray = [i for i in ids if i not in meta_ids]
            if stray:
                raise ReservationNotFound(
                    f"reservations {', '.join(stray)} are not part of "
                    f"payment {reference}"
                )
        if ids:
            return ids
    if meta_ids:
        return meta_ids
    # legacy: the reservation id was used as payment reference
    return [reference]


# ----------------------------------------------------------------------------
# row -> record
# ----------------------------------------------------------------------------
def _organizer(row: Organizer) -> OrganizerRecord:
    return OrganizerRecord(
        id=row.id,
        name=row.name,
        platform_fee_percent=row.platform_fee_percent,
        subaccount_code=row.subaccount_code,
    )


def _event(row: Event) -> EventRecord:
    return EventRecord(
        id=row.id,
        organizer_id=row.organizer_id,
        title=row.title,
        venue_name=row.venue_name,
        starts_at=row.starts_at,
        fee_bearer=row.fee_bearer or "customer",
        platform_fee_percent=row.platform_fee_percent,
    )


def _tier(row: TicketTier) -> TierRecord:
    return TierRecord(
        id=row.id,
        event_id=row.event_id,
        name=row.name,
        price=to_decimal(row.price),
        currency=row.currency,
        total_quantity=int(row.total_quantity),
        quantity_sold=int(row.quantity_sold or 0),
    )


def _discount(row: Discount) -> DiscountRecord:
    return DiscountRecord(
        id=row.id, code=row.code, type=row.type, value=to_decimal(row.value)
    )


def _reservation(row: Reservation) -> ReservationRecord:
    addons = []
    for addon_id, qty in (row.addons or {}).items():
        try:
            addons.append((str(addon_id), int(qty)))
        except (TypeError, ValueError):
            logger.warning(
                f"reservation {row.id}: ignoring malformed add-on "
                f"quantity {qty!r} for {addon_id}"
            )
    return ReservationRecord(
        id=row.id,
        event_id=row.event_id,
        tier_id=row.tier_id,
        quantity=int(row.quantity),
        status=row.status,
        discount_id=row.discount_id,
        addons=tuple(addons),
        user_id=row.user_id,
        buyer_name=row.buyer_name,
        buyer_email=row.buyer_email,
        buyer_phone=row.buyer_phone,
    )


async def _by_ids(db: AsyncSession, model, ids: Iterable[str]) -> Dict[str, Any]:
    ids = [i for i in set(ids) if i]
    if not ids:
        return {}
    rows = (await db.execute(select(model).where(model.id.in_(ids)))).scalars()
    return {r.id: r for r in rows}


async def load_resolved(
    db: AsyncSession, ids: Sequence[str]
) -> List[ResolvedReservation]:
    rows = await _by_ids(db, Reservation, ids)
    missing = [i for i in ids if i not in rows]
    if missing:
        logger.warning(f"unknown reservations skipped: {', '.join(missing)}")
    found = [rows[i] for i in ids if i in rows]
    if not found:
        raise ReservationNotFound(
            f"no reservation found for {', '.join(ids)}"
        )

    # one query per related table for the whole batch
    tiers = await _by_ids(db, TicketTier, (r.tier_id for r in found))
    events = await _by_ids(db, Event, (r.event_id for r in found))
    organizers = await _by_ids(
        db, Organizer, (e.organizer_id for e in events.values())
    )
    discounts = await _by_ids(db, Discount, (r.discount_id for r in found))
    addon_rows = (await db.execute(
        select(AddOn).where(AddOn.event_id.in_(list(events)))
    )).scalars().all() if events else []
    addons_by_event: Dict[str, Dict[str, AddOnRecord]] = {}
    for a in addon_rows:
        addons_by_event.setdefault(a.event_id, {})[a.id] = AddOnRecord(
            id=a.id, name=a.name, price=to_decimal(a.price)
        )

    out: List[ResolvedReservation] = []
    for row in found:
        tier = tiers.get(row.tier_id)
        event = events.get(row.event_id)
        organizer = organizers.get(event.organizer_id) if event else None
        if tier is None:
            raise ReservationNotFound(
                f"reservation {row.id} references a missing tier"
            )
        if event is None or organizer is None:
            raise ReservationNotFound(
                f"reservation {row.id} references a missing event/organizer"
            )
        discount = discounts.get(row.discount_id) if row.discount_id else None
        if row.discount_id and discount is None:
            logger.warning(
                f"reservation {row.id}: discount {row.discount_id} "
                f"no longer exists, charging full price"
            )
        out.append(ResolvedReservation(
            reservation=_reservation(row),
            tier=_tier(tier),
            event=_event(event),
            organizer=_organizer(organizer),
            discount=_discount(discount) if discount else None,
            addon_prices=dict(addons_by_event.get(event.id, {})),
        ))
    return out


async def resolve_reservations(
    db: AsyncSession,
    reference: str,
    explicit_ids: Optional[Sequence[str]] = None,
    metadata: Optional[Mapping[str, Any]] = None,
) -> List[ResolvedReservation]:
    ids = reservation_ids_for(reference, explicit_ids, metadata)
    return await load_resolved(db, ids)


# ----------------------------------------------------------------------------
# creation (checkout)
# ----------------------------------------------------------------------------
async def create_reservations(
    db: AsyncSession,
    event_id: str,
    items: Sequence[Mapping[str, Any]],
    buyer: Mapping[str, Any],
    discount_code: Optional[str] = None,
    addons: Optional[Mapping[str, int]] = None,
) -> List[str]:
    """
    Create one pending reservation per requested tier.

    `items` is a list of {"tier_id", "quantity"}. Add-ons ride on the first
    reservation only so they are charged and counted once. Caller owns the
    transaction.
    """
    if not items:
        raise InvalidReservation("at least one ticket tier is required")
    email = (buyer.get("email") or "").strip()
    if not is_valid_email(email):
        raise InvalidReservation("a valid buyer email is required")

    event = await db.get(Event, event_id)
    if event is None:
        raise InvalidReservation(f"unknown event {event_id}")

    wanted: Dict[str, int] = {}
    for item in items:
        tier_id = str(item.get("tier_id") or "")
        qty = int(item.get("quantity") or 0)
        if qty < 1:
            raise InvalidReservation(f"quantity for tier {tier_id} must be >= 1")
        if tier_id in wanted:
            raise InvalidReservation(f"tier {tier_id} listed twice")
        wanted[tier_id] = qty

    tiers = await _by_ids(db, TicketTier, wanted)
    for tier_id, qty in wanted.items():
        tier = tiers.get(tier_id)
        if tier is None or tier.event_id != event_id:
            raise InvalidReservation(f"tier {tier_id} is not on sale for this event")
        if tier.total_quantity - (tier.quantity_sold or 0) < qty:
            raise InvalidReservation(f"tier {tier.name} is sold out")

    discount_id = None
    discount_type = None
    if discount_code:
        discount = (await db.execute(
            select(Discount).where(
                Discount.event_id == event_id,
                Discount.code == discount_code.strip(),
            )
        )).scalars().first()
        if discount is None:
            raise InvalidReservation(f"unknown discount code {discount_code}")
        if (discount.usage_limit is not None
                and discount.used_count >= discount.usage_limit):
            raise InvalidReservation(f"discount code {discount_code} is used up")
        discount_id = discount.id
        discount_type = discount.type

    addon_qty: Dict[str, int] = {}
    if addons:
        rows = await _by_ids(db, AddOn, addons)
        for addon_id, qty in addons.items():
            row = rows.get(addon_id)
            qty = int(qty)
            if row is None or row.event_id != event_id:
                raise InvalidReservation(f"add-on {addon_id} is not sold for this event")
            if qty < 1:
                raise InvalidReservation(f"quantity for add-on {addon_id} must be >= 1")
            if (row.total_quantity is not None
                    and row.total_quantity - (row.quantity_sold or 0) < qty):
                raise InvalidReservation(f"add-on {row.name} is sold out")
            addon_qty[addon_id] = qty

    now = now_ts()
    ids: List[str] = []
    for idx, (tier_id, qty) in enumerate(wanted.items()):
        rid = new_id()
        db.add(Reservation(
            id=rid,
            event_id=event_id,
            tier_id=tier_id,
            quantity=qty,
            # a fixed discount comes off the order once, not once per tier
            discount_id=(
                discount_id
                if idx == 0 or discount_type == DISCOUNT_PERCENTAGE
                else None
            ),
            addons=addon_qty if idx == 0 and addon_qty else None,
            user_id=buyer.get("user_id"),
            buyer_name=buyer.get("name"),
            buyer_email=email,
            buyer_phone=buyer.get("phone"),
            status=R_PENDING,
            created_at=now,
        ))
        ids.append(rid)
    logger.info(
        f"created {len(ids)} pending reservation(s) for event {event_id}"
    )
    return ids
