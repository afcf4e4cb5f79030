import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from boxoffice.errors import (
    GatewayError, PartialSettlementFailure, PaymentNotSuccessful,
    ReservationNotFound,
)
from boxoffice.model.db import (
    AddOn, Discount, Reservation, Ticket, TicketTier, Transaction,
)
from boxoffice.sinks import NotificationSink

from conftest import add_reservation, paid, seed_catalog


async def _count(store, model, *where):
    async with store.sessions() as db:
        q = select(func.count()).select_from(model)
        for w in where:
            q = q.where(w)
        return (await db.execute(q)).scalar_one()


async def test_settles_one_reservation(store, gateway, notifier, settlement):
    c = await seed_catalog(store)
    rid = await add_reservation(store, c, quantity=2)
    paid(gateway, "ref-1", [rid], "211.96")

    result = await settlement.settle("ref-1")

    assert result.transaction_created
    assert result.issued == [rid]
    assert result.failures == {}
    assert result.bundle.ticket_count == 2
    assert result.bundle.groups[0].tier_name == "Regular"
    assert result.bundle.customer_email == "ada@example.com"
    assert len(notifier.sent) == 1

    async with store.sessions() as db:
        txn = await db.get(Transaction, "ref-1")
        tier = await db.get(TicketTier, c.tier_id)
        res = await db.get(Reservation, rid)
    assert txn.subtotal == Decimal("200")
    assert txn.platform_fee == Decimal("8")
    assert txn.processor_fee == Decimal("3.96")
    assert txn.customer_total == Decimal("211.96")
    assert txn.organizer_payout == Decimal("200")
    assert txn.amount == Decimal("211.96")
    assert txn.applied_platform_rate == Decimal("0.04")
    assert txn.applied_processor_rate == Decimal("0.0198")
    assert txn.reservation_ids == [rid]
    assert tier.quantity_sold == 2
    assert res.status == "confirmed"
    assert res.payment_reference == "ref-1"


async def test_second_call_is_a_no_op(store, gateway, notifier, settlement):
    c = await seed_catalog(store)
    rid = await add_reservation(store, c, quantity=3)
    paid(gateway, "ref-2", [rid], "317.94")

    first = await settlement.settle("ref-2")
    second = await settlement.settle("ref-2")

    assert second.already_settled
    assert second.issued == []
    assert second.reused == [rid]
    first_ids = sorted(t.id for g in first.bundle.groups for t in g.tickets)
    second_ids = sorted(t.id for g in second.bundle.groups for t in g.tickets)
    assert first_ids == second_ids
    assert await _count(store, Transaction) == 1
    assert await _count(store, Ticket) == 3
    assert len(notifier.sent) == 1
    async with store.sessions() as db:
        assert (await db.get(TicketTier, c.tier_id)).quantity_sold == 3


async def test_concurrent_settlements_of_one_reference(
    store, gateway, notifier, settlement
):
    c = await seed_catalog(store)
    rid = await add_reservation(store, c, quantity=2)
    paid(gateway, "ref-3", [rid], "211.96")

    results = await asyncio.gather(
        *(settlement.settle("ref-3") for _ in range(5))
    )

    assert sum(1 for r in results if r.transaction_created) == 1
    assert sum(1 for r in results if r.issued) == 1
    assert await _count(store, Transaction) == 1
    assert await _count(store, Ticket) == 2
    async with store.sessions() as db:
        assert (await db.get(TicketTier, c.tier_id)).quantity_sold == 2
    assert len(notifier.sent) == 1


async def test_inventory_is_conserved_under_concurrent_sales(
    store, gateway, settlement
):
    c = await seed_catalog(store, total_quantity=5)
    rids = [await add_reservation(store, c, quantity=2) for _ in range(3)]
    for i, rid in enumerate(rids):
        paid(gateway, f"sale-{i}", [rid], "211.96")

    outcomes = await asyncio.gather(
        *(settlement.settle(f"sale-{i}") for i in range(3)),
        return_exceptions=True,
    )

    failed = [o for o in outcomes if isinstance(o, PartialSettlementFailure)]
    assert len(failed) == 1
    assert await _count(store, Ticket) == 4
    async with store.sessions() as db:
        tier = await db.get(TicketTier, c.tier_id)
    assert tier.quantity_sold == 4
    assert tier.quantity_sold <= tier.total_quantity
    # the losing reservation stays pending and can be retried later
    loser = list(failed[0].failures)[0]
    async with store.sessions() as db:
        assert (await db.get(Reservation, loser)).status == "pending"


async def test_one_failing_reservation_does_not_block_the_others(
    store, gateway, notifier, settlement
):
    c = await seed_catalog(store)
    ok = await add_reservation(store, c, quantity=1)
    cancelled = await add_reservation(
        store, c, quantity=1, tier_id=c.vip_tier_id, status="cancelled"
    )
    paid(gateway, "ref-4", [ok, cancelled], "370.95")

    with pytest.raises(PartialSettlementFailure) as exc:
        await settlement.settle("ref-4")

    result = exc.value.result
    assert result.issued == [ok]
    assert list(result.failures) == [cancelled]
    assert result.transaction_created
    assert await _count(store, Ticket, Ticket.reservation_id == ok) == 1
    assert await _count(store, Ticket, Ticket.reservation_id == cancelled) == 0
    # issued tickets still go out
    assert len(notifier.sent) == 1

    # a retry does not double anything that already happened
    with pytest.raises(PartialSettlementFailure) as exc:
        await settlement.settle("ref-4")
    assert exc.value.result.reused == [ok]
    assert await _count(store, Ticket) == 1
    assert await _count(store, Transaction) == 1


async def test_unsuccessful_payment_writes_nothing(store, gateway, settlement):
    c = await seed_catalog(store)
    rid = await add_reservation(store, c)
    paid(gateway, "ref-5", [rid], "105.98", status="failed")

    with pytest.raises(PaymentNotSuccessful):
        await settlement.settle("ref-5")

    assert await _count(store, Transaction) == 0
    assert await _count(store, Ticket) == 0
    async with store.sessions() as db:
        assert (await db.get(Reservation, rid)).status == "pending"


async def test_unknown_reference_at_gateway(settlement):
    with pytest.raises(GatewayError):
        await settlement.settle("never-initialized")


async def test_no_reservation_found_writes_nothing(store, gateway, settlement):
    paid(gateway, "ref-6", ["ghost"], "105.98")
    with pytest.raises(ReservationNotFound):
        await settlement.settle("ref-6")
    assert await _count(store, Transaction) == 0


class _BrokenSink(NotificationSink):
    async def send(self, bundle):
        raise RuntimeError("smtp down")


async def test_notification_failure_does_not_fail_settlement(
    store, gateway, settlement
):
    settlement.notifier = _BrokenSink()
    c = await seed_catalog(store)
    rid = await add_reservation(store, c)
    paid(gateway, "ref-7", [rid], "105.98")

    result = await settlement.settle("ref-7")

    assert result.ok
    assert await _count(store, Ticket) == 1


async def test_multi_tier_order_with_addons_and_discount(
    store, gateway, settlement
):
    c = await seed_catalog(store)
    regular = await add_reservation(
        store, c, quantity=2, addons={c.addon_id: 2, "retired": 1},
        discount_id=c.discount_id,
    )
    vip = await add_reservation(store, c, quantity=1, tier_id=c.vip_tier_id)
    paid(gateway, "ref-8", [regular, vip], "0")

    result = await settlement.settle("ref-8")

    assert sorted(result.issued) == sorted([regular, vip])
    assert [g.tier_name for g in result.bundle.groups] == ["Regular", "VIP"]
    async with store.sessions() as db:
        txn = await db.get(Transaction, "ref-8")
        addon = await db.get(AddOn, c.addon_id)
        discount = await db.get(Discount, c.discount_id)
    # tickets: 200 * 0.9 + 250 = 430, add-ons 50 (unknown one ignored)
    assert txn.subtotal == Decimal("480")
    assert txn.platform_fee == Decimal("17.2")
    assert txn.processor_fee == Decimal("9.504")
    assert txn.customer_total == Decimal("506.704")
    assert addon.quantity_sold == 2
    assert discount.used_count == 1


async def test_explicit_ids_limit_the_settlement(store, gateway, settlement):
    c = await seed_catalog(store)
    a = await add_reservation(store, c)
    b = await add_reservation(store, c)
    paid(gateway, "ref-9", [a, b], "211.96")

    first = await settlement.settle("ref-9", reservation_ids=[a])
    assert first.issued == [a]
    assert first.bundle.ticket_count == 1
    assert await _count(store, Ticket) == 1
    with pytest.raises(ReservationNotFound):
        await settlement.settle("ref-9", reservation_ids=["other"])

    # the ledger row covers the whole payment from the first write on
    async with store.sessions() as db:
        txn = await db.get(Transaction, "ref-9")
    assert txn.reservation_ids == [a, b]
    assert txn.subtotal == Decimal("200")
    assert txn.customer_total == Decimal("211.96")

    rest = await settlement.settle("ref-9")
    assert rest.issued == [b]
    assert rest.reused == [a]
    replay = await settlement.settle("ref-9")
    assert replay.already_settled
    assert replay.bundle.ticket_count == 2
    assert await _count(store, Ticket) == 2
    assert await _count(store, Transaction) == 1


async def test_accounting_legs_are_posted_once(store, gateway, settlement):
    from boxoffice.model.accounting._postgres import balances

    c = await seed_catalog(store, fee_bearer="organizer")
    rid = await add_reservation(store, c)
    paid(gateway, "ref-10", [rid], "104.00")

    await settlement.settle("ref-10")
    await settlement.settle("ref-10")

    bal = await balances(settlement.accounting_client, "NGN")
    assert bal["clearing"] == 0
    assert bal["gateway"] == -10400
    assert bal["platform"] == 400
    assert bal["processor"] == 198
    assert bal[f"organizer:{c.organizer_id}"] == 9802
