from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
import tigerbeetle as tb

from boxoffice.fees import FeeRates, compute_fees, to_minor_units
from boxoffice.model.accounting import _postgres as pg_ledger
from boxoffice.model.accounting import _tigerbeetle as tb_ledger
from boxoffice.model.accounting._legs import (
    CLEARING, GATEWAY, PLATFORM, PROCESSOR, organizer_account,
    settlement_legs,
)
from boxoffice.rates import (
    DEFAULT_PLATFORM_FEE_PERCENT, DEFAULT_PROCESSOR_FEE_PERCENT,
)


def _txn(amount="105.98", platform="4", processor="1.98", payout="100",
         organizer="org-1"):
    return SimpleNamespace(
        currency="ngn",
        organizer_id=organizer,
        amount=Decimal(amount),
        platform_fee=Decimal(platform),
        processor_fee=Decimal(processor),
        organizer_payout=Decimal(payout),
    )


def test_legs_net_clearing_to_zero():
    legs = settlement_legs(_txn(amount="105.9851", processor="1.9851"))
    capture = legs[0]
    assert (capture.name, capture.debit, capture.credit) == (
        "capture", GATEWAY, CLEARING
    )
    assert capture.amount == sum(leg.amount for leg in legs[1:])
    assert capture.amount == 400 + 199 + 10000
    assert all(leg.currency == "NGN" for leg in legs)
    assert legs[-1].credit == organizer_account("org-1")


def test_capture_matches_the_charged_amount():
    fees = compute_fees("1.10", 0, "customer", FeeRates(
        DEFAULT_PLATFORM_FEE_PERCENT, DEFAULT_PROCESSOR_FEE_PERCENT,
    ))
    charged = to_minor_units(fees.customer_total)
    assert charged == 117
    legs = settlement_legs(_txn(
        amount=str(fees.customer_total),
        platform=str(fees.platform_fee),
        processor=str(fees.processor_fee),
        payout=str(fees.organizer_payout),
    ))
    by_name = {leg.name: leg.amount for leg in legs}
    assert by_name["capture"] == charged
    assert by_name["platform_fee"] == 4
    assert by_name["processor_fee"] == 2
    # the rounding remainder goes to the organizer
    assert by_name["payout:org-1"] == 111
    assert by_name["capture"] == sum(leg.amount for leg in legs[1:])


def test_capture_short_of_fees_pays_no_organizer():
    legs = settlement_legs(_txn(amount="0.05"))
    assert [leg.name for leg in legs] == [
        "capture", "platform_fee", "processor_fee"
    ]
    assert legs[0].amount == 400 + 198


def test_zero_legs_are_dropped():
    legs = settlement_legs(_txn(amount="101.98", platform="0"))
    assert [leg.credit for leg in legs] == [
        CLEARING, PROCESSOR, organizer_account("org-1")
    ]
    assert settlement_legs(_txn(
        amount="0", platform="0", processor="0", payout="0"
    )) == []


def test_transfers_are_linked_and_deterministic():
    legs = settlement_legs(_txn())
    first = tb_ledger.build_transfers("ref-1", legs)
    again = tb_ledger.build_transfers("ref-1", legs)
    other = tb_ledger.build_transfers("ref-2", legs)

    assert [t.id for t in first] == [t.id for t in again]
    assert not {t.id for t in first} & {t.id for t in other}
    assert all(t.flags == tb.TransferFlags.LINKED for t in first[:-1])
    assert first[-1].flags == 0
    assert {t.ledger for t in first} == {566}
    assert first[0].debit_account_id == tb_ledger.account_id("NGN", GATEWAY)


def test_unknown_currency_has_no_ledger():
    with pytest.raises(ValueError):
        tb_ledger.ledger_for("XYZ")


def test_only_gateway_may_go_negative():
    gw = tb_ledger._account("NGN", GATEWAY)
    plat = tb_ledger._account("NGN", PLATFORM)
    org = tb_ledger._account("NGN", organizer_account("org-1"))
    assert gw.flags == 0
    assert plat.flags == tb.AccountFlags.DEBITS_MUST_NOT_EXCEED_CREDITS
    assert org.code == tb_ledger.ORGANIZER_CODE


async def test_tigerbeetle_replay_is_counted_as_existing():
    legs = settlement_legs(_txn())
    client = AsyncMock()
    client.create_accounts.return_value = []
    client.create_transfers.side_effect = [
        [],
        [SimpleNamespace(index=i, result=tb.CreateTransferResult.EXISTS)
         for i in range(len(legs))],
    ]

    assert await tb_ledger.post_settlement(client, "ref-1", legs) == len(legs)
    assert await tb_ledger.post_settlement(client, "ref-1", legs) == 0


async def test_tigerbeetle_rejection_raises():
    legs = settlement_legs(_txn())
    client = AsyncMock()
    client.create_accounts.return_value = []
    client.create_transfers.return_value = [SimpleNamespace(
        index=1, result=tb.CreateTransferResult.EXCEEDS_CREDITS,
    )]
    with pytest.raises(RuntimeError):
        await tb_ledger.post_settlement(client, "ref-1", legs)


async def test_postgres_ledger_replay(store):
    ac = pg_ledger.GatedSessions(sessions=store.sessions, gated=store.gated)
    legs = settlement_legs(_txn())

    assert await pg_ledger.post_settlement(ac, "ref-1", legs) == len(legs)
    assert await pg_ledger.post_settlement(ac, "ref-1", legs) == 0

    bal = await pg_ledger.balances(ac, "NGN")
    assert bal[CLEARING] == 0
    assert bal[GATEWAY] == -10598
    assert bal[PLATFORM] == 400
    assert bal[PROCESSOR] == 198
    assert sum(bal.values()) == 0
