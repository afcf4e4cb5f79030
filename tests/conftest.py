"""
Test configuration and fixtures.

Environment is set before anything from boxoffice is imported: several
modules read their configuration at import time.
"""
import os
import tempfile


def _early_setup_test_environment() -> None:
    tmp = tempfile.mkdtemp(prefix="boxoffice-test-")
    os.environ["DATABASE_URL"] = f"sqlite:///{tmp}/server.db"
    os.environ["GATEWAY_BACKEND"] = "mock"
    os.environ["GATE_BACKEND"] = "pg"
    os.environ["ACCT_BACKEND"] = "pg"
    os.environ["MOCK_SECRET"] = "test-secret"
    os.environ["MOCK_WEBHOOK_URL"] = ""
    os.environ["NOTIFY_WEBHOOK_URL"] = ""
    os.environ["ANALYTICS_WEBHOOK_URL"] = ""
    os.environ.pop("PLATFORM_FEE_PERCENT", None)
    os.environ.pop("PROCESSOR_FEE_PERCENT", None)
    os.environ.setdefault("LOG_LEVEL", "WARNING")


_early_setup_test_environment()

from dataclasses import dataclass  # noqa: E402
from decimal import Decimal  # noqa: E402
from typing import List  # noqa: E402

import pytest  # noqa: E402

from boxoffice.fees import to_minor_units  # noqa: E402
from boxoffice.gateway import GatewayTransaction, MockGateway  # noqa: E402
from boxoffice.helpers import new_id, now_ts  # noqa: E402
from boxoffice.infra.sql import make_async_engine  # noqa: E402
from boxoffice.model.accounting._postgres import (  # noqa: E402
    GatedSessions, ensure_schema,
)
from boxoffice.model.db import (  # noqa: E402
    AddOn, Base, Discount, Event, Organizer, Reservation, TicketTier,
)
from boxoffice.model.settlementgate._postgres import (  # noqa: E402
    SettlementGate, create_schema,
)
from boxoffice.settlement import Settlement  # noqa: E402
from boxoffice.sinks import LogAnalyticsSink, LogNotificationSink  # noqa: E402


@dataclass
class Store:
    engine: object
    sessions: object
    gated: object


@pytest.fixture
async def store(tmp_path):
    engine, sessions, _, gated = make_async_engine(
        f"sqlite:///{tmp_path}/boxoffice.db"
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await ensure_schema(conn)
        await create_schema(conn)
    yield Store(engine=engine, sessions=sessions, gated=gated)
    await engine.dispose()


@dataclass
class Catalog:
    organizer_id: str
    event_id: str
    tier_id: str
    vip_tier_id: str
    addon_id: str
    discount_id: str


async def seed_catalog(
    store: Store,
    *,
    fee_bearer: str = "customer",
    price: str = "100.00",
    total_quantity: int = 100,
    event_fee=None,
    organizer_fee=None,
    subaccount_code=None,
) -> Catalog:
    c = Catalog(
        organizer_id=new_id(), event_id=new_id(), tier_id=new_id(),
        vip_tier_id=new_id(), addon_id=new_id(), discount_id=new_id(),
    )
    async with store.sessions() as db:
        async with db.begin():
            db.add(Organizer(
                id=c.organizer_id, name="Afrobeats Live",
                platform_fee_percent=organizer_fee,
                subaccount_code=subaccount_code,
            ))
            db.add(Event(
                id=c.event_id, organizer_id=c.organizer_id,
                title="Lagos Summer Jam", venue_name="Eko Hall",
                starts_at=now_ts() + 86400, fee_bearer=fee_bearer,
                platform_fee_percent=event_fee,
            ))
            db.add(TicketTier(
                id=c.tier_id, event_id=c.event_id, name="Regular",
                price=Decimal(price), currency="NGN",
                total_quantity=total_quantity, quantity_sold=0,
            ))
            db.add(TicketTier(
                id=c.vip_tier_id, event_id=c.event_id, name="VIP",
                price=Decimal("250.00"), currency="NGN",
                total_quantity=10, quantity_sold=0,
            ))
            db.add(AddOn(
                id=c.addon_id, event_id=c.event_id, name="Parking",
                price=Decimal("25.00"), total_quantity=None,
                quantity_sold=0,
            ))
            db.add(Discount(
                id=c.discount_id, event_id=c.event_id, code="EARLY10",
                type="percentage", value=Decimal("10"), used_count=0,
            ))
    return c


async def add_reservation(
    store: Store,
    catalog: Catalog,
    *,
    quantity: int = 1,
    tier_id=None,
    addons=None,
    discount_id=None,
    status: str = "pending",
) -> str:
    rid = new_id()
    async with store.sessions() as db:
        async with db.begin():
            db.add(Reservation(
                id=rid, event_id=catalog.event_id,
                tier_id=tier_id or catalog.tier_id, quantity=quantity,
                discount_id=discount_id, addons=addons,
                buyer_name="Ada Obi", buyer_email="ada@example.com",
                buyer_phone="+2348000000000", status=status,
                created_at=now_ts(),
            ))
    return rid


def paid(
    gateway: MockGateway,
    reference: str,
    reservation_ids: List[str],
    amount_major: str = "0",
    status: str = "success",
) -> GatewayTransaction:
    txn = GatewayTransaction(
        reference=reference,
        status=status,
        amount=to_minor_units(amount_major),
        currency="NGN",
        channel="card",
        paid_at="2025-06-01T12:00:00Z",
        metadata={"reservation_ids": list(reservation_ids)},
        customer_email="ada@example.com",
    )
    gateway.register(txn)
    return txn


@pytest.fixture
def gateway():
    return MockGateway(secret="test-secret")


@pytest.fixture
def notifier():
    return LogNotificationSink()


@pytest.fixture
def settlement(store, gateway, notifier):
    return Settlement(
        sessions=store.sessions,
        gated=store.gated,
        gateway=gateway,
        notifier=notifier,
        analytics=LogAnalyticsSink(),
        gate=SettlementGate(sessions=store.sessions, gated=store.gated),
        accounting_client=GatedSessions(
            sessions=store.sessions, gated=store.gated
        ),
    )
