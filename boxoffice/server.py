from __future__ import annotations

import os
from typing import Dict, List, Optional

import httpx
import redis.asyncio as redis
import tigerbeetle as tb
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from .checkout import prepare_checkout
from .errors import (
    PartialSettlementFailure, PaymentNotSuccessful, ReservationNotFound,
    SettlementError,
)
from .gateway import (
    EVENT_CHARGE_SUCCESS, GATEWAY_BACKEND, MockGateway, new_gateway,
)
from .infra.sql import make_async_engine
from .infra.timings import install_shutdown_dump, snapshot, timeit
from .logger_config import logger
from .model import accounting
from .model.accounting import BACKEND as ACCT_BACKEND
from .model.accounting._postgres import GatedSessions
from .model.db import Base
from .model.inventory import tier_inventory
from .model.ledger import (
    get_transaction, tickets_for_reference, transaction_as_dict,
)
from .model.reservations import create_reservations
from .model.settings import load_fee_defaults, save_fee_defaults
from .model.settlementgate import BACKEND as GATE_BACKEND, new_gate
from .rates import FeeDefaults, normalize_rate, normalize_processor_rate
from .settlement import Settlement
from .sinks import new_sinks

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./boxoffice.db")
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/payments/webhook"
)
ACCT_CURRENCIES = [
    c.strip().upper()
    for c in os.environ.get("ACCT_CURRENCIES", "NGN").split(",") if c.strip()
]
FEE_FALLBACK = FeeDefaults.from_env()

engine, SessionAsync, _, gated = make_async_engine(DATABASE_URL)


async def get_db() -> AsyncSession:
    async with SessionAsync() as session:
        yield session


app = FastAPI(
    title="BoxOffice",
    default_response_class=ORJSONResponse,
)

# log step timings on shutdown
install_shutdown_dump(app)


def get_settlement() -> Settlement:
    settlement = getattr(app.state, "settlement", None)
    if settlement is None:
        raise RuntimeError("Settlement not initialized")
    return settlement


# ----------------------------
# Request bodies
# ----------------------------
class ReservationItem(BaseModel):
    tier_id: str
    quantity: int = Field(ge=1)


class Buyer(BaseModel):
    email: str
    name: Optional[str] = None
    phone: Optional[str] = None
    user_id: Optional[str] = None


class CreateReservationsRequest(BaseModel):
    event_id: str
    items: List[ReservationItem]
    buyer: Buyer
    discount_code: Optional[str] = None
    addons: Dict[str, int] = Field(default_factory=dict)


class CheckoutRequest(BaseModel):
    reservation_ids: List[str]
    email: str
    callback_url: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)


class VerifyRequest(BaseModel):
    reference: str
    reservation_ids: Optional[List[str]] = None


class FeeSettingsRequest(BaseModel):
    platform_fee_percent: Optional[str] = None
    processor_fee_percent: Optional[str] = None


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    logger.info(
        f"BoxOffice starting: gateway={GATEWAY_BACKEND} "
        f"accounting={ACCT_BACKEND} gate={GATE_BACKEND}"
    )


@app.on_event("startup")
async def _db_init():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        if ACCT_BACKEND == "pg":
            await accounting.create_accounts(conn, ACCT_CURRENCIES)
        if GATE_BACKEND == "pg":
            from .model.settlementgate._postgres import create_schema
            await create_schema(conn)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=512, max_keepalive_connections=512
        ),
    )


@app.on_event("startup")
async def _redis_start():
    app.state.redis = None
    if GATE_BACKEND == "redis":
        REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "512")),
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("startup")
async def _accounting_start():
    if ACCT_BACKEND == "tb":
        addr = os.getenv("TB_ADDRESS", "3000")
        cluster_id = int(os.getenv("TB_CLUSTER_ID", "0"))
        client = tb.ClientAsync(cluster_id=cluster_id, replica_addresses=addr)
        app.state.tb_client = client
        await accounting.create_accounts(client, ACCT_CURRENCIES)
        app.state.accounting = client
    else:
        app.state.accounting = GatedSessions(
            sessions=SessionAsync, gated=gated
        )


@app.on_event("startup")
async def _settlement_start():
    app.state.gateway = new_gateway(app.state.http)
    notifier, analytics = new_sinks(app.state.http)
    app.state.notifier = notifier
    app.state.settlement = Settlement(
        sessions=SessionAsync,
        gated=gated,
        gateway=app.state.gateway,
        notifier=notifier,
        analytics=analytics,
        gate=new_gate(sessions=SessionAsync, r=app.state.redis, gated=gated),
        accounting_client=app.state.accounting,
        fee_fallback=FEE_FALLBACK,
    )


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _tb_stop():
    client = getattr(app.state, "tb_client", None)
    if client is not None:
        await client.close()
        app.state.tb_client = None


# ----------------------------
# Errors
# ----------------------------
@app.exception_handler(SettlementError)
async def _settlement_error(request: Request, exc: SettlementError):
    if exc.status_code >= 500:
        logger.error(f"{request.url.path}: {exc.message}")
    else:
        logger.warning(f"{request.url.path}: {exc.message}")
    body = {"error": exc.code, "detail": exc.message}
    if isinstance(exc, PartialSettlementFailure):
        body["result"] = exc.result.as_dict()
    return ORJSONResponse(status_code=exc.status_code, content=body)


# ----------------------------
# API: reservations & checkout
# ----------------------------
@app.post("/api/reservations")
async def api_create_reservations(
    payload: CreateReservationsRequest,
    db: AsyncSession = Depends(get_db),
):
    async with timeit("db.create_reservations"):
        async with gated():
            async with db.begin():
                ids = await create_reservations(
                    db,
                    payload.event_id,
                    [i.model_dump() for i in payload.items],
                    payload.buyer.model_dump(),
                    discount_code=payload.discount_code,
                    addons=payload.addons,
                )
    return {"reservation_ids": ids}


@app.post("/api/checkout/initialize")
async def api_checkout_initialize(
    payload: CheckoutRequest,
    db: AsyncSession = Depends(get_db),
):
    async with gated():
        async with db.begin():
            req = await prepare_checkout(
                db,
                payload.reservation_ids,
                payload.email,
                callback_url=payload.callback_url,
                fee_fallback=FEE_FALLBACK,
                extra_metadata=payload.metadata,
            )
    async with timeit("gateway.initialize"):
        session = await app.state.gateway.initialize_transaction(req)
    return {
        "reference": session["reference"],
        "authorization_url": session["authorization_url"],
        "access_code": session["access_code"],
        "amount": req.amount,
        "currency": req.currency,
    }


# ----------------------------
# API: settlement
# ----------------------------
@app.post("/api/payments/verify")
async def api_verify_payment(
    payload: VerifyRequest,
    settlement: Settlement = Depends(get_settlement),
):
    result = await settlement.settle(
        payload.reference, reservation_ids=payload.reservation_ids
    )
    return result.as_dict()


# ----------------------------
# Webhook endpoint
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    settlement: Settlement = Depends(get_settlement),
):
    payload = await request.body()
    headers = dict(request.headers)

    gateway = app.state.gateway
    event = gateway.verify_webhook(payload, headers)
    kind = gateway.event_kind(event)
    if kind != EVENT_CHARGE_SUCCESS:
        return {"ok": True, "ignored": kind}

    reference = gateway.event_reference(event)
    if not reference:
        raise HTTPException(400, detail="missing reference")

    try:
        result = await settlement.settle(reference)
    except (PaymentNotSuccessful, ReservationNotFound) as e:
        # a redelivery cannot fix these; acknowledge so the gateway stops
        logger.bind(reference=reference).warning(
            f"webhook acknowledged without settlement: {e.message}"
        )
        return {"ok": True, "settled": False, "detail": e.message}
    return {
        "ok": True,
        "settled": True,
        "already_settled": result.already_settled,
        "issued": result.issued,
        "reused": result.reused,
    }


# ----------------------------
# API: reporting
# ----------------------------
@app.get("/api/transactions/{reference}")
async def api_get_transaction(
    reference: str, db: AsyncSession = Depends(get_db)
):
    async with timeit("db.get_transaction"):
        async with gated():
            async with db.begin():
                txn = await get_transaction(db, reference)
                tickets = (
                    await tickets_for_reference(db, reference)
                    if txn is not None else []
                )
    if txn is None:
        raise HTTPException(404, detail="transaction not found")
    out = transaction_as_dict(txn)
    out["tickets"] = [
        {
            "id": t.id,
            "reservation_id": t.reservation_id,
            "seq": t.seq,
            "tier_id": t.tier_id,
            "order_reference": t.order_reference,
            "status": t.status,
        }
        for t in tickets
    ]
    return out


@app.get("/api/tiers/{tier_id}/inventory")
async def api_tier_inventory(
    tier_id: str, db: AsyncSession = Depends(get_db)
):
    async with gated():
        async with db.begin():
            inv = await tier_inventory(db, tier_id)
    if inv is None:
        raise HTTPException(404, detail="tier not found")
    return inv


@app.get("/api/accounting/{currency}")
async def api_accounting_balances(currency: str):
    return {
        "currency": currency.upper(),
        "backend": ACCT_BACKEND,
        "balances": await accounting.balances(
            app.state.accounting, currency
        ),
    }


@app.get("/api/settings/fees")
async def api_get_fee_settings(db: AsyncSession = Depends(get_db)):
    async with gated():
        async with db.begin():
            defaults = await load_fee_defaults(db, FEE_FALLBACK)
    return {
        "platform_fee_percent": (
            str(defaults.platform_fee_percent)
            if defaults.platform_fee_percent is not None else None
        ),
        "processor_fee_percent": (
            str(defaults.processor_fee_percent)
            if defaults.processor_fee_percent is not None else None
        ),
    }


@app.put("/api/settings/fees")
async def api_put_fee_settings(
    payload: FeeSettingsRequest, db: AsyncSession = Depends(get_db)
):
    try:
        defaults = FeeDefaults(
            platform_fee_percent=normalize_rate(payload.platform_fee_percent),
            processor_fee_percent=normalize_processor_rate(
                payload.processor_fee_percent
            ),
        )
    except (ArithmeticError, ValueError):
        raise HTTPException(400, detail="invalid fee rate")
    async with gated():
        async with db.begin():
            await save_fee_defaults(db, defaults)
    return await api_get_fee_settings(db)


@app.get("/api/timings")
async def api_timings():
    return snapshot()


# ----------------------------
# MockPay
# ----------------------------
@app.post("/mockpay/{reference}/emit")
async def mockpay_emit(reference: str, status: str = "success"):
    gateway = app.state.gateway
    if not isinstance(gateway, MockGateway):
        raise HTTPException(404, detail="mock gateway not enabled")
    if status not in {"success", "failed", "abandoned"}:
        raise HTTPException(400, detail="invalid status")

    gateway.complete(reference, status)
    if not MOCK_WEBHOOK_URL:
        return {"ok": True, "delivered": False}

    payload, headers = gateway.signed_event(reference)
    client_http: httpx.AsyncClient = app.state.http
    try:
        r = await client_http.post(
            MOCK_WEBHOOK_URL, content=payload, headers=headers
        )
    except httpx.HTTPError as e:
        # the verify endpoint settles the payment as well; caller can retry
        logger.warning(f"webhook delivery failed: {e}")
        return {"ok": True, "delivered": False}
    return {"ok": True, "delivered": r.status_code < 300}
