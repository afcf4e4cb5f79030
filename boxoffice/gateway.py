from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
import hashlib
import hmac
import os

import httpx
import orjson

from .errors import (
    ConfigurationError, GatewayError, InvalidSignature, SettlementError,
)
from .logger_config import logger

GATEWAY_BACKEND = os.environ.get("GATEWAY_BACKEND", "mock").lower()
PAYSTACK_SECRET_KEY = os.environ.get("PAYSTACK_SECRET_KEY", "")
PAYSTACK_WEBHOOK_SECRET = os.environ.get("PAYSTACK_WEBHOOK_SECRET", "")
PAYSTACK_BASE_URL = os.environ.get(
    "PAYSTACK_BASE_URL", "https://api.paystack.co"
)
MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")

STATUS_SUCCESS = "success"
EVENT_CHARGE_SUCCESS = "charge.success"


@dataclass(frozen=True)
class GatewayTransaction:
    reference: str
    status: str
    amount: int  # minor units
    currency: str
    channel: Optional[str] = None
    paid_at: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    customer_email: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_SUCCESS


@dataclass(frozen=True)
class InitializeRequest:
    reference: str
    email: str
    amount: int  # minor units
    currency: str
    callback_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    # split payment to the organizer's sub-account
    subaccount: Optional[str] = None
    transaction_charge: Optional[int] = None
    bearer: Optional[str] = None

    def as_payload(self) -> dict:
        body = {
            "reference": self.reference,
            "email": self.email,
            "amount": self.amount,
            "currency": self.currency,
            "metadata": self.metadata,
        }
        if self.callback_url:
            body["callback_url"] = self.callback_url
        if self.subaccount:
            body["subaccount"] = self.subaccount
            body["transaction_charge"] = self.transaction_charge
            body["bearer"] = self.bearer
        return body


def _parse_metadata(raw: Any) -> Dict[str, Any]:
    # gateways hand metadata back either as an object or as a JSON string
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, (str, bytes)) and raw:
        try:
            parsed = orjson.loads(raw)
        except orjson.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def transaction_from_data(data: dict) -> GatewayTransaction:
    customer = data.get("customer") or {}
    return GatewayTransaction(
        reference=str(data.get("reference") or ""),
        status=str(data.get("status") or "unknown"),
        amount=int(data.get("amount") or 0),
        currency=str(data.get("currency") or ""),
        channel=data.get("channel"),
        paid_at=data.get("paid_at") or data.get("paidAt"),
        metadata=_parse_metadata(data.get("metadata")),
        customer_email=customer.get("email"),
    )


def _sign(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha512).hexdigest()


# ----------------------------
# Payment Gateway Interface
# ----------------------------
class PaymentGateway(ABC):
    signature_header = "x-paystack-signature"

    @abstractmethod
    async def initialize_transaction(self, req: InitializeRequest) -> dict: ...

    @abstractmethod
    async def verify_transaction(self, reference: str) -> GatewayTransaction:
        ...

    @abstractmethod
    def webhook_secret(self) -> str: ...

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        secret = self.webhook_secret()
        sig = headers.get(self.signature_header)
        expected = _sign(secret, payload)
        if not sig or not hmac.compare_digest(expected, sig):
            raise InvalidSignature()
        try:
            event = orjson.loads(payload)
        except orjson.JSONDecodeError:
            raise SettlementError("Invalid JSON", 400)
        if not isinstance(event, dict):
            raise SettlementError("Invalid event", 400)
        return event

    # "charge.success" | ...
    def event_kind(self, event: dict) -> str:
        return str(event.get("event", ""))

    def event_reference(self, event: dict) -> str:
        return str((event.get("data") or {}).get("reference") or "")


# ----------------------------
# Paystack
# ----------------------------
class PaystackGateway(PaymentGateway):
    def __init__(
        self,
        http: httpx.AsyncClient,
        secret_key: str = PAYSTACK_SECRET_KEY,
        webhook_secret: str = PAYSTACK_WEBHOOK_SECRET,
        base_url: str = PAYSTACK_BASE_URL,
    ):
        self.http = http
        self.secret_key = secret_key
        self._webhook_secret = webhook_secret
        self.base_url = base_url.rstrip("/")

    def _auth(self) -> dict:
        if not self.secret_key:
            raise ConfigurationError("PAYSTACK_SECRET_KEY is not set")
        return {"Authorization": f"Bearer {self.secret_key}"}

    def webhook_secret(self) -> str:
        secret = self._webhook_secret or self.secret_key
        if not secret:
            raise ConfigurationError("no webhook secret configured")
        return secret

    async def _call(self, method: str, path: str, **kw) -> dict:
        headers = self._auth()
        try:
            r = await self.http.request(
                method, f"{self.base_url}{path}", headers=headers, **kw
            )
        except httpx.HTTPError as e:
            raise GatewayError(f"gateway unreachable: {e}") from e
        try:
            body = r.json()
        except ValueError:
            body = {}
        if r.status_code >= 400 or not body.get("status"):
            message = body.get("message") or r.reason_phrase
            raise GatewayError(
                f"gateway {method} {path} failed ({r.status_code}): {message}"
            )
        return body.get("data") or {}

    async def initialize_transaction(self, req: InitializeRequest) -> dict:
        data = await self._call(
            "POST", "/transaction/initialize", json=req.as_payload()
        )
        return {
            "authorization_url": data.get("authorization_url"),
            "access_code": data.get("access_code"),
            "reference": data.get("reference") or req.reference,
        }

    async def verify_transaction(self, reference: str) -> GatewayTransaction:
        data = await self._call("GET", f"/transaction/verify/{reference}")
        return transaction_from_data(data)


# ----------------------------
# In-process mock
# ----------------------------
class MockGateway(PaymentGateway):
    """
    Keeps transactions in memory. `complete()` plays the customer paying,
    `signed_event()` builds the webhook the real gateway would send.
    """
    signature_header = "x-mockpay-signature"

    def __init__(self, secret: str = MOCK_SECRET):
        self.secret = secret
        self._txns: Dict[str, GatewayTransaction] = {}

    def webhook_secret(self) -> str:
        return self.secret

    def sign(self, payload: bytes) -> str:
        return _sign(self.secret, payload)

    def register(self, txn: GatewayTransaction) -> None:
        self._txns[txn.reference] = txn

    async def initialize_transaction(self, req: InitializeRequest) -> dict:
        self.register(GatewayTransaction(
            reference=req.reference,
            status="pending",
            amount=req.amount,
            currency=req.currency,
            metadata=dict(req.metadata),
            customer_email=req.email,
        ))
        return {
            "authorization_url": f"/mockpay/{req.reference}",
            "access_code": f"mock_{req.reference}",
            "reference": req.reference,
        }

    def complete(
        self, reference: str, status: str = STATUS_SUCCESS
    ) -> GatewayTransaction:
        txn = self._txns.get(reference)
        if txn is None:
            raise GatewayError(f"unknown mock transaction {reference}")
        paid_at = None
        if status == STATUS_SUCCESS:
            paid_at = datetime.now(timezone.utc).isoformat()
        txn = replace(txn, status=status, channel="card", paid_at=paid_at)
        self._txns[reference] = txn
        return txn

    async def verify_transaction(self, reference: str) -> GatewayTransaction:
        txn = self._txns.get(reference)
        if txn is None:
            raise GatewayError("Transaction reference not found")
        return txn

    def signed_event(self, reference: str) -> Tuple[bytes, dict]:
        txn = self._txns.get(reference)
        if txn is None:
            raise GatewayError(f"unknown mock transaction {reference}")
        event = {
            "event": (
                EVENT_CHARGE_SUCCESS if txn.succeeded
                else f"charge.{txn.status}"
            ),
            "data": {
                "reference": txn.reference,
                "status": txn.status,
                "amount": txn.amount,
                "currency": txn.currency,
                "channel": txn.channel,
                "paid_at": txn.paid_at,
                "metadata": txn.metadata,
                "customer": {"email": txn.customer_email},
            },
        }
        payload = orjson.dumps(event)
        return payload, {
            self.signature_header: self.sign(payload),
            "content-type": "application/json",
        }


def new_gateway(http: Optional[httpx.AsyncClient] = None) -> PaymentGateway:
    if GATEWAY_BACKEND == "paystack":
        if http is None:
            raise RuntimeError("PaystackGateway requires http=AsyncClient")
        if not PAYSTACK_SECRET_KEY:
            logger.warning(
                "PAYSTACK_SECRET_KEY is not set; gateway calls will fail"
            )
        return PaystackGateway(http)
    return MockGateway()
