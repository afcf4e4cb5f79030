import httpx
import orjson
import pytest

from boxoffice.errors import (
    ConfigurationError, GatewayError, InvalidSignature, SettlementError,
)
from boxoffice.gateway import (
    EVENT_CHARGE_SUCCESS, InitializeRequest, MockGateway, PaystackGateway,
)


def _request(**kw):
    base = dict(
        reference="bo_abc", email="ada@example.com", amount=10598,
        currency="NGN", metadata={"reservation_ids": ["r1"]},
    )
    base.update(kw)
    return InitializeRequest(**base)


async def test_mock_gateway_signs_what_it_verifies():
    gw = MockGateway(secret="s3cret")
    await gw.initialize_transaction(_request())
    gw.complete("bo_abc")

    payload, headers = gw.signed_event("bo_abc")
    event = gw.verify_webhook(payload, headers)

    assert gw.event_kind(event) == EVENT_CHARGE_SUCCESS
    assert gw.event_reference(event) == "bo_abc"
    txn = await gw.verify_transaction("bo_abc")
    assert txn.succeeded
    assert txn.amount == 10598
    assert txn.metadata == {"reservation_ids": ["r1"]}


async def test_failed_payment_event():
    gw = MockGateway()
    await gw.initialize_transaction(_request())
    gw.complete("bo_abc", status="failed")
    payload, headers = gw.signed_event("bo_abc")
    assert gw.event_kind(gw.verify_webhook(payload, headers)) == "charge.failed"
    assert not (await gw.verify_transaction("bo_abc")).succeeded


def test_webhook_rejects_tampering():
    gw = MockGateway(secret="s3cret")
    payload = orjson.dumps({"event": "charge.success"})
    with pytest.raises(InvalidSignature):
        gw.verify_webhook(payload, {})
    with pytest.raises(InvalidSignature):
        gw.verify_webhook(payload, {gw.signature_header: "00" * 64})
    other = MockGateway(secret="other")
    with pytest.raises(InvalidSignature):
        gw.verify_webhook(payload, {gw.signature_header: other.sign(payload)})


def test_webhook_rejects_signed_garbage():
    gw = MockGateway()
    with pytest.raises(SettlementError) as exc:
        gw.verify_webhook(b"not json", {gw.signature_header: gw.sign(b"not json")})
    assert exc.value.status_code == 400


async def test_mock_unknown_reference():
    with pytest.raises(GatewayError):
        await MockGateway().verify_transaction("nope")


def _paystack(handler, **kw):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kw.setdefault("secret_key", "sk_test_123")
    return PaystackGateway(http, base_url="https://paystack.test", **kw)


async def test_paystack_verify_parses_transaction():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json={
            "status": True,
            "message": "Verification successful",
            "data": {
                "reference": "bo_abc",
                "status": "success",
                "amount": 10598,
                "currency": "NGN",
                "channel": "card",
                "paid_at": "2025-06-01T12:00:00.000Z",
                # some integrations store metadata as a JSON string
                "metadata": '{"reservation_ids": ["r1", "r2"]}',
                "customer": {"email": "ada@example.com"},
            },
        })

    gw = _paystack(handler)
    txn = await gw.verify_transaction("bo_abc")

    assert seen["url"] == "https://paystack.test/transaction/verify/bo_abc"
    assert seen["auth"] == "Bearer sk_test_123"
    assert txn.succeeded
    assert txn.amount == 10598
    assert txn.metadata == {"reservation_ids": ["r1", "r2"]}
    assert txn.customer_email == "ada@example.com"


async def test_paystack_initialize_sends_split():
    sent = {}

    def handler(request: httpx.Request) -> httpx.Response:
        sent.update(orjson.loads(request.content))
        return httpx.Response(200, json={
            "status": True,
            "data": {
                "authorization_url": "https://checkout.paystack.com/xyz",
                "access_code": "xyz",
                "reference": "bo_abc",
            },
        })

    gw = _paystack(handler)
    out = await gw.initialize_transaction(_request(
        subaccount="ACCT_1", transaction_charge=400, bearer="account",
    ))

    assert out["authorization_url"] == "https://checkout.paystack.com/xyz"
    assert sent["amount"] == 10598
    assert sent["subaccount"] == "ACCT_1"
    assert sent["transaction_charge"] == 400
    assert sent["bearer"] == "account"


@pytest.mark.parametrize("response", [
    httpx.Response(200, json={"status": False, "message": "Invalid key"}),
    httpx.Response(404, json={"status": False, "message": "not found"}),
    httpx.Response(502, text="bad gateway"),
])
async def test_paystack_errors_become_gateway_errors(response):
    gw = _paystack(lambda request: response)
    with pytest.raises(GatewayError):
        await gw.verify_transaction("bo_abc")


async def test_paystack_unreachable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GatewayError):
        await _paystack(handler).verify_transaction("bo_abc")


async def test_paystack_without_credentials():
    gw = _paystack(lambda request: httpx.Response(200), secret_key="")
    with pytest.raises(ConfigurationError):
        await gw.verify_transaction("bo_abc")
    with pytest.raises(ConfigurationError):
        gw.webhook_secret()


def test_paystack_webhook_signature():
    gw = _paystack(lambda request: httpx.Response(200),
                   webhook_secret="whsec")
    payload = orjson.dumps({"event": "charge.success",
                            "data": {"reference": "bo_abc"}})
    signer = MockGateway(secret="whsec")
    event = gw.verify_webhook(
        payload, {"x-paystack-signature": signer.sign(payload)}
    )
    assert gw.event_reference(event) == "bo_abc"
