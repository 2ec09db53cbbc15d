import json

import httpx
import pytest
from fastapi import HTTPException

from stagepass.errors import GatewayError
from stagepass.paystack import SIGNATURE_HEADER, Paystack, sign
from tests.helpers import SECRET

pytestmark = pytest.mark.asyncio


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def test_initialize_sends_kobo_and_bearer():
    seen = {}

    def handler(request: httpx.Request):
        seen["auth"] = request.headers["authorization"]
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "status": True,
            "message": "Authorization URL created",
            "data": {"authorization_url": "https://checkout.paystack.com/x",
                     "access_code": "x", "reference": "VOTE-1-A"},
        })

    ps = Paystack(secret=SECRET, base_url="https://api.test")
    async with _client(handler) as http:
        init = await ps.initialize(http, "fan@example.com", 100_000,
                                   "VOTE-1-A", "NGN",
                                   "http://app/payments/verify?reference=x",
                                   metadata={"type": "voting"})

    assert seen["auth"] == f"Bearer {SECRET}"
    assert seen["url"] == "https://api.test/transaction/initialize"
    assert seen["body"]["amount"] == 100_000
    assert seen["body"]["metadata"] == {"type": "voting"}
    assert init["authorization_url"] == "https://checkout.paystack.com/x"


async def test_verify_normalizes_response():
    def handler(request: httpx.Request):
        assert request.url.path == "/transaction/verify/BOOK-1-A"
        return httpx.Response(200, json={"status": True, "data": {
            "id": 991, "reference": "BOOK-1-A", "status": "success",
            "amount": 500000, "currency": "NGN",
            "paid_at": "2026-03-01T10:00:00.000Z",
            "metadata": json.dumps({"type": "booking"}),
        }})

    ps = Paystack(secret=SECRET, base_url="https://api.test")
    async with _client(handler) as http:
        v = await ps.verify(http, "BOOK-1-A")

    assert v["status"] == "success"
    assert v["amount"] == 500_000
    assert v["id"] == "991"
    assert v["metadata"] == {"type": "booking"}
    assert v["paid_at"] == pytest.approx(1772359200.0)


async def test_gateway_errors():
    def rejected(request):
        return httpx.Response(400, json={"status": False,
                                         "message": "Invalid key"})

    def unreachable(request):
        raise httpx.ConnectError("boom", request=request)

    ps = Paystack(secret=SECRET, base_url="https://api.test")
    async with _client(rejected) as http:
        with pytest.raises(GatewayError, match="Invalid key"):
            await ps.verify(http, "VOTE-1-A")
    async with _client(unreachable) as http:
        with pytest.raises(GatewayError):
            await ps.verify(http, "VOTE-1-A")


async def test_webhook_signature():
    ps = Paystack(secret=SECRET)
    payload = json.dumps({"event": "charge.success",
                          "data": {"reference": "VOTE-1-A"}}).encode()

    event = ps.verify_webhook(payload, {SIGNATURE_HEADER: sign(payload,
                                                               SECRET)})
    assert ps.event_outcome(event) == "success"
    assert ps.event_reference(event) == "VOTE-1-A"

    with pytest.raises(HTTPException):
        ps.verify_webhook(payload, {SIGNATURE_HEADER: "0" * 128})
    with pytest.raises(HTTPException):
        ps.verify_webhook(payload, {})
    assert ps.event_outcome({"event": "refund.processed"}) is None
