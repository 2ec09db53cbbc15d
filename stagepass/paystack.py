from __future__ import annotations
import hashlib
import hmac
import json
import logging
import secrets
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, TypedDict

import httpx
import redis.asyncio as redis
from fastapi import HTTPException

from .config import (
    APP_URL, MOCK_WEBHOOK_URL, PAYSTACK_BASE_URL, PAYSTACK_SECRET_KEY,
)
from .errors import GatewayError, NotFound
from .helpers import now_ts, parse_iso, to_iso

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-paystack-signature"


class InitializeResult(TypedDict):
    authorization_url: str
    access_code: str
    reference: str


class VerifyResult(TypedDict):
    reference: str
    # success | failed | abandoned | pending | ...
    status: str
    amount: int
    currency: str
    paid_at: Optional[float]
    id: Optional[str]
    metadata: Dict[str, Any]


def sign(payload: bytes, secret: str = PAYSTACK_SECRET_KEY) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha512).hexdigest()


def _metadata(raw: Any) -> Dict[str, Any]:
    # paystack echoes metadata back either as an object or a json string
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw:
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        return value if isinstance(value, dict) else {}
    return {}


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    name = "abstract"

    def __init__(self, secret: str = PAYSTACK_SECRET_KEY):
        self.secret = secret

    @abstractmethod
    async def initialize(
        self, http: httpx.AsyncClient, email: str, amount: int,
        reference: str, currency: str, callback_url: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> InitializeResult: ...

    @abstractmethod
    async def verify(self, http: httpx.AsyncClient,
                     reference: str) -> VerifyResult: ...

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get(SIGNATURE_HEADER)
        expected = sign(payload, self.secret)
        if not sig or not hmac.compare_digest(expected, sig):
            raise HTTPException(status_code=400, detail="Invalid signature")
        try:
            return json.loads(payload.decode())
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise HTTPException(status_code=400, detail="Invalid JSON")

    # "success" | "failed" | None for events we only acknowledge
    def event_outcome(self, event: dict) -> Optional[str]:
        return {
            "charge.success": "success",
            "charge.failed": "failed",
        }.get(event.get("event", ""))

    def event_reference(self, event: dict) -> str:
        return (event.get("data") or {}).get("reference") or ""

    def event_data(self, event: dict) -> Dict[str, Any]:
        data = event.get("data") or {}
        return {
            "amount": data.get("amount"),
            "paid_at": parse_iso(data.get("paid_at")),
            "id": str(data["id"]) if data.get("id") is not None else None,
            "metadata": _metadata(data.get("metadata")),
        }


# ----------------------------
# Paystack
# ----------------------------
class Paystack(PaymentAdapter):
    name = "paystack"

    def __init__(self, secret: str = PAYSTACK_SECRET_KEY,
                 base_url: str = PAYSTACK_BASE_URL):
        super().__init__(secret)
        self.base_url = base_url

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.secret}",
            "Content-Type": "application/json",
        }

    async def _call(self, http: httpx.AsyncClient, method: str,
                    path: str, body: Optional[dict] = None) -> dict:
        try:
            resp = await http.request(method, f"{self.base_url}{path}",
                                      json=body, headers=self._headers())
        except httpx.HTTPError as e:
            logger.warning("paystack %s %s unreachable: %s", method, path, e)
            raise GatewayError("Payment service unavailable") from e
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.status_code >= 300 or not data.get("status"):
            msg = data.get("message") or f"HTTP {resp.status_code}"
            logger.warning("paystack %s %s failed: %s", method, path, msg)
            raise GatewayError(f"Payment service error: {msg}")
        return data.get("data") or {}

    async def initialize(self, http, email, amount, reference, currency,
                         callback_url, metadata=None) -> InitializeResult:
        data = await self._call(http, "POST", "/transaction/initialize", {
            "email": email,
            "amount": int(amount),
            "reference": reference,
            "currency": currency,
            "callback_url": callback_url,
            "metadata": metadata or {},
        })
        return {
            "authorization_url": data.get("authorization_url", ""),
            "access_code": data.get("access_code", ""),
            "reference": data.get("reference", reference),
        }

    async def verify(self, http, reference) -> VerifyResult:
        data = await self._call(http, "GET",
                                f"/transaction/verify/{reference}")
        return {
            "reference": data.get("reference", reference),
            "status": data.get("status", "pending"),
            "amount": int(data.get("amount") or 0),
            "currency": data.get("currency", ""),
            "paid_at": parse_iso(data.get("paid_at") or data.get("paidAt")),
            "id": str(data["id"]) if data.get("id") is not None else None,
            "metadata": _metadata(data.get("metadata")),
        }


# ----------------------------
# Local simulator
# ----------------------------
def k_mock(reference: str) -> str: return f"mockpay:{reference}"


MOCK_SESSION_TTL = 24 * 3600


class MockPaystack(PaymentAdapter):
    """Paystack look-alike: sessions in Redis, signed webhooks on demand."""
    name = "mock"

    def __init__(self, r: redis.Redis, secret: str = PAYSTACK_SECRET_KEY,
                 webhook_url: str = MOCK_WEBHOOK_URL):
        super().__init__(secret)
        self.r = r
        self.webhook_url = webhook_url

    async def initialize(self, http, email, amount, reference, currency,
                         callback_url, metadata=None) -> InitializeResult:
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(k_mock(reference), mapping={
            "reference": reference,
            "email": email,
            "amount": str(int(amount)),
            "currency": currency,
            "callback_url": callback_url,
            "metadata": json.dumps(metadata or {}),
            "status": "pending",
            "created_at": str(now_ts()),
        })
        pipe.expire(k_mock(reference), MOCK_SESSION_TTL)
        await pipe.execute()
        return {
            "authorization_url": f"{APP_URL}/mockpay/{reference}",
            "access_code": f"mock_{secrets.token_hex(6)}",
            "reference": reference,
        }

    async def get_session(self, reference: str) -> Optional[dict]:
        ps = await self.r.hgetall(k_mock(reference))
        return ps or None

    async def verify(self, http, reference) -> VerifyResult:
        ps = await self.get_session(reference)
        if ps is None:
            raise GatewayError("Transaction reference not found")
        paid_at = ps.get("paid_at")
        return {
            "reference": reference,
            "status": ps["status"],
            "amount": int(ps["amount"]),
            "currency": ps["currency"],
            "paid_at": float(paid_at) if paid_at else None,
            "id": ps.get("id"),
            "metadata": _metadata(ps.get("metadata")),
        }

    def build_event(self, ps: dict, outcome: str,
                    transaction_id: int) -> dict:
        return {
            "event": f"charge.{outcome}",
            "data": {
                "id": transaction_id,
                "reference": ps["reference"],
                "amount": int(ps["amount"]),
                "currency": ps["currency"],
                "status": outcome,
                "paid_at": to_iso(now_ts()) if outcome == "success" else None,
                "customer": {"email": ps["email"]},
                "metadata": _metadata(ps.get("metadata")),
            },
        }

    async def emit(self, http: httpx.AsyncClient, reference: str,
                   outcome: str, times: int = 1) -> dict:
        """Resolve the session and deliver its webhook `times` times."""
        if outcome not in ("success", "failed"):
            raise HTTPException(400, detail="invalid outcome")
        ps = await self.get_session(reference)
        if ps is None:
            raise NotFound("payment session not found")

        transaction_id = secrets.randbelow(10 ** 9)
        updates = {"status": outcome, "id": str(transaction_id)}
        if outcome == "success":
            updates["paid_at"] = str(now_ts())
        await self.r.hset(k_mock(reference), mapping=updates)
        ps.update(updates)

        payload = json.dumps(self.build_event(ps, outcome,
                                              transaction_id)).encode()
        headers = {
            SIGNATURE_HEADER: sign(payload, self.secret),
            "content-type": "application/json",
        }
        for _ in range(max(1, times)):
            try:
                resp = await http.post(self.webhook_url, content=payload,
                                       headers=headers)
                logger.info("mock webhook %s %s -> %s", outcome, reference,
                            resp.status_code)
            except httpx.HTTPError as e:
                # the buyer can press the button again
                logger.warning("mock webhook delivery failed: %s", e)
        return ps


def new_adapter(backend: str, r: redis.Redis) -> PaymentAdapter:
    if backend == "paystack":
        return Paystack()
    return MockPaystack(r)
