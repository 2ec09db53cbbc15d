from __future__ import annotations
import logging
from typing import Any, Dict, Optional

import redis.asyncio as redis

from ..errors import InvalidInput
from ..helpers import now_ts
from ..infra.sql import GatedSession
from ..infra.timings import timeit
from . import bookings, ledger
from .cache import invalidate_leaderboard
from .orm import PaymentEvent

logger = logging.getLogger(__name__)

SUCCESS = "success"
# `abandoned` is what Paystack reports for an unpaid transaction; it reads
# the current state like any other non-final status
FAILED_OUTCOMES = ("failed",)


def reference_kind(reference: str,
                   metadata: Optional[Dict[str, Any]] = None) -> str:
    """`vote` or `booking`, by reference prefix or gateway metadata."""
    prefix = reference.split("-", 1)[0].upper()
    if prefix in ("VOTE", "FREE"):
        return "vote"
    if prefix == "BOOK":
        return "booking"
    kind = (metadata or {}).get("type")
    if kind in ("voting", "vote"):
        return "vote"
    if kind == "booking":
        return "booking"
    raise InvalidInput(f"Unknown reference kind: {reference}")


async def record_event(gs: GatedSession, reference: str, event: str,
                       outcome: str) -> None:
    async with gs.gated():
        async with gs.session.begin():
            gs.session.add(PaymentEvent(
                reference=reference, event=event, outcome=outcome,
                received_at=now_ts(),
            ))


async def current_status(gs: GatedSession, kind: str,
                         reference: str) -> Optional[str]:
    async with gs.gated():
        async with gs.session.begin():
            if kind == "vote":
                row = await ledger.get_purchase(gs.session, reference)
                return row.payment_status if row else None
            row = await bookings.get_booking_by_reference(gs.session,
                                                          reference)
            return row.status if row else None


async def settle(
    gs: GatedSession,
    r: redis.Redis,
    reference: str,
    outcome: str,
    amount: Optional[int] = None,
    paid_at: Optional[float] = None,
    paystack_reference: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Apply a gateway outcome to whatever the reference pays for.

    Safe to call any number of times for the same reference.
    """
    kind = reference_kind(reference, metadata)
    applied = False
    status = "pending"
    email = None

    if kind == "vote":
        if outcome == SUCCESS:
            async with timeit("ledger.apply"):
                res = await ledger.apply_purchase(
                    gs, reference, amount=amount,
                    paystack_reference=paystack_reference, paid_at=paid_at,
                )
            if res.applied:
                await invalidate_leaderboard(r)
            applied, status, email = res.applied, res.status, res.email
        elif outcome in FAILED_OUTCOMES:
            async with timeit("ledger.fail"):
                res = await ledger.fail_purchase(gs, reference)
            applied, status = res.applied, res.status
        else:
            status = await current_status(gs, kind, reference) or status
    else:
        if outcome == SUCCESS:
            async with timeit("bookings.confirm"):
                res = await bookings.confirm_booking(
                    gs, reference, amount=amount,
                    paystack_reference=paystack_reference, paid_at=paid_at,
                )
        elif outcome in FAILED_OUTCOMES:
            async with timeit("bookings.fail"):
                res = await bookings.fail_booking(gs, reference)
        else:
            res = None
        if res is not None:
            applied, status = res.applied, res.status
        else:
            status = await current_status(gs, kind, reference) or status

    logger.info("settled %s %s outcome=%s applied=%s status=%s",
                kind, reference, outcome, applied, status)
    return {"kind": kind, "reference": reference, "applied": applied,
            "status": status, "email": email}
