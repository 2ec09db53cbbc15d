import asyncio

import pytest
from sqlalchemy import select

from stagepass.deps import SessionAsync
from stagepass.model.orm import Artist, Booking, PaymentEvent, VotePurchase
from tests.helpers import (
    checkout, create_artist, create_event, get, open_voting, packages,
    paystack_event, post_webhook,
)

pytestmark = pytest.mark.asyncio


async def _vote_checkout(client, artist, pkg, qty=1, email="fan@example.com"):
    r = await checkout(client, email, [
        {"artist_id": artist.id, "package_id": pkg.id, "quantity": qty},
    ])
    assert r.status_code == 200, r.text
    return r.json()


async def _purchase(reference):
    async with SessionAsync() as db:
        return (await db.execute(
            select(VotePurchase).where(VotePurchase.reference == reference)
        )).scalars().one()


async def _events(reference):
    async with SessionAsync() as db:
        rows = (await db.execute(
            select(PaymentEvent)
            .where(PaymentEvent.reference == reference)
            .order_by(PaymentEvent.id)
        )).scalars()
        return [(e.event, e.outcome) for e in rows]


async def test_rejects_bad_signature(client):
    event = paystack_event("VOTE-1-ABC", 100_000)
    r = await post_webhook(client, event, secret="not-the-secret")
    assert r.status_code == 400

    r = await client.post("/api/webhooks/paystack", json=event)
    assert r.status_code == 400


async def test_success_is_applied_once(client):
    await open_voting()
    burna = await create_artist("Burna")
    pkgs = await packages()
    co = await _vote_checkout(client, burna, pkgs["Starter"], qty=2)
    assert co["total_votes"] == 20
    assert co["total_amount"] == 200_000
    assert "/mockpay/" in co["authorization_url"]

    event = paystack_event(co["reference"], co["total_amount"])
    first = await post_webhook(client, event)
    second = await post_webhook(client, event)

    assert first.status_code == 200, first.text
    assert first.json() == {"ok": True, "kind": "vote",
                            "status": "completed"}
    assert second.status_code == 200
    assert second.json()["idempotent"] is True
    assert (await get(Artist, burna.id)).total_votes == 20

    purchase = await _purchase(co["reference"])
    assert purchase.payment_status == "completed"
    assert purchase.paystack_reference == "4242"
    assert await _events(co["reference"]) == [
        ("charge.success", "applied"),
        ("charge.success", "duplicate"),
    ]


async def test_concurrent_deliveries(client):
    await open_voting()
    burna = await create_artist("Burna")
    pkgs = await packages()
    co = await _vote_checkout(client, burna, pkgs["Supporter"])
    event = paystack_event(co["reference"], co["total_amount"])

    results = await asyncio.gather(
        *[post_webhook(client, event) for _ in range(6)]
    )

    assert all(r.status_code == 200 for r in results)
    assert sum(1 for r in results if not r.json().get("idempotent")) == 1
    assert (await get(Artist, burna.id)).total_votes == 50


async def test_unknown_reference(client):
    r = await post_webhook(client, paystack_event("VOTE-1-NOPE", 100))
    assert r.status_code == 404
    assert r.json()["code"] == "NOT_FOUND"
    assert await _events("VOTE-1-NOPE") == [("charge.success", "not_found")]

    r = await post_webhook(client, paystack_event("WHAT-1-NOPE", 100))
    assert r.status_code == 400


async def test_amount_mismatch_keeps_purchase_pending(client):
    await open_voting()
    burna = await create_artist("Burna")
    pkgs = await packages()
    co = await _vote_checkout(client, burna, pkgs["Starter"])

    r = await post_webhook(client, paystack_event(co["reference"], 100))

    assert r.status_code == 409
    assert r.json()["code"] == "AMOUNT_MISMATCH"
    assert (await _purchase(co["reference"])).payment_status == "pending"
    assert (await get(Artist, burna.id)).total_votes == 0


async def test_unhandled_events_are_acknowledged(client):
    event = paystack_event("VOTE-1-ABC", 100)
    event["event"] = "transfer.success"
    r = await post_webhook(client, event)
    assert r.status_code == 200
    assert r.json() == {"ok": True, "ignored": True}


async def test_declined_then_paid_credits_once(client):
    await open_voting()
    burna = await create_artist("Burna")
    pkgs = await packages()
    co = await _vote_checkout(client, burna, pkgs["Starter"])
    paid = paystack_event(co["reference"], co["total_amount"])

    failed = await post_webhook(
        client, paystack_event(co["reference"], co["total_amount"], "failed")
    )
    retry = await post_webhook(client, paid)
    dup = await post_webhook(client, paid)

    assert failed.json()["status"] == "failed"
    assert retry.json() == {"ok": True, "kind": "vote", "status": "completed"}
    assert dup.json()["idempotent"] is True
    assert (await get(Artist, burna.id)).total_votes == 10
    assert (await _purchase(co["reference"])).payment_status == "completed"


async def test_booking_confirmed_by_webhook(client):
    event, (regular, _) = await create_event()
    r = await client.post("/api/bookings", json={
        "event_id": event.id,
        "email": "ada@example.com",
        "full_name": "Ada Fan",
        "items": [{"ticket_type_id": regular.id, "quantity": 2}],
    })
    assert r.status_code == 200, r.text
    bk = r.json()
    assert bk["reference"].startswith("BOOK-")
    assert bk["total_amount"] == 1_000_000

    r = await post_webhook(
        client, paystack_event(bk["reference"], bk["total_amount"],
                               metadata={"type": "booking"})
    )
    assert r.json() == {"ok": True, "kind": "booking", "status": "confirmed"}

    booking = await get(Booking, bk["booking_id"])
    assert booking.status == "confirmed"
    assert booking.payment_status == "completed"

    r = await client.get(f"/api/bookings/{bk['booking_id']}")
    assert r.json()["data"]["status"] == "confirmed"
    r = await client.get("/api/bookings/lookup", params={
        "reference": bk["booking_reference"], "email": "ADA@example.com",
    })
    assert r.json()["data"]["id"] == bk["booking_id"]


async def test_leaderboard_cache_is_invalidated(client):
    await open_voting()
    burna = await create_artist("Burna")
    pkgs = await packages()

    r = await client.get("/api/voting/leaderboard")
    assert r.json()["data"]["total_votes"] == 0

    co = await _vote_checkout(client, burna, pkgs["Starter"])
    await post_webhook(client, paystack_event(co["reference"],
                                              co["total_amount"]))

    r = await client.get("/api/voting/leaderboard")
    board = r.json()["data"]
    assert board["total_votes"] == 10
    assert board["entries"][0]["rank"] == 1


async def test_mock_gateway_end_to_end(client):
    await open_voting()
    burna = await create_artist("Burna")
    wiz = await create_artist("Wiz")
    pkgs = await packages()
    r = await checkout(client, "fan@example.com", [
        {"artist_id": burna.id, "package_id": pkgs["Super Fan"].id,
         "quantity": 1},
        {"artist_id": wiz.id, "package_id": pkgs["Starter"].id,
         "quantity": 1},
    ])
    co = r.json()
    reference = co["reference"]

    page = await client.get(f"/mockpay/{reference}")
    assert page.status_code == 200
    assert reference in page.text

    r = await client.post(f"/mockpay/{reference}/emit",
                          data={"t": "success", "times": "3"},
                          follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"].endswith(
        f"/payments/verify?reference={reference}"
    )

    assert (await get(Artist, burna.id)).total_votes == 100
    assert (await get(Artist, wiz.id)).total_votes == 10
    assert sorted(o for _, o in await _events(reference)) == [
        "applied", "duplicate", "duplicate",
    ]

    r = await client.get("/api/payments/verify",
                         params={"reference": reference})
    data = r.json()
    assert data["success"] is True
    assert data["data"]["status"] == "success"
    assert data["data"]["record_status"] == "completed"
    assert data["data"]["kind"] == "vote"
    assert (await get(Artist, burna.id)).total_votes == 100


async def test_mock_emit_unknown_session(client):
    r = await client.post("/mockpay/VOTE-1-NOPE/emit",
                          data={"t": "success"}, follow_redirects=False)
    assert r.status_code == 404
