from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from stagepass.deps import SessionAsync
from stagepass.model.orm import Artist, Booking
from tests.helpers import (
    checkout, create_artist, create_event, get, open_voting, packages,
)

pytestmark = pytest.mark.asyncio


def _iso(**delta) -> str:
    return (datetime.now(timezone.utc) + timedelta(**delta)).isoformat()


async def test_admin_api_requires_login(client):
    r = await client.get("/api/admin/artists")
    assert r.status_code == 401

    r = await client.get("/admin", follow_redirects=False)
    assert r.status_code == 307
    assert r.headers["location"].startswith("/admin/login")

    r = await client.post("/admin/login", data={
        "username": "admin", "password": "wrong", "next": "/admin",
    })
    assert r.status_code == 401
    r = await client.get("/api/admin/artists")
    assert r.status_code == 401


async def test_login_redirect_stays_on_site(client):
    r = await client.post("/admin/login", data={
        "username": "admin", "password": "supasecret",
        "next": "https://evil.example.com",
    }, follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"] == "/admin"


async def test_dashboard_and_logout(admin_client):
    r = await admin_client.get("/admin")
    assert r.status_code == 200
    assert "StagePass" in r.text

    await admin_client.get("/admin/logout", follow_redirects=False)
    r = await admin_client.get("/api/admin/artists")
    assert r.status_code == 401


async def test_artist_crud(admin_client):
    r = await admin_client.post("/api/admin/artists", json={
        "name": "Damini Ogulu", "stage_name": "Burna Boy",
        "genre": ["afrobeats"],
    })
    assert r.status_code == 201, r.text
    artist = r.json()["data"]
    assert artist["slug"] == "burna-boy"
    assert artist["rank"] == 1

    r = await admin_client.put(f"/api/admin/artists/{artist['id']}",
                               json={"featured": True, "bio": "Giant"})
    assert r.json()["data"]["featured"] is True

    r = await admin_client.get("/api/artists", params={"featured": "true"})
    assert [a["stage_name"] for a in r.json()["data"]] == ["Burna Boy"]
    r = await admin_client.get("/api/artists/burna-boy")
    assert r.json()["data"]["bio"] == "Giant"

    r = await admin_client.delete(f"/api/admin/artists/{artist['id']}")
    assert r.json() == {"ok": True}
    r = await admin_client.get("/api/artists/burna-boy")
    assert r.status_code == 404


async def test_artist_with_votes_cannot_be_deleted(admin_client):
    artist = await create_artist("Burna", total_votes=5)
    r = await admin_client.delete(f"/api/admin/artists/{artist.id}")
    assert r.status_code == 409
    assert r.json()["code"] == "CONFLICT"

    async with SessionAsync() as db:
        async with db.begin():
            await db.execute(update(Artist).where(Artist.id == artist.id)
                             .values(rank=1))

    # removing from the contest is the way out
    r = await admin_client.put(f"/api/admin/artists/{artist.id}",
                               json={"in_contest": False})
    assert r.status_code == 200
    assert r.json()["data"]["rank"] is None
    r = await admin_client.get("/api/voting/artists")
    assert r.json()["data"] == []
    r = await admin_client.get("/api/artists/burna")
    assert r.json()["data"]["rank"] is None


async def test_event_management(admin_client):
    r = await admin_client.post("/api/admin/events", json={
        "title": "Afro Nation", "date": _iso(days=30), "venue": "Tafawa",
        "city": "Lagos", "category": "festival",
    })
    assert r.status_code == 201, r.text
    event = r.json()["data"]

    r = await admin_client.post(
        f"/api/admin/events/{event['id']}/ticket-types",
        json={"name": "GA", "price": 250_000, "quantity": 50,
              "max_per_order": 4},
    )
    assert r.status_code == 201
    artist = await create_artist("Rema")
    r = await admin_client.put(f"/api/admin/events/{event['id']}/artists",
                               json={"artist_ids": [artist.id]})
    assert r.json()["artist_ids"] == [artist.id]

    r = await admin_client.get(f"/api/events/{event['slug']}")
    detail = r.json()["data"]
    assert detail["ticket_types"][0]["available"] == 50
    assert [a["stage_name"] for a in detail["artists"]] == ["Rema"]

    r = await admin_client.put(f"/api/admin/events/{event['id']}",
                               json={"status": "bogus"})
    assert r.status_code == 400
    r = await admin_client.put(f"/api/admin/events/{event['id']}",
                               json={"featured": True})
    assert r.json()["data"]["featured"] is True

    r = await admin_client.delete(f"/api/admin/events/{event['id']}")
    assert r.json() == {"ok": True}


async def test_event_with_bookings_cannot_be_deleted(admin_client):
    event, (regular, _) = await create_event()
    r = await admin_client.post("/api/bookings", json={
        "event_id": event.id, "email": "ada@example.com",
        "full_name": "Ada Fan",
        "items": [{"ticket_type_id": regular.id, "quantity": 1}],
    })
    assert r.status_code == 200

    r = await admin_client.delete(f"/api/admin/events/{event.id}")
    assert r.status_code == 409


async def test_users(admin_client):
    r = await admin_client.post("/api/admin/users", json={
        "email": "Editor@Example.com", "role": "editor",
    })
    assert r.status_code == 201
    user = r.json()["data"]
    assert user["email"] == "editor@example.com"

    r = await admin_client.post("/api/admin/users",
                                json={"email": "editor@example.com"})
    assert r.status_code == 409
    r = await admin_client.put(f"/api/admin/users/{user['id']}",
                               json={"role": "root"})
    assert r.status_code == 400

    r = await admin_client.get("/api/admin/users",
                               params={"role": "editor"})
    assert len(r.json()["data"]) == 1
    r = await admin_client.delete(f"/api/admin/users/{user['id']}")
    assert r.json() == {"ok": True}


async def test_packages(admin_client):
    r = await admin_client.get("/api/admin/packages")
    assert len(r.json()["data"]) == 4

    r = await admin_client.post("/api/admin/packages", json={
        "name": "Legend", "votes": 1000, "price": 7_000_000, "discount": 30,
    })
    assert r.status_code == 201
    pkg = r.json()["data"]

    r = await admin_client.put(f"/api/admin/packages/{pkg['id']}",
                               json={"discount": 130})
    assert r.status_code == 400
    r = await admin_client.put(f"/api/admin/packages/{pkg['id']}",
                               json={"active": False})
    assert r.json()["data"]["active"] is False

    r = await admin_client.get("/api/voting/packages")
    assert "Legend" not in [p["name"] for p in r.json()["data"]]


async def test_voting_settings_open_and_close(admin_client):
    r = await admin_client.get("/api/admin/voting-settings")
    assert r.json()["data"] is None

    r = await admin_client.put("/api/admin/voting-settings", json={
        "voting_start": _iso(hours=-1), "voting_end": _iso(days=3),
    })
    assert r.json()["data"]["is_open"] is True
    r = await admin_client.get("/api/voting/stats")
    assert r.json()["data"]["is_voting_active"] is True

    r = await admin_client.put("/api/admin/voting-settings", json={
        "voting_start": _iso(days=3), "voting_end": _iso(days=1),
    })
    assert r.status_code == 400

    r = await admin_client.put("/api/admin/voting-settings", json={
        "voting_start": _iso(hours=-1), "voting_end": _iso(days=3),
        "is_active": False,
    })
    assert r.json()["data"]["is_open"] is False
    r = await admin_client.get("/api/voting/stats")
    assert r.json()["data"]["is_voting_active"] is False


async def test_reconcile_and_analytics(admin_client, stack):
    await open_voting()
    burna = await create_artist("Burna")
    pkgs = await packages()
    r = await checkout(admin_client, "fan@example.com", [
        {"artist_id": burna.id, "package_id": pkgs["Starter"].id,
         "quantity": 1},
    ])
    reference = r.json()["reference"]
    await stack.state.redis.hset(f"mockpay:{reference}",
                                 mapping={"status": "success"})

    r = await admin_client.post(
        f"/api/admin/purchases/{reference}/reconcile"
    )
    data = r.json()["data"]
    assert data["gateway_status"] == "success"
    assert data["applied"] is True
    assert data["status"] == "completed"
    assert (await get(Artist, burna.id)).total_votes == 10

    r = await admin_client.post(
        f"/api/admin/purchases/{reference}/reconcile"
    )
    assert r.json()["data"]["applied"] is False

    r = await admin_client.get("/api/admin/votes")
    votes = r.json()["data"]
    assert votes["by_status"]["completed"]["votes"] == 10
    assert votes["per_artist"][0]["stage_name"] == "Burna"

    r = await admin_client.get("/api/admin/purchases",
                               params={"status": "completed"})
    assert [p["reference"] for p in r.json()["data"]] == [reference]

    r = await admin_client.get("/api/admin/timings")
    assert "ledger.apply" in r.json()["data"]


async def test_expire_and_cancel_bookings(admin_client):
    event, (regular, _) = await create_event()
    holds = []
    for email in ("a@example.com", "b@example.com"):
        r = await admin_client.post("/api/bookings", json={
            "event_id": event.id, "email": email, "full_name": "Fan",
            "items": [{"ticket_type_id": regular.id, "quantity": 2}],
        })
        holds.append(r.json()["booking_id"])

    async with SessionAsync() as db:
        async with db.begin():
            await db.execute(update(Booking)
                             .where(Booking.id == holds[0])
                             .values(expires_at=0))

    r = await admin_client.post("/api/admin/bookings/expire")
    assert r.json() == {"ok": True, "released": 1}

    r = await admin_client.delete(f"/api/bookings/{holds[1]}")
    assert r.json() == {"ok": True, "cancelled": True,
                        "status": "cancelled"}

    r = await admin_client.get("/api/admin/bookings",
                               params={"status": "cancelled"})
    assert [b["id"] for b in r.json()["data"]] == [holds[1]]
    assert (await get(Booking, holds[0])).status == "expired"


async def test_cancel_booking_requires_admin(client):
    r = await client.delete("/api/bookings/whatever")
    assert r.status_code == 401
