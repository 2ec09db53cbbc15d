import json
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from sqlalchemy import select

from stagepass.deps import SessionAsync, gated
from stagepass.helpers import now_ts, slugify
from stagepass.infra.sql import GatedSession
from stagepass.model.orm import (
    Artist, Event, TicketType, VotePackage, VotingSettings,
)
from stagepass.paystack import SIGNATURE_HEADER, sign

SECRET = "sk_test_secret"


@asynccontextmanager
async def new_gs():
    async with SessionAsync() as session:
        yield GatedSession(session=session, gated=gated)


async def create_artist(stage_name: str, in_contest: bool = True,
                        total_votes: int = 0) -> Artist:
    async with SessionAsync() as db:
        async with db.begin():
            artist = Artist(name=f"{stage_name} Real", stage_name=stage_name,
                            slug=slugify(stage_name), in_contest=in_contest,
                            total_votes=total_votes)
            db.add(artist)
    return artist


async def open_voting(hours: float = 24, active: bool = True,
                      started_hours_ago: float = 1) -> VotingSettings:
    now = now_ts()
    async with SessionAsync() as db:
        async with db.begin():
            settings = VotingSettings(
                voting_start=now - started_hours_ago * 3600,
                voting_end=now + hours * 3600,
                is_active=active,
            )
            db.add(settings)
    return settings


async def packages() -> dict:
    """Seeded vote packages by name."""
    async with SessionAsync() as db:
        rows = (await db.execute(select(VotePackage))).scalars()
        return {p.name: p for p in rows}


async def create_event(title: str = "Lagos Live", days_ahead: float = 7,
                       tickets: Optional[list] = None,
                       **fields) -> tuple[Event, list]:
    """`tickets` is a list of (name, price_kobo, quantity, max_per_order)."""
    tickets = tickets if tickets is not None else [
        ("Regular", 500_000, 100, 10),
        ("VIP", 2_000_000, 5, 2),
    ]
    async with SessionAsync() as db:
        async with db.begin():
            event = Event(title=title, slug=slugify(title),
                          date=now_ts() + days_ahead * 86400,
                          venue="Eko Hotel", city="Lagos", **fields)
            db.add(event)
            await db.flush()
            types = []
            for name, price, qty, max_per_order in tickets:
                tt = TicketType(event_id=event.id, name=name, price=price,
                                quantity=qty, available=qty,
                                max_per_order=max_per_order)
                db.add(tt)
                types.append(tt)
    return event, types


async def get(model, key):
    async with SessionAsync() as db:
        return await db.get(model, key)


def paystack_event(reference: str, amount: int, outcome: str = "success",
                   metadata: Optional[dict] = None) -> dict:
    return {
        "event": f"charge.{outcome}",
        "data": {
            "id": 4242,
            "reference": reference,
            "amount": amount,
            "currency": "NGN",
            "status": outcome,
            "paid_at": "2026-01-01T12:00:00.000Z",
            "metadata": metadata or {},
        },
    }


async def post_webhook(client: httpx.AsyncClient, event: dict,
                       secret: str = SECRET) -> httpx.Response:
    payload = json.dumps(event).encode()
    return await client.post(
        "/api/webhooks/paystack",
        content=payload,
        headers={SIGNATURE_HEADER: sign(payload, secret),
                 "content-type": "application/json"},
    )


async def checkout(client: httpx.AsyncClient, email: str, items: list,
                   headers: Optional[dict] = None) -> httpx.Response:
    return await client.post("/api/voting/checkout",
                             json={"email": email, "items": items},
                             headers=headers or {})
