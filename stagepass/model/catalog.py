from __future__ import annotations
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import InvalidInput, NotFound
from ..helpers import now_ts, to_iso
from .ledger import artist_json
from .orm import Artist, Event, EventArtist, TicketType

EVENT_FILTERS = ("all", "upcoming", "past", "featured", "soldout", "ongoing")


def event_json(e: Event) -> Dict[str, Any]:
    return {
        "id": e.id,
        "slug": e.slug,
        "title": e.title,
        "description": e.description or "",
        "short_description": e.short_description or "",
        "venue": e.venue,
        "city": e.city,
        "date": to_iso(e.date),
        "end_date": to_iso(e.end_date),
        "capacity": e.capacity,
        "tickets_sold": e.tickets_sold,
        "status": e.status,
        "category": e.category,
        "featured": bool(e.featured),
        "is_published": bool(e.is_published),
        "image_url": e.image_url or "",
    }


def ticket_type_json(t: TicketType) -> Dict[str, Any]:
    return {
        "id": t.id,
        "name": t.name,
        "description": t.description or "",
        "price": t.price,
        "currency": t.currency,
        "quantity": t.quantity,
        "available": t.available,
        "max_per_order": t.max_per_order,
        "sale_start": to_iso(t.sale_start),
        "sale_end": to_iso(t.sale_end),
    }


def _filter_clause(name: str, now: float):
    if name == "upcoming":
        return and_(Event.date >= now,
                    Event.status.notin_(("cancelled", "completed")))
    if name == "past":
        return or_(Event.date < now, Event.status == "completed")
    if name == "featured":
        return Event.featured.is_(True)
    if name == "soldout":
        return or_(Event.status == "soldout",
                   and_(Event.capacity.is_not(None),
                        Event.tickets_sold >= Event.capacity))
    if name == "ongoing":
        return or_(Event.status == "ongoing",
                   and_(Event.date <= now, Event.end_date >= now))
    return None


async def list_events(
    db: AsyncSession,
    page: int,
    limit: int,
    filter_name: str = "all",
    category: Optional[str] = None,
    search: Optional[str] = None,
    published_only: bool = True,
) -> Tuple[List[Event], int]:
    if filter_name not in EVENT_FILTERS:
        raise InvalidInput(f"Unknown filter {filter_name}")
    conds = []
    if published_only:
        conds.append(Event.is_published.is_(True))
    clause = _filter_clause(filter_name, now_ts())
    if clause is not None:
        conds.append(clause)
    if category:
        conds.append(Event.category == category)
    if search:
        pattern = f"%{search.strip()}%"
        conds.append(or_(Event.title.ilike(pattern),
                         Event.description.ilike(pattern),
                         Event.venue.ilike(pattern),
                         Event.city.ilike(pattern)))

    total = (await db.execute(
        select(func.count()).select_from(Event).where(*conds)
    )).scalar_one()
    order = Event.date.desc() if filter_name == "past" else Event.date.asc()
    rows = (await db.execute(
        select(Event).where(*conds).order_by(order)
        .offset((page - 1) * limit).limit(limit)
    )).scalars()
    return list(rows), int(total)


async def event_detail(db: AsyncSession, slug: str,
                       published_only: bool = True) -> Dict[str, Any]:
    q = select(Event).where(Event.slug == slug)
    if published_only:
        q = q.where(Event.is_published.is_(True))
    event = (await db.execute(q)).scalars().first()
    if event is None:
        raise NotFound("Event not found")
    types = (await db.execute(
        select(TicketType).where(TicketType.event_id == event.id)
        .order_by(TicketType.price)
    )).scalars()
    artists = (await db.execute(
        select(Artist)
        .join(EventArtist, EventArtist.artist_id == Artist.id)
        .where(EventArtist.event_id == event.id)
        .order_by(Artist.stage_name)
    )).scalars()
    out = event_json(event)
    out["ticket_types"] = [ticket_type_json(t) for t in types]
    out["artists"] = [artist_json(a) for a in artists]
    return out


async def list_artists(db: AsyncSession, featured: Optional[bool] = None,
                       search: Optional[str] = None) -> List[Artist]:
    q = select(Artist)
    if featured is not None:
        q = q.where(Artist.featured.is_(featured))
    if search:
        pattern = f"%{search.strip()}%"
        q = q.where(or_(Artist.name.ilike(pattern),
                        Artist.stage_name.ilike(pattern)))
    q = q.order_by(Artist.display_order.asc().nulls_last(), Artist.stage_name)
    return list((await db.execute(q)).scalars())


async def artist_detail(db: AsyncSession, slug: str) -> Dict[str, Any]:
    artist = (await db.execute(
        select(Artist).where(Artist.slug == slug)
    )).scalars().first()
    if artist is None:
        raise NotFound("Artist not found")
    events = (await db.execute(
        select(Event)
        .join(EventArtist, EventArtist.event_id == Event.id)
        .where(EventArtist.artist_id == artist.id,
               Event.is_published.is_(True))
        .order_by(Event.date)
    )).scalars()
    out = artist_json(artist)
    out["events"] = [event_json(e) for e in events]
    return out
