from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

import httpx
import redis.asyncio as redis
from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from pydantic import BaseModel
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from starlette.status import HTTP_303_SEE_OTHER

from .config import ADMIN_PASSWORD, ADMIN_USERNAME, CURRENCY
from .deps import (
    gated_session, get_adapter, get_http, get_redis, is_admin,
    require_admin, templates, tx,
)
from .errors import Conflict, InvalidInput, NotFound
from .helpers import ct_equal, is_valid_email, now_ts, parse_iso, slugify, to_iso
from .infra import timings
from .infra.sql import GatedSession
from .model import bookings, catalog, ledger
from .model.cache import invalidate_leaderboard
from .model.orm import (
    Artist, Booking, ContactMessage, Event, EventArtist, Profile, TicketType,
    VotePackage, VotePurchase, VoteTransaction, VotingSettings,
)
from .model.settlement import record_event, settle
from .paystack import PaymentAdapter

logger = logging.getLogger(__name__)

router = APIRouter(tags=["admin"])
api = APIRouter(prefix="/api/admin", dependencies=[Depends(require_admin)])

EVENT_STATUSES = ("upcoming", "ongoing", "completed", "cancelled", "soldout")
ROLES = ("user", "admin", "editor")


# ----------------------------
# Bodies
# ----------------------------
class ArtistIn(BaseModel):
    name: str
    stage_name: str
    slug: Optional[str] = None
    bio: Optional[str] = None
    genre: List[str] = []
    image_url: Optional[str] = None
    social_media: Dict[str, str] = {}
    featured: bool = False
    in_contest: bool = True
    display_order: Optional[int] = None


class ArtistPatch(BaseModel):
    name: Optional[str] = None
    stage_name: Optional[str] = None
    slug: Optional[str] = None
    bio: Optional[str] = None
    genre: Optional[List[str]] = None
    image_url: Optional[str] = None
    social_media: Optional[Dict[str, str]] = None
    featured: Optional[bool] = None
    in_contest: Optional[bool] = None
    display_order: Optional[int] = None


class EventIn(BaseModel):
    title: str
    date: str
    slug: Optional[str] = None
    description: Optional[str] = None
    short_description: Optional[str] = None
    venue: Optional[str] = None
    city: Optional[str] = None
    end_date: Optional[str] = None
    capacity: Optional[int] = None
    status: str = "upcoming"
    category: Optional[str] = None
    featured: bool = False
    is_published: bool = True
    image_url: Optional[str] = None


class EventPatch(BaseModel):
    title: Optional[str] = None
    date: Optional[str] = None
    slug: Optional[str] = None
    description: Optional[str] = None
    short_description: Optional[str] = None
    venue: Optional[str] = None
    city: Optional[str] = None
    end_date: Optional[str] = None
    capacity: Optional[int] = None
    status: Optional[str] = None
    category: Optional[str] = None
    featured: Optional[bool] = None
    is_published: Optional[bool] = None
    image_url: Optional[str] = None


class TicketTypeIn(BaseModel):
    name: str
    price: int
    quantity: int
    description: Optional[str] = None
    max_per_order: Optional[int] = None
    sale_start: Optional[str] = None
    sale_end: Optional[str] = None


class EventArtistsIn(BaseModel):
    artist_ids: List[str]


class ProfileIn(BaseModel):
    email: str
    full_name: Optional[str] = None
    phone: Optional[str] = None
    role: str = "user"


class ProfilePatch(BaseModel):
    full_name: Optional[str] = None
    phone: Optional[str] = None
    role: Optional[str] = None


class PackageIn(BaseModel):
    name: str
    votes: int
    price: int
    discount: int = 0
    popular: bool = False
    active: bool = True
    description: Optional[str] = None


class PackagePatch(BaseModel):
    name: Optional[str] = None
    votes: Optional[int] = None
    price: Optional[int] = None
    discount: Optional[int] = None
    popular: Optional[bool] = None
    active: Optional[bool] = None
    description: Optional[str] = None


class VotingSettingsIn(BaseModel):
    voting_start: str
    voting_end: str
    is_active: bool = True
    rules_text: Optional[str] = None


# ----------------------------
# Serializers
# ----------------------------
def package_json(p: VotePackage) -> Dict[str, Any]:
    return {
        "id": p.id,
        "name": p.name,
        "votes": p.votes,
        "price": p.price,
        "currency": p.currency,
        "discount": p.discount,
        "popular": bool(p.popular),
        "active": bool(p.active),
        "description": p.description or "",
    }


def message_json(m: ContactMessage) -> Dict[str, Any]:
    return {
        "id": m.id,
        "name": m.name,
        "email": m.email,
        "subject": m.subject,
        "message": m.message,
        "status": m.status,
        "ip_address": m.ip_address,
        "created_at": to_iso(m.created_at),
    }


def profile_json(p: Profile) -> Dict[str, Any]:
    return {
        "id": p.id,
        "email": p.email,
        "full_name": p.full_name,
        "phone": p.phone,
        "role": p.role,
        "created_at": to_iso(p.created_at),
    }


def settings_json(s: Optional[VotingSettings]) -> Optional[Dict[str, Any]]:
    if s is None:
        return None
    return {
        "id": s.id,
        "voting_start": to_iso(s.voting_start),
        "voting_end": to_iso(s.voting_end),
        "is_active": bool(s.is_active),
        "is_open": ledger.is_open(s, now_ts()),
        "rules_text": s.rules_text or "",
    }


def _required_ts(value: Optional[str], field: str) -> Optional[float]:
    try:
        return parse_iso(value)
    except ValueError:
        raise InvalidInput(f"{field} must be an ISO-8601 timestamp")


async def _unique_slug(db, model, base: str) -> str:
    slug = slugify(base)
    taken = (await db.execute(
        select(func.count()).select_from(model).where(model.slug == slug)
    )).scalar_one()
    if not taken:
        return slug
    return f"{slug}-{int(now_ts()) % 100000}"


# ----------------------------
# Login + dashboard
# ----------------------------
@router.get("/admin/login", response_class=HTMLResponse)
async def admin_login_get(request: Request, next: str | None = "/admin"):
    return templates.TemplateResponse(
        request, "login.html", {"next": next, "error": None}
    )


@router.post("/admin/login", response_class=HTMLResponse)
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    next: str = Form("/admin"),
):
    ok_user = ct_equal(username.strip(), ADMIN_USERNAME)
    ok_pass = ct_equal(password, ADMIN_PASSWORD)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        # same-site paths only
        safe = next and next.startswith("/") and not next.startswith("//")
        dest = next if safe else "/admin"
        return RedirectResponse(url=dest, status_code=HTTP_303_SEE_OTHER)
    logger.warning("failed admin login for %r", username)
    return templates.TemplateResponse(
        request, "login.html",
        {"next": next, "error": "Invalid credentials."},
        status_code=401,
    )


@router.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return RedirectResponse(url="/", status_code=HTTP_303_SEE_OTHER)


@router.get("/admin", response_class=HTMLResponse)
async def admin_page(request: Request,
                     gs: GatedSession = Depends(gated_session)):
    if not is_admin(request):
        dest = request.url.path
        return RedirectResponse(url=f"/admin/login?next={dest}",
                                status_code=307)
    async with tx(gs) as db:
        stats = await ledger.voting_stats(db)
        analytics = await ledger.vote_analytics(db, recent=10)
        recent_bookings = await bookings.list_bookings(db, limit=10)
        settings = await _latest_settings(db)
    return templates.TemplateResponse(request, "admin.html", {
        "site_name": "StagePass",
        "stats": stats,
        "analytics": analytics,
        "bookings": recent_bookings,
        "settings": settings_json(settings),
        "timings": timings.snapshot(),
    })


# ----------------------------
# Artists
# ----------------------------
@api.get("/artists")
async def list_artists(gs: GatedSession = Depends(gated_session)):
    async with tx(gs) as db:
        artists = await catalog.list_artists(db)
    return {"data": [ledger.artist_json(a) for a in artists]}


@api.post("/artists", status_code=201)
async def create_artist(req: ArtistIn,
                        gs: GatedSession = Depends(gated_session),
                        r: redis.Redis = Depends(get_redis)):
    try:
        async with tx(gs) as db:
            data = req.model_dump()
            data["slug"] = (slugify(req.slug) if req.slug
                            else await _unique_slug(db, Artist,
                                                    req.stage_name))
            artist = Artist(**data)
            db.add(artist)
            await db.flush()
            if artist.in_contest:
                await ledger.recalculate_ranks(db)
                await db.refresh(artist)
    except IntegrityError:
        raise Conflict("An artist with this slug already exists")
    await invalidate_leaderboard(r)
    return {"data": ledger.artist_json(artist)}


@api.put("/artists/{artist_id}")
async def update_artist(artist_id: str, req: ArtistPatch,
                        gs: GatedSession = Depends(gated_session),
                        r: redis.Redis = Depends(get_redis)):
    changes = req.model_dump(exclude_unset=True)
    if "slug" in changes and changes["slug"]:
        changes["slug"] = slugify(changes["slug"])
    try:
        async with tx(gs) as db:
            artist = await db.get(Artist, artist_id)
            if artist is None:
                raise NotFound("Artist not found")
            for key, value in changes.items():
                setattr(artist, key, value)
            artist.updated_at = now_ts()
            if "in_contest" in changes:
                # ranks are only kept for contest artists
                if not artist.in_contest:
                    artist.rank = None
                await db.flush()
                await ledger.recalculate_ranks(db)
                await db.refresh(artist)
    except IntegrityError:
        raise Conflict("An artist with this slug already exists")
    await invalidate_leaderboard(r)
    return {"data": ledger.artist_json(artist)}


@api.delete("/artists/{artist_id}")
async def delete_artist(artist_id: str,
                        gs: GatedSession = Depends(gated_session),
                        r: redis.Redis = Depends(get_redis)):
    async with tx(gs) as db:
        artist = await db.get(Artist, artist_id)
        if artist is None:
            raise NotFound("Artist not found")
        credited = (await db.execute(
            select(func.count()).select_from(VoteTransaction)
            .where(VoteTransaction.artist_id == artist_id)
        )).scalar_one()
        if credited or artist.total_votes:
            raise Conflict("Artist has received votes and cannot be deleted; "
                           "remove them from the contest instead")
        await db.execute(delete(EventArtist)
                         .where(EventArtist.artist_id == artist_id))
        await db.delete(artist)
        await db.flush()
        await ledger.recalculate_ranks(db)
    await invalidate_leaderboard(r)
    return {"ok": True}


# ----------------------------
# Events
# ----------------------------
def _event_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    if "date" in data:
        data["date"] = _required_ts(data["date"], "date")
        if data["date"] is None:
            raise InvalidInput("date is required")
    if "end_date" in data:
        data["end_date"] = _required_ts(data["end_date"], "end_date")
    if "status" in data and data["status"] not in EVENT_STATUSES:
        raise InvalidInput(f"status must be one of {', '.join(EVENT_STATUSES)}")
    if data.get("capacity") is not None and data["capacity"] < 0:
        raise InvalidInput("capacity must not be negative")
    return data


@api.get("/events")
async def list_events(page: int = 1, limit: int = 50,
                      gs: GatedSession = Depends(gated_session)):
    async with tx(gs) as db:
        events, total = await catalog.list_events(
            db, max(1, page), max(1, min(limit, 100)), published_only=False
        )
    return {"data": [catalog.event_json(e) for e in events], "total": total}


@api.post("/events", status_code=201)
async def create_event(req: EventIn,
                       gs: GatedSession = Depends(gated_session)):
    data = _event_fields(req.model_dump())
    try:
        async with tx(gs) as db:
            data["slug"] = (slugify(req.slug) if req.slug
                            else await _unique_slug(db, Event, req.title))
            event = Event(**data)
            db.add(event)
    except IntegrityError:
        raise Conflict("An event with this slug already exists")
    return {"data": catalog.event_json(event)}


@api.put("/events/{event_id}")
async def update_event(event_id: str, req: EventPatch,
                       gs: GatedSession = Depends(gated_session)):
    changes = _event_fields(req.model_dump(exclude_unset=True))
    if changes.get("slug"):
        changes["slug"] = slugify(changes["slug"])
    try:
        async with tx(gs) as db:
            event = await db.get(Event, event_id)
            if event is None:
                raise NotFound("Event not found")
            for key, value in changes.items():
                setattr(event, key, value)
            event.updated_at = now_ts()
    except IntegrityError:
        raise Conflict("An event with this slug already exists")
    return {"data": catalog.event_json(event)}


@api.delete("/events/{event_id}")
async def delete_event(event_id: str,
                       gs: GatedSession = Depends(gated_session)):
    async with tx(gs) as db:
        event = await db.get(Event, event_id)
        if event is None:
            raise NotFound("Event not found")
        booked = (await db.execute(
            select(func.count()).select_from(Booking)
            .where(Booking.event_id == event_id)
        )).scalar_one()
        if booked:
            raise Conflict("Event has bookings; cancel it instead")
        await db.execute(delete(EventArtist)
                         .where(EventArtist.event_id == event_id))
        await db.execute(delete(TicketType)
                         .where(TicketType.event_id == event_id))
        await db.delete(event)
    return {"ok": True}


@api.post("/events/{event_id}/ticket-types", status_code=201)
async def add_ticket_type(event_id: str, req: TicketTypeIn,
                          gs: GatedSession = Depends(gated_session)):
    if req.price < 0 or req.quantity < 0:
        raise InvalidInput("price and quantity must not be negative")
    if req.max_per_order is not None and req.max_per_order < 1:
        raise InvalidInput("max_per_order must be at least 1")
    async with tx(gs) as db:
        if await db.get(Event, event_id) is None:
            raise NotFound("Event not found")
        tt = TicketType(
            event_id=event_id,
            name=req.name,
            description=req.description,
            price=req.price,
            currency=CURRENCY,
            quantity=req.quantity,
            available=req.quantity,
            max_per_order=req.max_per_order,
            sale_start=_required_ts(req.sale_start, "sale_start"),
            sale_end=_required_ts(req.sale_end, "sale_end"),
        )
        db.add(tt)
    return {"data": catalog.ticket_type_json(tt)}


@api.put("/events/{event_id}/artists")
async def set_event_artists(event_id: str, req: EventArtistsIn,
                            gs: GatedSession = Depends(gated_session)):
    wanted = list(dict.fromkeys(req.artist_ids))
    async with tx(gs) as db:
        if await db.get(Event, event_id) is None:
            raise NotFound("Event not found")
        found = set((await db.execute(
            select(Artist.id).where(Artist.id.in_(wanted))
        )).scalars())
        missing = [a for a in wanted if a not in found]
        if missing:
            raise NotFound(f"Unknown artist(s): {', '.join(missing)}")
        await db.execute(delete(EventArtist)
                         .where(EventArtist.event_id == event_id))
        for artist_id in wanted:
            db.add(EventArtist(event_id=event_id, artist_id=artist_id))
    return {"ok": True, "artist_ids": wanted}


# ----------------------------
# Users
# ----------------------------
@api.get("/users")
async def list_users(role: Optional[str] = None,
                     gs: GatedSession = Depends(gated_session)):
    q = select(Profile).order_by(Profile.created_at.desc())
    if role:
        q = q.where(Profile.role == role)
    async with tx(gs) as db:
        rows = (await db.execute(q)).scalars()
        return {"data": [profile_json(p) for p in rows]}


@api.post("/users", status_code=201)
async def create_user(req: ProfileIn,
                      gs: GatedSession = Depends(gated_session)):
    if not is_valid_email(req.email):
        raise InvalidInput("A valid email address is required")
    if req.role not in ROLES:
        raise InvalidInput(f"role must be one of {', '.join(ROLES)}")
    try:
        async with tx(gs) as db:
            profile = Profile(email=req.email.strip().lower(),
                              full_name=req.full_name, phone=req.phone,
                              role=req.role)
            db.add(profile)
    except IntegrityError:
        raise Conflict("A user with this email already exists")
    return {"data": profile_json(profile)}


@api.put("/users/{user_id}")
async def update_user(user_id: str, req: ProfilePatch,
                      gs: GatedSession = Depends(gated_session)):
    changes = req.model_dump(exclude_unset=True)
    if "role" in changes and changes["role"] not in ROLES:
        raise InvalidInput(f"role must be one of {', '.join(ROLES)}")
    async with tx(gs) as db:
        profile = await db.get(Profile, user_id)
        if profile is None:
            raise NotFound("User not found")
        for key, value in changes.items():
            setattr(profile, key, value)
        profile.updated_at = now_ts()
    return {"data": profile_json(profile)}


@api.delete("/users/{user_id}")
async def delete_user(user_id: str,
                      gs: GatedSession = Depends(gated_session)):
    async with tx(gs) as db:
        profile = await db.get(Profile, user_id)
        if profile is None:
            raise NotFound("User not found")
        await db.delete(profile)
    return {"ok": True}


# ----------------------------
# Vote packages + settings
# ----------------------------
def _check_package(data: Dict[str, Any]) -> None:
    if data.get("votes") is not None and data["votes"] < 1:
        raise InvalidInput("votes must be at least 1")
    if data.get("price") is not None and data["price"] < 0:
        raise InvalidInput("price must not be negative")
    if data.get("discount") is not None and not 0 <= data["discount"] <= 100:
        raise InvalidInput("discount must be between 0 and 100")


@api.get("/packages")
async def list_packages(gs: GatedSession = Depends(gated_session)):
    async with tx(gs) as db:
        rows = (await db.execute(
            select(VotePackage).order_by(VotePackage.price)
        )).scalars()
        return {"data": [package_json(p) for p in rows]}


@api.post("/packages", status_code=201)
async def create_package(req: PackageIn,
                         gs: GatedSession = Depends(gated_session)):
    data = req.model_dump()
    _check_package(data)
    async with tx(gs) as db:
        pkg = VotePackage(currency=CURRENCY, **data)
        db.add(pkg)
    return {"data": package_json(pkg)}


@api.put("/packages/{package_id}")
async def update_package(package_id: str, req: PackagePatch,
                         gs: GatedSession = Depends(gated_session)):
    changes = req.model_dump(exclude_unset=True)
    _check_package(changes)
    async with tx(gs) as db:
        pkg = await db.get(VotePackage, package_id)
        if pkg is None:
            raise NotFound("Package not found")
        # purchases keep their own snapshot of the package
        for key, value in changes.items():
            setattr(pkg, key, value)
    return {"data": package_json(pkg)}


async def _latest_settings(db) -> Optional[VotingSettings]:
    return (await db.execute(
        select(VotingSettings).order_by(VotingSettings.id.desc()).limit(1)
    )).scalars().first()


@api.get("/voting-settings")
async def get_voting_settings(gs: GatedSession = Depends(gated_session)):
    async with tx(gs) as db:
        return {"data": settings_json(await _latest_settings(db))}


@api.put("/voting-settings")
async def put_voting_settings(req: VotingSettingsIn,
                              gs: GatedSession = Depends(gated_session),
                              r: redis.Redis = Depends(get_redis)):
    start = _required_ts(req.voting_start, "voting_start")
    end = _required_ts(req.voting_end, "voting_end")
    if start is None or end is None or end <= start:
        raise InvalidInput("voting_end must be after voting_start")
    async with tx(gs) as db:
        settings = await _latest_settings(db)
        if settings is None:
            settings = VotingSettings()
            db.add(settings)
        settings.voting_start = start
        settings.voting_end = end
        settings.is_active = req.is_active
        settings.rules_text = req.rules_text
        settings.updated_at = now_ts()
    await invalidate_leaderboard(r)
    return {"data": settings_json(settings)}


# ----------------------------
# Votes + purchases
# ----------------------------
@api.get("/votes")
async def vote_analytics(recent: int = 20,
                         gs: GatedSession = Depends(gated_session)):
    async with tx(gs) as db:
        data = await ledger.vote_analytics(db, max(1, min(recent, 200)))
        data["stats"] = await ledger.voting_stats(db)
    return {"data": data}


@api.get("/purchases")
async def list_purchases(status: Optional[str] = None, limit: int = 200,
                         gs: GatedSession = Depends(gated_session)):
    q = (select(VotePurchase).order_by(VotePurchase.created_at.desc())
         .limit(max(1, min(limit, 500))))
    if status:
        q = q.where(VotePurchase.payment_status == status)
    async with tx(gs) as db:
        rows = (await db.execute(q)).scalars()
        return {"data": [ledger.purchase_json(p) for p in rows]}


@api.post("/purchases/{reference}/reconcile")
async def reconcile_purchase(
    reference: str,
    gs: GatedSession = Depends(gated_session),
    r: redis.Redis = Depends(get_redis),
    http: httpx.AsyncClient = Depends(get_http),
    adapter: PaymentAdapter = Depends(get_adapter),
):
    v = await adapter.verify(http, reference)
    result = await settle(
        gs, r, reference, v["status"], amount=v["amount"],
        paid_at=v["paid_at"], paystack_reference=v["id"],
        metadata=v["metadata"],
    )
    await record_event(gs, reference, "reconcile",
                       "applied" if result["applied"] else result["status"])
    logger.info("reconciled %s: gateway=%s record=%s", reference,
                v["status"], result["status"])
    return {"data": {"gateway_status": v["status"], **result}}


# ----------------------------
# Bookings
# ----------------------------
@api.get("/bookings")
async def list_bookings(status: Optional[str] = None, limit: int = 100,
                        gs: GatedSession = Depends(gated_session)):
    async with tx(gs) as db:
        rows = await bookings.list_bookings(db, status,
                                            max(1, min(limit, 500)))
        return {"data": [await bookings.booking_json(db, b) for b in rows]}


@api.post("/bookings/expire")
async def expire_bookings(gs: GatedSession = Depends(gated_session)):
    released = await bookings.release_expired(gs)
    return {"ok": True, "released": released}


@router.delete("/api/bookings/{booking_id}",
               dependencies=[Depends(require_admin)])
async def cancel_booking(booking_id: str,
                         gs: GatedSession = Depends(gated_session)):
    res = await bookings.cancel_booking(gs, booking_id)
    return {"ok": True, "cancelled": res.applied, "status": res.status}


# ----------------------------
# Contact messages
# ----------------------------
@api.get("/messages")
async def list_messages(status: Optional[str] = None, limit: int = 100,
                        gs: GatedSession = Depends(gated_session)):
    q = (select(ContactMessage).order_by(ContactMessage.created_at.desc())
         .limit(max(1, min(limit, 500))))
    if status:
        q = q.where(ContactMessage.status == status)
    async with tx(gs) as db:
        rows = (await db.execute(q)).scalars()
        return {"data": [message_json(m) for m in rows]}


@api.post("/messages/{message_id}/read")
async def mark_message_read(message_id: str,
                            gs: GatedSession = Depends(gated_session)):
    async with tx(gs) as db:
        msg = await db.get(ContactMessage, message_id)
        if msg is None:
            raise NotFound("Message not found")
        msg.status = "read"
    return {"data": message_json(msg)}


# ----------------------------
# Timings
# ----------------------------
@api.get("/timings")
async def get_timings():
    return {"data": timings.snapshot()}


@api.delete("/timings")
async def reset_timings():
    timings.reset()
    return {"ok": True}


router.include_router(api)
