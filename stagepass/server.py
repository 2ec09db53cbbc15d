from __future__ import annotations
import logging
import math
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, Form, Query, Request, Response
from fastapi.responses import HTMLResponse, ORJSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel
from sqlalchemy import select
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from . import admin, otp
from .config import (
    APP_URL, CHECKOUT_BURST, CHECKOUT_PER_MINUTE, CONTACT_BURST,
    CONTACT_EMAIL, CONTACT_PER_HOUR, CURRENCY, DATABASE_URL, EVENTS_PER_PAGE,
    MAX_PAGE_SIZE, PAYMENT_BACKEND, REDIS_URL, SESSION_SECRET,
)
from .deps import (
    HERE, SessionAsync, client_ip, engine, gated_session, get_adapter,
    get_http, get_redis, templates, tx,
)
from .errors import InvalidInput, NotFound, RateLimited, StagePassError
from .helpers import is_valid_email, to_iso
from .infra.idempotency import get_cached_response, set_cached_response
from .infra.logs import setup_logging
from .infra.ratelimit import token_bucket
from .infra.sql import GatedSession
from .infra.timings import timeit
from .model import bookings, catalog, ledger
from .model.cache import (
    K_STATS, get_cached, get_leaderboard, set_cached, set_leaderboard,
)
from .model.orm import Base, ContactMessage, VotePackage
from .model.settlement import record_event, reference_kind, settle
from .notify import (
    booking_confirmation, contact_auto_reply, contact_notification,
    notify_quietly, vote_confirmation,
)
from .paystack import MockPaystack, PaymentAdapter, new_adapter

logger = logging.getLogger(__name__)

LIST_CACHE_CONTROL = "public, s-maxage=60, stale-while-revalidate=300"


# ---
# startup / shutdown
# ---
def _say_hello():
    print('\n' * 3)
    print('=' * 50)
    print('StagePass is starting up...')
    print(f'   - Payment Backend: {PAYMENT_BACKEND}')
    print(f'   - Database: {DATABASE_URL.split("://", 1)[0]}')
    print('=' * 50)
    print('\n' * 3)


async def _db_init():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with SessionAsync() as session:
        async with session.begin():
            await ledger.ensure_fixtures(session)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    _say_hello()
    await _db_init()
    app.state.http = httpx.AsyncClient(
        timeout=10.0,
        limits=httpx.Limits(
            max_connections=512, max_keepalive_connections=512
        ),
    )
    app.state.redis = redis.from_url(
        REDIS_URL,
        decode_responses=True,
        max_connections=int(os.getenv("REDIS_MAX_CONN", "512")),
        socket_timeout=2.0,
        socket_connect_timeout=2.0,
        retry_on_timeout=True,
    )
    app.state.adapter = new_adapter(PAYMENT_BACKEND, app.state.redis)
    try:
        yield
    finally:
        http = getattr(app.state, "http", None)
        if http is not None:
            await http.aclose()
            app.state.http = None
        r = getattr(app.state, "redis", None)
        if r is not None:
            await r.aclose()
            app.state.redis = None


app = FastAPI(
    title="StagePass",
    default_response_class=ORJSONResponse,
    lifespan=lifespan,
)
app.mount("/static", StaticFiles(directory=os.path.join(HERE, "static")),
          name="static")
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET)
app.include_router(otp.router)
app.include_router(admin.router)


@app.exception_handler(StagePassError)
async def _domain_error(request: Request, exc: StagePassError):
    return ORJSONResponse({"detail": exc.message, "code": exc.code},
                          status_code=exc.status_code)


# ----------------------------
# Request bodies
# ----------------------------
class CartLine(BaseModel):
    artist_id: str
    package_id: str
    quantity: int = 1


class CheckoutReq(BaseModel):
    email: str
    items: List[CartLine]
    metadata: Optional[Dict[str, Any]] = None


class TicketLine(BaseModel):
    ticket_type_id: str
    quantity: int


class BookingReq(BaseModel):
    event_id: str
    email: str
    full_name: str
    phone: Optional[str] = None
    items: List[TicketLine]


class ContactReq(BaseModel):
    name: str
    email: str
    subject: str
    message: str


# ----------------------------
# Helpers
# ----------------------------
def _page_args(page: int, limit: int) -> tuple[int, int]:
    return max(1, page), max(1, min(limit, MAX_PAGE_SIZE))


async def _rate_limit_checkout(r: redis.Redis, request: Request) -> None:
    ok = await token_bucket(r, f"checkout:{client_ip(request)}",
                            CHECKOUT_BURST, CHECKOUT_PER_MINUTE / 60.0)
    if not ok:
        raise RateLimited("Too many checkout attempts, slow down")


def _callback_url(reference: str) -> str:
    return f"{APP_URL}/payments/verify?reference={reference}"


async def _send_confirmation(gs: GatedSession, http: httpx.AsyncClient,
                             kind: str, reference: str) -> None:
    async with tx(gs) as db:
        if kind == "vote":
            purchase = await ledger.get_purchase(db, reference)
            if purchase is None or purchase.payment_method == "free":
                return
            to = purchase.email
            subject = "Your votes are in"
            text = vote_confirmation(ledger.purchase_json(purchase))
        else:
            booking = await bookings.get_booking_by_reference(db, reference)
            if booking is None or booking.status != "confirmed":
                return
            to = booking.email
            subject = f"Booking {booking.booking_reference} confirmed"
            text = booking_confirmation(await bookings.booking_json(db,
                                                                    booking))
    await notify_quietly(http, to, subject, text)


async def _cached_leaderboard(gs: GatedSession, r: redis.Redis) -> dict:
    board = await get_leaderboard(r)
    if board is None:
        async with tx(gs) as db:
            board = await ledger.leaderboard(db)
        await set_leaderboard(r, board)
    return board


async def _cached_stats(gs: GatedSession, r: redis.Redis) -> dict:
    stats = await get_cached(r, K_STATS)
    if stats is None:
        async with tx(gs) as db:
            stats = await ledger.voting_stats(db)
        await set_cached(r, K_STATS, stats)
    return stats


# ----------------------------
# API: catalog
# ----------------------------
@app.get("/api/events")
async def api_events(
    response: Response,
    page: int = 1,
    limit: int = EVENTS_PER_PAGE,
    filter_name: str = Query("all", alias="filter"),
    category: Optional[str] = None,
    search: Optional[str] = None,
    gs: GatedSession = Depends(gated_session),
):
    page, limit = _page_args(page, limit)
    async with tx(gs) as db:
        events, total = await catalog.list_events(
            db, page, limit, filter_name, category, search
        )
    response.headers["Cache-Control"] = LIST_CACHE_CONTROL
    total_pages = math.ceil(total / limit) if total else 0
    return {
        "data": [catalog.event_json(e) for e in events],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": total_pages,
            "has_more": page < total_pages,
        },
    }


@app.get("/api/events/{slug}")
async def api_event(slug: str, response: Response,
                    gs: GatedSession = Depends(gated_session)):
    async with tx(gs) as db:
        event = await catalog.event_detail(db, slug)
    response.headers["Cache-Control"] = LIST_CACHE_CONTROL
    return {"data": event}


@app.get("/api/artists")
async def api_artists(featured: Optional[bool] = None,
                      search: Optional[str] = None,
                      gs: GatedSession = Depends(gated_session)):
    async with tx(gs) as db:
        artists = await catalog.list_artists(db, featured, search)
    return {"data": [ledger.artist_json(a) for a in artists]}


@app.get("/api/artists/{slug}")
async def api_artist(slug: str, gs: GatedSession = Depends(gated_session)):
    async with tx(gs) as db:
        artist = await catalog.artist_detail(db, slug)
    return {"data": artist}


# ----------------------------
# API: voting
# ----------------------------
@app.get("/api/voting/artists")
async def api_voting_artists(
    sort_by: str = Query("rank", alias="sortBy"),
    order: str = "asc",
    gs: GatedSession = Depends(gated_session),
    r: redis.Redis = Depends(get_redis),
):
    if sort_by not in ("rank", "votes", "name"):
        raise InvalidInput("sortBy must be rank, votes or name")
    if order not in ("asc", "desc"):
        raise InvalidInput("order must be asc or desc")
    async with tx(gs) as db:
        artists = await ledger.contest_artists(db, sort_by, order)
    stats = await _cached_stats(gs, r)
    return {"data": [ledger.artist_json(a) for a in artists],
            "stats": stats}


@app.get("/api/voting/packages")
async def api_voting_packages(gs: GatedSession = Depends(gated_session)):
    async with tx(gs) as db:
        rows = (await db.execute(
            select(VotePackage)
            .where(VotePackage.active.is_(True))
            .order_by(VotePackage.price)
        )).scalars()
        packages = [admin.package_json(p) for p in rows]
    return {"data": packages}


@app.get("/api/voting/stats")
async def api_voting_stats(gs: GatedSession = Depends(gated_session),
                           r: redis.Redis = Depends(get_redis)):
    return {"data": await _cached_stats(gs, r)}


@app.get("/api/voting/leaderboard")
async def api_voting_leaderboard(response: Response,
                                 gs: GatedSession = Depends(gated_session),
                                 r: redis.Redis = Depends(get_redis)):
    board = await _cached_leaderboard(gs, r)
    response.headers["Cache-Control"] = LIST_CACHE_CONTROL
    return {"data": board}


@app.post("/api/voting/checkout")
async def voting_checkout(
    req: CheckoutReq,
    request: Request,
    gs: GatedSession = Depends(gated_session),
    r: redis.Redis = Depends(get_redis),
    http: httpx.AsyncClient = Depends(get_http),
    adapter: PaymentAdapter = Depends(get_adapter),
):
    idem_key = request.headers.get("Idempotency-Key")
    if idem_key:
        cached = await get_cached_response(r, "checkout", idem_key)
        if cached is not None:
            return cached

    await _rate_limit_checkout(r, request)
    if not is_valid_email(req.email):
        raise InvalidInput("A valid email address is required")

    async with timeit("ledger.create"):
        purchase = await ledger.create_purchase(
            gs, req.email, [line.model_dump() for line in req.items],
            metadata=req.metadata, payment_method=adapter.name,
        )

    try:
        async with timeit("gateway.initialize"):
            init = await adapter.initialize(
                http, purchase.email, purchase.total_amount,
                purchase.reference, purchase.currency,
                _callback_url(purchase.reference),
                metadata={"type": "voting", "purchase_id": purchase.id,
                          "total_votes": purchase.total_votes},
            )
    except StagePassError:
        await ledger.delete_pending_purchase(gs, purchase.reference)
        raise

    resp = {
        "success": True,
        "authorization_url": init["authorization_url"],
        "access_code": init["access_code"],
        "reference": purchase.reference,
        "total_votes": purchase.total_votes,
        "total_amount": purchase.total_amount,
        "currency": purchase.currency,
    }
    if idem_key:
        await set_cached_response(r, "checkout", idem_key, resp)
    return resp


# ----------------------------
# API: bookings
# ----------------------------
@app.post("/api/bookings")
async def create_booking(
    req: BookingReq,
    request: Request,
    gs: GatedSession = Depends(gated_session),
    r: redis.Redis = Depends(get_redis),
    http: httpx.AsyncClient = Depends(get_http),
    adapter: PaymentAdapter = Depends(get_adapter),
):
    idem_key = request.headers.get("Idempotency-Key")
    if idem_key:
        cached = await get_cached_response(r, "booking", idem_key)
        if cached is not None:
            return cached

    await _rate_limit_checkout(r, request)
    if not is_valid_email(req.email):
        raise InvalidInput("A valid email address is required")
    if len(req.full_name.strip()) < 2:
        raise InvalidInput("Full name is required")

    async with timeit("bookings.create"):
        booking = await bookings.create_booking(
            gs, req.event_id, req.email, req.full_name,
            [line.model_dump() for line in req.items], phone=req.phone,
        )

    try:
        async with timeit("gateway.initialize"):
            init = await adapter.initialize(
                http, booking.email, booking.total_amount,
                booking.payment_reference, booking.currency,
                _callback_url(booking.payment_reference),
                metadata={"type": "booking", "booking_id": booking.id,
                          "booking_reference": booking.booking_reference},
            )
    except StagePassError:
        # release the hold right away
        await bookings.fail_booking(gs, booking.payment_reference)
        raise

    resp = {
        "success": True,
        "booking_id": booking.id,
        "booking_reference": booking.booking_reference,
        "reference": booking.payment_reference,
        "authorization_url": init["authorization_url"],
        "total_amount": booking.total_amount,
        "currency": booking.currency,
        "expires_at": to_iso(booking.expires_at),
    }
    if idem_key:
        await set_cached_response(r, "booking", idem_key, resp)
    return resp


@app.get("/api/bookings/lookup")
async def lookup_booking(reference: str, email: str,
                         gs: GatedSession = Depends(gated_session)):
    async with tx(gs) as db:
        booking = await bookings.lookup_booking(db, email, reference)
        return {"data": await bookings.booking_json(db, booking)}


@app.get("/api/bookings/{booking_id}")
async def get_booking(booking_id: str,
                      gs: GatedSession = Depends(gated_session)):
    async with tx(gs) as db:
        booking = await bookings.get_booking(db, booking_id)
        return {"data": await bookings.booking_json(db, booking)}


# ----------------------------
# API: contact
# ----------------------------
@app.post("/api/contact")
async def contact(
    req: ContactReq,
    request: Request,
    gs: GatedSession = Depends(gated_session),
    r: redis.Redis = Depends(get_redis),
    http: httpx.AsyncClient = Depends(get_http),
):
    ok = await token_bucket(r, f"contact:{client_ip(request)}",
                            CONTACT_BURST, CONTACT_PER_HOUR / 3600.0)
    if not ok:
        raise RateLimited("Too many messages, try again later")

    name, subject = req.name.strip(), req.subject.strip()
    text = req.message.strip()
    if len(name) < 2:
        raise InvalidInput("Name must be at least 2 characters")
    if not is_valid_email(req.email):
        raise InvalidInput("Invalid email address")
    if len(subject) < 5:
        raise InvalidInput("Subject must be at least 5 characters")
    if len(text) < 10:
        raise InvalidInput("Message must be at least 10 characters")

    msg = ContactMessage(
        name=name,
        email=req.email.strip().lower(),
        subject=subject,
        message=text,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent", "unknown"),
    )
    async with tx(gs) as db:
        db.add(msg)
    logger.info("contact message %s from %s", msg.id, msg.email)

    await notify_quietly(http, CONTACT_EMAIL, f"[Contact] {subject}",
                         contact_notification(admin.message_json(msg)))
    await notify_quietly(http, msg.email, f"Re: {subject}",
                         contact_auto_reply(name, subject))
    return {
        "success": True,
        "data": {"id": msg.id},
        "message": "Message sent successfully. We'll get back to you soon!",
    }


# ----------------------------
# Payments: verify callback + webhook
# ----------------------------
@app.api_route("/api/payments/verify", methods=["GET", "POST"])
async def payments_verify(
    request: Request,
    reference: Optional[str] = None,
    gs: GatedSession = Depends(gated_session),
    r: redis.Redis = Depends(get_redis),
    http: httpx.AsyncClient = Depends(get_http),
    adapter: PaymentAdapter = Depends(get_adapter),
):
    if not reference and request.method == "POST":
        try:
            body = await request.json()
        except ValueError:
            body = {}
        if isinstance(body, dict):
            reference = body.get("reference")
    if not reference:
        raise InvalidInput("reference is required")

    kind = reference_kind(reference)
    async with timeit("gateway.verify"):
        v = await adapter.verify(http, reference)
    outcome = v["status"]
    try:
        async with timeit("payments.settle"):
            result = await settle(
                gs, r, reference, outcome, amount=v["amount"],
                paid_at=v["paid_at"], paystack_reference=v["id"],
                metadata=v["metadata"],
            )
    except StagePassError as e:
        await record_event(gs, reference, "verify", e.code.lower())
        raise
    await record_event(gs, reference, "verify",
                       "applied" if result["applied"] else result["status"])
    if result["applied"] and outcome == "success":
        await _send_confirmation(gs, http, kind, reference)

    return {
        "success": outcome == "success",
        "data": {
            "reference": reference,
            "amount": v["amount"],
            "currency": v["currency"],
            "status": outcome,
            "paid_at": to_iso(v["paid_at"]),
            "kind": kind,
            "record_status": result["status"],
        },
    }


@app.post("/api/webhooks/paystack")
async def paystack_webhook(
    request: Request,
    gs: GatedSession = Depends(gated_session),
    r: redis.Redis = Depends(get_redis),
    http: httpx.AsyncClient = Depends(get_http),
    adapter: PaymentAdapter = Depends(get_adapter),
):
    payload = await request.body()
    headers = dict(request.headers)

    event = adapter.verify_webhook(payload, headers)
    name = event.get("event", "")
    reference = adapter.event_reference(event)
    outcome = adapter.event_outcome(event)
    if outcome is None:
        logger.info("webhook %s acknowledged", name or "<none>")
        return {"ok": True, "ignored": True}
    if not reference:
        raise InvalidInput("missing reference")

    data = adapter.event_data(event)
    try:
        async with timeit("webhook.settle"):
            result = await settle(
                gs, r, reference, outcome, amount=data["amount"],
                paid_at=data["paid_at"], paystack_reference=data["id"],
                metadata=data["metadata"],
            )
    except StagePassError as e:
        await record_event(gs, reference, name, e.code.lower())
        raise

    await record_event(gs, reference, name,
                       "applied" if result["applied"] else "duplicate")
    if not result["applied"]:
        return {"ok": True, "idempotent": True, "kind": result["kind"],
                "status": result["status"]}

    if outcome == "success":
        await _send_confirmation(gs, http, result["kind"], reference)
    return {"ok": True, "kind": result["kind"], "status": result["status"]}


# ----------------------------
# Pages
# ----------------------------
@app.get("/", response_class=HTMLResponse)
async def landing_page(request: Request,
                       gs: GatedSession = Depends(gated_session),
                       r: redis.Redis = Depends(get_redis)):
    async with tx(gs) as db:
        events, _ = await catalog.list_events(db, 1, 6, "upcoming")
    board = await _cached_leaderboard(gs, r)
    return templates.TemplateResponse(request, "landing.html", {
        "site_name": "StagePass",
        "events": [catalog.event_json(e) for e in events],
        "leaders": board["entries"][:5],
    })


@app.get("/events", response_class=HTMLResponse)
async def events_page(request: Request, page: int = 1,
                      filter_name: str = Query("upcoming", alias="filter"),
                      search: Optional[str] = None,
                      gs: GatedSession = Depends(gated_session)):
    page, limit = _page_args(page, EVENTS_PER_PAGE)
    async with tx(gs) as db:
        events, total = await catalog.list_events(db, page, limit,
                                                  filter_name, None, search)
    return templates.TemplateResponse(request, "events.html", {
        "site_name": "StagePass",
        "events": [catalog.event_json(e) for e in events],
        "page": page,
        "has_more": page * limit < total,
        "filter": filter_name,
        "search": search or "",
    })


@app.get("/events/{slug}", response_class=HTMLResponse)
async def event_page(request: Request, slug: str,
                     gs: GatedSession = Depends(gated_session)):
    async with tx(gs) as db:
        event = await catalog.event_detail(db, slug)
    return templates.TemplateResponse(request, "event.html", {
        "site_name": "StagePass", "event": event,
    })


@app.get("/leaderboard", response_class=HTMLResponse)
async def leaderboard_page(request: Request,
                           gs: GatedSession = Depends(gated_session),
                           r: redis.Redis = Depends(get_redis)):
    board = await _cached_leaderboard(gs, r)
    stats = await _cached_stats(gs, r)
    return templates.TemplateResponse(request, "leaderboard.html", {
        "site_name": "StagePass", "board": board, "stats": stats,
    })


@app.get("/payments/verify", response_class=HTMLResponse)
async def verify_page(request: Request, reference: str = ""):
    return templates.TemplateResponse(request, "verify.html", {
        "site_name": "StagePass", "reference": reference,
    })


# ----------------------------
# Mock gateway UI
# ----------------------------
def _mock(adapter: PaymentAdapter) -> MockPaystack:
    if not isinstance(adapter, MockPaystack):
        raise NotFound("mock gateway disabled")
    return adapter


@app.get("/mockpay/{reference}", response_class=HTMLResponse)
async def mockpay_screen(request: Request, reference: str,
                         adapter: PaymentAdapter = Depends(get_adapter)):
    ps = await _mock(adapter).get_session(reference)
    if not ps:
        raise NotFound("payment session not found")
    return templates.TemplateResponse(request, "mockpay.html", {
        "site_name": "StagePass",
        "reference": reference,
        "email": ps["email"],
        "amount": int(ps["amount"]),
        "currency": ps.get("currency", CURRENCY),
        "status": ps["status"],
        "webhook_url": _mock(adapter).webhook_url,
    })


@app.post("/mockpay/{reference}/emit")
async def mockpay_emit(
    reference: str,
    t: str = Form(...),
    times: int = Form(1),
    http: httpx.AsyncClient = Depends(get_http),
    adapter: PaymentAdapter = Depends(get_adapter),
):
    # success | failed
    ps = await _mock(adapter).emit(http, reference, t, times=times)
    return RedirectResponse(
        url=ps.get("callback_url") or _callback_url(reference),
        status_code=HTTP_303_SEE_OTHER,
    )
