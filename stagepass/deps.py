import os
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as redis
from fastapi import HTTPException, Request
from fastapi.templating import Jinja2Templates

from .config import DATABASE_URL
from .helpers import from_kobo, to_iso
from .infra.sql import GatedSession, make_async_engine
from .paystack import PaymentAdapter

HERE = os.path.dirname(__file__)
templates = Jinja2Templates(directory=os.path.join(HERE, "templates"))
templates.env.filters["money"] = lambda kobo: f"{from_kobo(kobo or 0):,.2f}"
templates.env.filters["iso"] = to_iso

engine, SessionAsync, gated = make_async_engine(DATABASE_URL)


async def gated_session() -> GatedSession:
    async with SessionAsync() as session:
        yield GatedSession(session=session, gated=gated)


@asynccontextmanager
async def tx(gs: GatedSession):
    # DB GATE + one transaction
    async with gs.gated():
        async with gs.session.begin():
            yield gs.session


def get_redis(request: Request) -> redis.Redis:
    return request.app.state.redis


def get_http(request: Request) -> httpx.AsyncClient:
    return request.app.state.http


def get_adapter(request: Request) -> PaymentAdapter:
    return request.app.state.adapter


def client_ip(request: Request) -> str:
    fwd = request.headers.get("x-forwarded-for")
    if fwd:
        return fwd.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


# ----------------------------
# Admin session
# ----------------------------
def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise HTTPException(status_code=401, detail="admin login required")
