import os
import tempfile

_TMP = tempfile.mkdtemp(prefix="stagepass-tests-")

# must be set before anything imports stagepass.config
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP}/stagepass.db"
os.environ["PAYMENT_BACKEND"] = "mock"
os.environ["APP_URL"] = "http://testserver"
os.environ["MOCK_WEBHOOK_URL"] = "http://testserver/api/webhooks/paystack"
os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_secret"
os.environ["ADMIN_USERNAME"] = "admin"
os.environ["ADMIN_PASSWORD"] = "supasecret"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["CHECKOUT_BURST"] = "1000"
os.environ["CHECKOUT_PER_MINUTE"] = "1000"
os.environ["OTP_BURST"] = "1000"
os.environ["CONTACT_BURST"] = "1000"
os.environ["DB_GATE_LIMIT"] = "64"
os.environ.pop("RESEND_API_KEY", None)
os.environ.pop("TERMII_API_KEY", None)

import fakeredis  # noqa: E402
import httpx  # noqa: E402
import pytest_asyncio  # noqa: E402

from stagepass.deps import SessionAsync, engine, gated  # noqa: E402
from stagepass.infra import timings  # noqa: E402
from stagepass.infra.sql import GatedSession  # noqa: E402
from stagepass.model.orm import Base  # noqa: E402
from stagepass.paystack import MockPaystack  # noqa: E402
from stagepass.server import app, lifespan  # noqa: E402

BASE_URL = "http://testserver"


@pytest_asyncio.fixture(scope="function")
async def stack():
    """Running app with fakeredis and in-process webhook delivery."""
    async with lifespan(app):
        await app.state.redis.aclose()
        fake = fakeredis.FakeAsyncRedis(decode_responses=True)
        await fake.flushall()
        app.state.redis = fake

        # the mock gateway posts its webhooks back into this app
        await app.state.http.aclose()
        app.state.http = httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url=BASE_URL
        )
        app.state.adapter = MockPaystack(
            fake, webhook_url=f"{BASE_URL}/api/webhooks/paystack"
        )
        timings.reset()
        yield app

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def client(stack):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=stack), base_url=BASE_URL
    ) as c:
        yield c


@pytest_asyncio.fixture(scope="function")
async def gs(stack):
    async with SessionAsync() as session:
        yield GatedSession(session=session, gated=gated)


@pytest_asyncio.fixture(scope="function")
async def redis_client(stack):
    return stack.state.redis


@pytest_asyncio.fixture(scope="function")
async def admin_client(client):
    r = await client.post("/admin/login", data={
        "username": "admin", "password": "supasecret", "next": "/admin",
    })
    assert r.status_code == 303, r.text
    return client
