import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SESSION_SIGNING_SECRET"] = "test_session_secret"
os.environ["MPESA_CALLBACK_TOKEN"] = "test_callback_token"
os.environ["MPESA_CALLBACK_ALLOWED_IPS"] = ""
os.environ["PUBLIC_BASE_URL"] = "https://pay.eventtribe.test"
os.environ["CHECKIN_RATE_CAPACITY"] = "100"

import httpx
import pytest
import pytest_asyncio

from eventtribe.cache import get_redis
from eventtribe.db import Base, engine
from eventtribe.main import app, get_mpesa
from eventtribe.mpesa import DarajaClient
from tests.helpers import FakeDaraja, FakeRedis


@pytest.fixture(autouse=True)
def fresh_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def daraja():
    return FakeDaraja()


@pytest_asyncio.fixture
async def mpesa(daraja):
    client = DarajaClient(
        base_url="https://daraja.test",
        consumer_key="consumer-key",
        consumer_secret="consumer-secret",
        shortcode="174379",
        passkey="test-passkey",
        timeout=5.0,
        transport=httpx.MockTransport(daraja.handle),
    )
    try:
        yield client
    finally:
        await client.aclose()


@pytest_asyncio.fixture
async def client(fake_redis, mpesa):
    app.dependency_overrides[get_redis] = lambda: fake_redis
    app.dependency_overrides[get_mpesa] = lambda: mpesa
    try:
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
            yield c
    finally:
        app.dependency_overrides.clear()
