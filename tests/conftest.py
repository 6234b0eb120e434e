"""Shared test fixtures for the delivery call pipeline.

Uses an in-memory SQLite async engine so tests run without PostgreSQL,
and real adapters wired to mocked transports (Twilio client, httpx
MockTransport, an in-memory Redis double).
"""

import json
from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock, AsyncMock

import httpx
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
from twilio.request_validator import RequestValidator

from app.core.config import settings
from app.core.database import Base, get_db
from app.core.dependencies import PipelineServices
from app.main import app

# Import all models to ensure they're registered with Base.metadata
from app.models.agent import Agent
from app.models.call_log import CallLog  # noqa: F401
from app.models.customer import Customer
from app.models.delivery import Delivery
from app.models.job import Job  # noqa: F401
from app.models.recording import Recording  # noqa: F401
from app.services.cache import ResultCache
from app.services.media_store import MediaStore
from app.services.notification_service import NotificationService
from app.services.pipeline import PipelineCoordinator
from app.services.push import PushService
from app.services.queue import JobQueue, QueueConfig
from app.services.realtime import RealtimeHub
from app.services.speech import SpeechService
from app.services.telephony import TelephonyService

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
AUTH_TOKEN = "test-auth-token"
ADMIN_TOKEN = "admin-secret"
PROVIDER_AUDIO_URL = "https://api.twilio.com/2010-04-01/Accounts/AC1/Recordings/RE1"
MEDIA_PUBLIC_URL = "https://media.example.test/call-recordings"

engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    poolclass=StaticPool,
    connect_args={"check_same_thread": False},
)
TestSession = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class FakeRedis:
    """In-memory stand-in for redis.asyncio.Redis (get/set/delete/publish)."""

    def __init__(self):
        self.store = {}
        self.published = []

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self.store[key] = value
        return True

    async def delete(self, *keys):
        return sum(1 for key in keys if self.store.pop(key, None) is not None)

    async def publish(self, channel, message):
        self.published.append((channel, json.loads(message)))
        return 1

    async def aclose(self):
        pass


class FakeSocket:
    def __init__(self):
        self.sent = []

    async def send_json(self, message):
        self.sent.append(message)


@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create all tables before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    monkeypatch.setattr(settings, "BASE_URL", "")
    monkeypatch.setattr(settings, "ADMIN_API_TOKEN", ADMIN_TOKEN)
    return settings


async def override_get_db():
    async with TestSession() as session:
        yield session


app.dependency_overrides[get_db] = override_get_db


@pytest_asyncio.fixture
async def db():
    """Direct DB session for test setup/assertions."""
    async with TestSession() as session:
        yield session


@pytest.fixture
def twilio_client():
    client = MagicMock()
    client.calls.create.return_value = SimpleNamespace(sid="CA1", status="queued")
    client.messages.create.return_value = SimpleNamespace(sid="SM1")
    return client


@pytest.fixture
def telephony(twilio_client):
    return TelephonyService(
        "AC-test", AUTH_TOKEN, "+15550001111", base_url="https://calls.example.test", client=twilio_client
    )


@pytest.fixture
def cache():
    return ResultCache(FakeRedis())


@pytest.fixture
def media_store():
    """Media store with a mocked download and a mocked blob upload."""
    transport = httpx.MockTransport(lambda request: httpx.Response(200, content=b"RIFF-audio"))
    store = MediaStore(
        "UseDevelopmentStorage=true",
        public_url=MEDIA_PUBLIC_URL,
        http_client=httpx.AsyncClient(transport=transport),
    )
    store._upload = AsyncMock(side_effect=lambda blob, data: f"https://blob.example.test/{blob}")
    return store


@pytest.fixture
def speech(cache):
    """Speech adapter without an API key: both operations fail fast."""
    return SpeechService("", cache)


@pytest.fixture
def push():
    service = PushService("public-key", "private-key", "mailto:ops@example.test")
    service.send = AsyncMock(return_value="sent")
    return service


@pytest.fixture
def realtime():
    return RealtimeHub()


@pytest.fixture
def queue():
    return JobQueue(QueueConfig())


@pytest.fixture
def services(queue, cache, telephony, media_store, speech, push, realtime):
    notifications = NotificationService(push, telephony, realtime)
    coordinator = PipelineCoordinator(telephony, media_store, speech, cache, notifications)
    services = PipelineServices(
        queue=queue,
        cache=cache,
        telephony=telephony,
        media=media_store,
        speech=speech,
        push=push,
        realtime=realtime,
        notifications=notifications,
        coordinator=coordinator,
    )
    app.state.services = services
    yield services
    app.state.services = None


@pytest.fixture
def coordinator(services):
    return services.coordinator


@pytest_asyncio.fixture
async def client(services):
    """Async HTTP test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def agent(db):
    agent = Agent(
        name="Dana Driver",
        phone="+15550002222",
        push_subscription={"endpoint": "https://push.example.test/sub", "keys": {"p256dh": "k", "auth": "a"}},
    )
    db.add(agent)
    await db.commit()
    return agent


@pytest_asyncio.fixture
async def delivery(db, agent):
    customer = Customer(name="Casey Customer", phone="+15550003333")
    db.add(customer)
    await db.flush()
    delivery = Delivery(
        customer_id=customer.id,
        agent_id=agent.id,
        address="12 Harbour Road",
        scheduled_time=datetime.utcnow() + timedelta(hours=2),
    )
    db.add(delivery)
    await db.commit()
    return delivery


def sign(url: str, params: dict) -> str:
    return RequestValidator(AUTH_TOKEN).compute_signature(url, params)


async def post_webhook(client, path: str, params: dict, query: str = "", signature: str | None = None):
    """POST a form-encoded Twilio webhook with a valid (or given) signature."""
    url = f"http://test/api/v1/webhooks/{path}"
    if query:
        url += "?" + query
    headers = {"X-Twilio-Signature": signature if signature is not None else sign(url, params)}
    return await client.post(url, data=params, headers=headers)
