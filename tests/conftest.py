"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- FakeRedis in place of the real Redis client
- Signed Twilio status callbacks
- Test data factories (recipients, send events)
"""
import pytest
from datetime import datetime, timedelta
from typing import AsyncGenerator
from unittest.mock import patch
from urllib.parse import urlencode

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.database import Base, get_db, utcnow
from app.db.models.recipient import Recipient
from app.db.models.tracking_event import Channel, EventType, TrackingEvent
from app.core.config import settings
from app.domain.services.page_cache import reset_tenant_page_cache
from app.domain.services.twilio.signature import SIGNATURE_HEADER, compute_signature
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_TWILIO_AUTH_TOKEN = "test-twilio-auth-token"
TEST_ADMIN_API_KEY = "test-admin-api-key"
# ה-URL שה-ASGI transport מציג לאפליקציה (base_url של ה-client)
TWILIO_STATUS_URL = "http://test/api/twilio/status"

ADMIN_HEADERS = {"X-Admin-API-Key": TEST_ADMIN_API_KEY}

# הערה: לא מגדירים event_loop fixture מותאם אישית כי pytest-asyncio 0.23+
# מטפל בזה אוטומטית עם asyncio_mode=auto ו-asyncio_default_fixture_loop_scope=function


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Settings
# ============================================================================

@pytest.fixture(autouse=True)
def test_settings():
    """ערכי קונפיגורציה קבועים לבדיקות — לא תלויים ב-.env מקומי"""
    with patch.object(settings, "TWILIO_AUTH_TOKEN", TEST_TWILIO_AUTH_TOKEN), \
         patch.object(settings, "TWILIO_WEBHOOK_PUBLIC_BASE_URL", None), \
         patch.object(settings, "ADMIN_API_KEY", TEST_ADMIN_API_KEY), \
         patch.object(settings, "PAGE_CACHE_BACKEND", "memory"), \
         patch.object(settings, "PAGE_CACHE_TTL_MINUTES", 60), \
         patch.object(settings, "WEBHOOK_PROCESSING_TIMEOUT_SECONDS", 3.0):
        yield


@pytest.fixture(autouse=True)
def reset_page_cache():
    """כל בדיקה מקבלת page cache חדש"""
    reset_tenant_page_cache()
    yield
    reset_tenant_page_cache()


# ============================================================================
# Redis
# ============================================================================

class FakeRedis:
    """תחליף ל-Redis לבדיקות — in-memory dict עם ממשק תואם ומעקב TTL."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}
        # כשמוגדר — כל פקודה זורקת את השגיאה (סימולציית Redis לא זמין)
        self.fail_with: Exception | None = None

    def _maybe_fail(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def ping(self) -> bool:
        self._maybe_fail()
        return True

    async def get(self, key: str) -> str | None:
        self._maybe_fail()
        return self._store.get(key)

    async def setex(self, key: str, ttl: int, value: str) -> None:
        self._maybe_fail()
        self._store[key] = value
        self._ttls[key] = ttl

    async def delete(self, *keys: str) -> None:
        self._maybe_fail()
        for key in keys:
            self._store.pop(key, None)
            self._ttls.pop(key, None)

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """מחליף את get_redis ב-FakeRedis לכל הבדיקות."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis), \
         patch("app.domain.services.page_cache.get_redis", _get_fake_redis), \
         patch("app.domain.services.health_service.get_redis", _get_fake_redis):
        yield _fake


# ============================================================================
# Twilio callbacks
# ============================================================================

def sign_params(params: dict[str, str], url: str = TWILIO_STATUS_URL) -> str:
    return compute_signature(TEST_TWILIO_AUTH_TOKEN, url, params)


def callback_request(
    message_sid: str | None,
    message_status: str | None,
    *,
    signed: bool = True,
    extra: dict[str, str] | None = None,
) -> tuple[str, dict[str, str]]:
    """גוף form-urlencoded + headers כפי ש-Twilio שולח"""
    params: dict[str, str] = {"AccountSid": "ACtest"}
    if message_sid is not None:
        params["MessageSid"] = message_sid
    if message_status is not None:
        params["MessageStatus"] = message_status
    params.update(extra or {})

    headers = {"Content-Type": "application/x-www-form-urlencoded"}
    if signed:
        headers[SIGNATURE_HEADER] = sign_params(params)
    return urlencode(params), headers


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def recipient_factory(db_session: AsyncSession):
    """Factory for creating test recipients"""
    counter = {"n": 0}

    async def _create_recipient(
        tenant_id: str = "wedding-1",
        name: str | None = None,
        channel_preference: Channel | None = Channel.WHATSAPP,
        id: str | None = None,
    ) -> Recipient:
        counter["n"] += 1
        recipient = Recipient(
            id=id or f"family-{counter['n']}",
            tenant_id=tenant_id,
            name=name or f"Family {counter['n']}",
            channel_preference=channel_preference,
        )
        db_session.add(recipient)
        await db_session.commit()
        return recipient

    return _create_recipient


@pytest.fixture
def event_factory(db_session: AsyncSession):
    """Factory for inserting tracking events directly (explicit timestamps)"""
    async def _create_event(
        tenant_id: str,
        recipient_id: str,
        event_type: EventType,
        *,
        channel: Channel | None = Channel.WHATSAPP,
        message_sid: str | None = None,
        metadata: dict | None = None,
        timestamp: datetime | None = None,
    ) -> TrackingEvent:
        event_metadata = dict(metadata or {})
        if message_sid is not None:
            event_metadata["message_sid"] = message_sid
        tracking_event = TrackingEvent(
            tenant_id=tenant_id,
            recipient_id=recipient_id,
            event_type=event_type,
            channel=channel,
            correlation_id=message_sid,
            event_metadata=event_metadata or None,
            timestamp=timestamp or utcnow(),
        )
        db_session.add(tracking_event)
        await db_session.commit()
        return tracking_event

    return _create_event


@pytest.fixture
def send_event_factory(event_factory):
    """Factory for outbound message events (INVITATION_SENT by default)"""
    async def _create_send_event(
        tenant_id: str = "wedding-1",
        recipient_id: str = "family-1",
        message_sid: str = "SM100",
        event_type: EventType = EventType.INVITATION_SENT,
        channel: Channel = Channel.WHATSAPP,
        template_type: str | None = None,
        timestamp: datetime | None = None,
    ) -> TrackingEvent:
        return await event_factory(
            tenant_id,
            recipient_id,
            event_type,
            channel=channel,
            message_sid=message_sid,
            metadata={"template_type": template_type} if template_type else None,
            timestamp=timestamp or utcnow() - timedelta(minutes=5),
        )

    return _create_send_event
