"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- HTTP test client with DB / session-factory overrides
- FakeRedis for metrics and alert history
- Test data factories (pages, queue items, webhook events)
- Signed webhook payloads
"""
import json
from typing import AsyncGenerator
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.api.dependencies.rate_limit import callback_rate_limiter
from app.api.dependencies.webhook_auth import sign_payload
from app.core.config import settings
from app.db.database import Base, get_db, get_session_factory, utcnow
from app.db.models.instagram_account import InstagramAccount
from app.db.models.message_queue_item import QueueItem, QueueItemStatus
from app.db.models.page import Page
from app.db.models.webhook_event import WebhookEvent, WebhookEventStatus
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_APP_SECRET = "test-app-secret"
TEST_VERIFY_TOKEN = "test-verify-token"
TEST_CALLBACK_SECRET = "test-callback-secret"
TEST_ADMIN_API_KEY = "test-admin-api-key"

# הערה: לא מגדירים event_loop fixture מותאם אישית כי pytest-asyncio
# מטפל בזה אוטומטית עם asyncio_mode=auto


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
def session_factory(async_engine) -> async_sessionmaker:
    """factory לקוד שפותח session משלו (background tasks, מעבד התור)"""
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, session_factory):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Settings
# ============================================================================

@pytest.fixture(autouse=True)
def test_secrets():
    """סודות קבועים לבדיקות"""
    with patch.object(settings, "META_APP_SECRET", TEST_APP_SECRET), \
         patch.object(settings, "META_VERIFY_TOKEN", TEST_VERIFY_TOKEN), \
         patch.object(settings, "N8N_CALLBACK_SECRET", TEST_CALLBACK_SECRET), \
         patch.object(settings, "ADMIN_API_KEY", TEST_ADMIN_API_KEY), \
         patch.object(settings, "BASE_URL", "https://relay.example.com"):
        yield


@pytest.fixture(autouse=True)
def reset_callback_rate_limiter():
    callback_rate_limiter.reset()
    yield
    callback_rate_limiter.reset()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-API-Key": TEST_ADMIN_API_KEY}


@pytest.fixture
def callback_headers() -> dict[str, str]:
    return {"X-Callback-Secret": TEST_CALLBACK_SECRET}


# ============================================================================
# Redis
# ============================================================================

class FakeRedis:
    """תחליף ל-Redis לבדיקות — in-memory עם strings, hashes ו-lists."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._hashes: dict[str, dict[str, str]] = {}
        self._lists: dict[str, list[str]] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        if nx and key in self._store:
            return None
        self._store[key] = value
        return True

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        bucket = self._hashes.setdefault(key, {})
        new_val = int(bucket.get(field, 0)) + amount
        bucket[field] = str(new_val)
        return new_val

    async def hincrbyfloat(self, key: str, field: str, amount: float = 1.0) -> float:
        bucket = self._hashes.setdefault(key, {})
        new_val = float(bucket.get(field, 0)) + amount
        bucket[field] = str(new_val)
        return new_val

    async def hsetnx(self, key: str, field: str, value: str) -> bool:
        bucket = self._hashes.setdefault(key, {})
        if field in bucket:
            return False
        bucket[field] = value
        return True

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(self._hashes.get(key, {}))

    async def lpush(self, key: str, *values: str) -> int:
        items = self._lists.setdefault(key, [])
        for value in values:
            items.insert(0, value)
        return len(items)

    async def ltrim(self, key: str, start: int, end: int) -> None:
        items = self._lists.get(key, [])
        self._lists[key] = items[start:end + 1]

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        items = self._lists.get(key, [])
        return items[start:end + 1]

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._store.pop(key, None)
            self._hashes.pop(key, None)
            self._lists.pop(key, None)

    async def aclose(self) -> None:
        self._store.clear()
        self._hashes.clear()
        self._lists.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """מחליף את get_redis ב-FakeRedis לכל הבדיקות."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis), \
         patch("app.domain.services.metrics_service.get_redis", _get_fake_redis), \
         patch("app.domain.services.health_service.get_redis", _get_fake_redis):
        yield _fake


# ============================================================================
# Test Data Factories
# ============================================================================

def build_message_payload(
    *,
    mid: str = "m_test_1",
    text: str = "שלום, מה שעות הפתיחה?",
    entry_id: str = "17841400000000001",
    sender_id: str = "igsid-sender-1",
    recipient_id: str = "17841400000000001",
    timestamp: int = 1700000000000,
) -> dict:
    """payload של Meta עם הודעת טקסט נכנסת אחת"""
    return {
        "object": "instagram",
        "entry": [
            {
                "id": entry_id,
                "time": timestamp,
                "messaging": [
                    {
                        "sender": {"id": sender_id},
                        "recipient": {"id": recipient_id},
                        "timestamp": timestamp,
                        "message": {"mid": mid, "text": text},
                    }
                ],
            }
        ],
    }


def signed_request(payload: dict, secret: str = TEST_APP_SECRET) -> tuple[bytes, dict[str, str]]:
    """body + כותרות חתומות כמו ש-Meta שולחת"""
    body = json.dumps(payload).encode()
    return body, {
        "Content-Type": "application/json",
        "X-Hub-Signature-256": sign_payload(body, secret),
    }


@pytest.fixture
def page_factory(db_session: AsyncSession):
    """Factory for creating connected pages"""
    async def _create_page(
        platform_page_id: str = "17841400000000001",
        user_id: int = 1,
        name: str = "Test Page",
        page_access_token: str = "page-token",
        token_expires_at=None,
        is_selected: bool = False,
    ) -> Page:
        page = Page(
            user_id=user_id,
            platform_page_id=platform_page_id,
            name=name,
            page_access_token=page_access_token,
            token_expires_at=token_expires_at,
            is_selected=is_selected,
        )
        db_session.add(page)
        await db_session.commit()
        await db_session.refresh(page)
        return page

    return _create_page


@pytest.fixture
def instagram_account_factory(db_session: AsyncSession):
    async def _create(page_id: int, instagram_id: str, username: str = "test_account") -> InstagramAccount:
        account = InstagramAccount(page_id=page_id, instagram_id=instagram_id, username=username)
        db_session.add(account)
        await db_session.commit()
        await db_session.refresh(account)
        return account

    return _create


@pytest.fixture
def queue_item_factory(db_session: AsyncSession):
    """Factory for creating queue items in any state"""
    async def _create_item(
        external_message_id: str = "m_test_1",
        status: QueueItemStatus = QueueItemStatus.PENDING,
        page_id: str = "17841400000000001",
        sender_id: str = "igsid-sender-1",
        recipient_id: str = "17841400000000001",
        message_text: str = "שלום",
        retry_count: int = 0,
        max_retries: int = 3,
        next_retry_at=None,
        ai_response: str | None = None,
        external_status: str | None = None,
        created_at=None,
        updated_at=None,
    ) -> QueueItem:
        item = QueueItem(
            page_id=page_id,
            external_conversation_id=page_id,
            sender_id=sender_id,
            recipient_id=recipient_id,
            message_text=message_text,
            external_message_id=external_message_id,
            status=status,
            retry_count=retry_count,
            max_retries=max_retries,
            next_retry_at=next_retry_at,
            ai_response=ai_response,
            external_status=external_status,
            created_at=created_at or utcnow(),
            updated_at=updated_at or utcnow(),
        )
        db_session.add(item)
        await db_session.commit()
        await db_session.refresh(item)
        return item

    return _create_item


@pytest.fixture
def webhook_event_factory(db_session: AsyncSession):
    async def _create_event(
        payload: dict | None = None,
        status: WebhookEventStatus = WebhookEventStatus.PENDING,
        retry_count: int = 0,
        received_at=None,
        processed_at=None,
        processing_started_at=None,
    ) -> WebhookEvent:
        event = WebhookEvent(
            page_id="17841400000000001",
            event_type="instagram",
            payload=payload if payload is not None else build_message_payload(),
            status=status,
            retry_count=retry_count,
            received_at=received_at or utcnow(),
            processed_at=processed_at,
            processing_started_at=processing_started_at,
        )
        db_session.add(event)
        await db_session.commit()
        await db_session.refresh(event)
        return event

    return _create_event
