"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, file-based SQLite per test)
- Fake Redis and a recording alert notifier
- Signed webhook payloads
- A fully wired webhook pipeline in in-process mode
"""
# משתני סביבה לפני ייבוא payhook - ה-Settings נטענים בזמן import
import os
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret_for_tests_only")
os.environ.setdefault("WEBHOOK_QUEUE_ENABLED", "false")

import json
import time
from typing import AsyncGenerator
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from payhook.core.config import settings
from payhook.db.database import Base, get_db
from payhook.domain.services.alerting_service import AlertingGate, AlertThrottle
from payhook.domain.services.event_router import EventRouter
from payhook.domain.services.signature_service import compute_signature_header
from payhook.main import app
from payhook.pipeline import build_pipeline
from payhook.workers.queue import WebhookQueue

TEST_WEBHOOK_SECRET = "whsec_test_secret_for_tests_only"
TEST_ADMIN_API_KEY = "test-admin-api-key-for-tests"

# הערה: לא מגדירים event_loop fixture מותאם אישית כי pytest-asyncio 0.23+
# מטפל בזה אוטומטית עם asyncio_mode=auto ו-asyncio_default_fixture_loop_scope=function


@pytest.fixture(scope="function")
async def async_engine(tmp_path):
    """
    Create async test database engine.

    קובץ SQLite לכל בדיקה עם NullPool: כל session מקבל חיבור משלו,
    כך ש-rollback של session אחד לא מבטל עבודה של session מקביל.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'payhook_test.db'}",
        poolclass=NullPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ============================================================================
# Test doubles
# ============================================================================


class FakeRedis:
    """תחליף ל-Redis לבדיקות - in-memory dict עם ממשק תואם ומעקב TTL."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}
        self._lists: dict[str, list[str]] = {}
        self.closed = False

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        """SET עם תמיכה ב-NX (רק אם לא קיים) ו-EX (תפוגה בשניות)"""
        if nx and key in self._store:
            return None
        self._store[key] = value
        if ex is not None:
            self._ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if self._store.pop(key, None) is not None:
                deleted += 1
            self._ttls.pop(key, None)
        return deleted

    async def llen(self, name: str) -> int:
        return len(self._lists.get(name, []))

    async def aclose(self) -> None:
        self.closed = True


class RecordingNotifier:
    """Notifier שרושם כל שליחה; fail=True מדמה ערוץ התראות שנופל."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[tuple[str, str, str]] = []
        self.attempts = 0

    async def send(self, to: str, subject: str, body: str) -> bool:
        self.attempts += 1
        if self.fail:
            raise RuntimeError("alert channel down")
        self.sent.append((to, subject, body))
        return True


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def failing_notifier() -> RecordingNotifier:
    return RecordingNotifier(fail=True)


# ============================================================================
# Signed payloads
# ============================================================================


@pytest.fixture
def make_event():
    """Factory for payment event bodies"""
    def _make_event(
        event_id: str = "evt_test_0001",
        event_type: str = "invoice.paid",
        data_object: dict | None = None,
    ) -> dict:
        return {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "livemode": False,
            "data": {"object": data_object or {"id": "in_test", "object": "invoice"}},
        }
    return _make_event


@pytest.fixture
def signed_body():
    """מחזיר (raw_body, signature_header) לאירוע נתון"""
    def _signed_body(
        event: dict,
        secret: str = TEST_WEBHOOK_SECRET,
        timestamp: int | None = None,
    ) -> tuple[bytes, str]:
        body = json.dumps(event).encode()
        return body, compute_signature_header(body, secret, timestamp)
    return _signed_body


# ============================================================================
# Pipeline
# ============================================================================


@pytest.fixture
def pipeline_settings():
    """הגדרות לבדיקות: backoff אפסי כדי ש-retries ירוצו מיד במצב in-process"""
    return settings.model_copy(update={
        "STRIPE_WEBHOOK_SECRET": TEST_WEBHOOK_SECRET,
        "WEBHOOK_QUEUE_ENABLED": False,
        "WEBHOOK_MAX_RETRIES": 3,
        "WEBHOOK_RETRY_BASE_SECONDS": 0,
        "WEBHOOK_MAX_BACKOFF_SECONDS": 0,
        "WEBHOOK_HANDLER_TIMEOUT_SECONDS": 2.0,
        "WEBHOOK_WORKER_CONCURRENCY": 5,
        "WEBHOOK_WORKER_RATE_LIMIT_PER_SECOND": 100,
        "WEBHOOK_EVENT_HANDLERS_MODULE": "",
        "ALERT_THROTTLE_WINDOW_SECONDS": 300,
        "ALERT_THROTTLE_MAX_PER_WINDOW": 3,
    })


@pytest.fixture
def router() -> EventRouter:
    return EventRouter()


@pytest.fixture
def alerting(notifier, pipeline_settings) -> AlertingGate:
    return AlertingGate(
        notifier,
        ["admin-chat-1"],
        AlertThrottle(
            window_seconds=pipeline_settings.ALERT_THROTTLE_WINDOW_SECONDS,
            max_per_window=pipeline_settings.ALERT_THROTTLE_MAX_PER_WINDOW,
        ),
        environment="test",
    )


@pytest.fixture
async def pipeline(pipeline_settings, session_factory, router, alerting):
    """Pipeline במצב in-process (תור לא זמין)"""
    webhook_pipeline = await build_pipeline(
        pipeline_settings,
        session_factory,
        router=router,
        alerting=alerting,
        queue=WebhookQueue.unavailable(pipeline_settings.WEBHOOK_QUEUE_NAME),
    )
    yield webhook_pipeline
    await webhook_pipeline.close()


@pytest.fixture(autouse=True)
def set_admin_api_key():
    """מגדיר ADMIN_API_KEY לבדיקות"""
    with patch.object(settings, "ADMIN_API_KEY", TEST_ADMIN_API_KEY):
        yield


@pytest.fixture(scope="function")
async def test_client(session_factory, pipeline):
    """Create test client with database override and a wired pipeline"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.pipeline = pipeline

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
    del app.state.pipeline
