"""Shared test fixtures.

Uses in-memory SQLite for unit tests (fast, no DB required). The
timeline stream machinery is exercised through its objects directly; an
infinite SSE body cannot be drained through httpx's ASGI transport.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from causable.api.sse.broadcaster import EventBroadcaster
from causable.core.config import Settings
from causable.core.database import Base, get_db_session
from causable.spans.schemas import Span

# In-memory async SQLite for unit tests
_TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

TEST_API_KEY = "test-key"


@pytest.fixture
async def test_engine():
    """Create a test database engine with all tables."""
    from causable.spans.models import SpanRecord  # noqa: F401  registers the table

    engine = create_async_engine(_TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def test_session_factory(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture
async def test_session(test_session_factory):
    """Create a test database session."""
    async with test_session_factory() as session:
        yield session


@pytest.fixture
def broadcaster() -> EventBroadcaster:
    return EventBroadcaster()


@pytest.fixture
def make_span() -> Callable[..., Span]:
    """Factory for spans with sensible defaults."""
    counter = {"n": 0}

    def _make(**overrides: Any) -> Span:
        counter["n"] += 1
        fields: dict[str, Any] = {
            "id": f"span-{counter['n']}",
            "seq": counter["n"],
            "entity_type": "test",
            "who": "alice",
            "did": "created",
            "this": "x",
        }
        fields.update(overrides)
        return Span(**fields)

    return _make


@pytest.fixture
def app_settings() -> Settings:
    return Settings(
        api_keys=TEST_API_KEY,
        environment="test",
        debug=False,
        change_source="direct",
        rate_limit_max_requests=1000,
        stream_auth_required=True,
    )


@pytest.fixture
async def app(app_settings: Settings, test_session_factory):
    """A fresh app wired to the SQLite session and a started change source.

    ASGITransport does not run the lifespan, so start/stop happen here.
    """
    from causable.api.main import create_app

    application = create_app(app_settings)

    async def _override_session():
        async with test_session_factory() as session:
            yield session

    application.dependency_overrides[get_db_session] = _override_session
    await application.state.change_source.start()
    yield application
    application.state.session_registry.close_all()
    await application.state.change_source.stop()


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {TEST_API_KEY}"}
