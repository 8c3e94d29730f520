"""
Shared test fixtures.

Each test gets its own SQLite file database (via aiosqlite) built from the
production metadata, so tests run without Docker / PostgreSQL / Redis.
Row locks (``FOR UPDATE``) are a no-op on SQLite; the per-key locks and the
status-guarded updates carry the concurrency guarantees on their own.
"""

import json
from types import SimpleNamespace
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from ridedispatch.api.app import create_app
from ridedispatch.api.middleware import limiter
from ridedispatch.bootstrap import Services, build_services
from ridedispatch.config import Settings
from ridedispatch.domain.entities import Actor
from ridedispatch.domain.enums import Role
from ridedispatch.infrastructure.database import Base, build_session_factory
from ridedispatch.infrastructure.models import UserModel


class RecordingPushSender:
    """Push collaborator that remembers every payload it was handed."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.closed = False

    async def send(self, target: str, payload: dict[str, Any]) -> bool:
        if self.fail:
            raise RuntimeError("push gateway down")
        self.sent.append((target, payload))
        return True

    async def aclose(self) -> None:
        self.closed = True


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"


@pytest.fixture
def test_settings(db_url) -> Settings:
    return Settings(
        database_url=db_url,
        lock_backend="memory",
        lock_timeout_seconds=2.0,
        push_webhook_url=None,
    )


@pytest_asyncio.fixture
async def engine(db_url) -> AsyncGenerator[AsyncEngine, None]:
    """Create tables, yield the engine, then drop everything."""
    engine = create_async_engine(db_url, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def actors(engine) -> SimpleNamespace:
    """Two clients and three drivers, persisted as users."""
    session_factory = build_session_factory(engine)
    async with session_factory() as session:
        session.add_all(
            [
                UserModel(name="Client One", email="c1@example.com", role=Role.CLIENT),
                UserModel(name="Client Two", email="c2@example.com", role=Role.CLIENT),
                UserModel(name="Driver One", email="d1@example.com", role=Role.DRIVER),
                UserModel(name="Driver Two", email="d2@example.com", role=Role.DRIVER),
                UserModel(name="Driver Three", email="d3@example.com", role=Role.DRIVER),
            ]
        )
        await session.commit()
    return SimpleNamespace(
        client=Actor(1, Role.CLIENT),
        other_client=Actor(2, Role.CLIENT),
        driver=Actor(3, Role.DRIVER),
        other_driver=Actor(4, Role.DRIVER),
        far_driver=Actor(5, Role.DRIVER),
    )


@pytest.fixture
def push() -> RecordingPushSender:
    return RecordingPushSender()


@pytest_asyncio.fixture
async def services(test_settings, engine, actors, push) -> AsyncGenerator[Services, None]:
    services = build_services(test_settings, engine=engine, push=push)
    yield services
    await services.notifier.drain()
    services.hub.close_all()


@pytest.fixture
def go_available(services):
    """Put a driver online and available at the given point."""

    async def _go(actor: Actor, lat: float, lng: float):
        await services.presence.set_location(actor.user_id, lat, lng, 0.0)
        return await services.presence.set_availability(actor.user_id, True)

    return _go


@pytest_asyncio.fixture
async def client(services) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient bound to an app wired to the test services."""
    limiter.enabled = False
    app = create_app(services=services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    limiter.enabled = True


def drain_queue(conn) -> list[dict]:
    """Pop every queued envelope off a hub connection."""
    messages = []
    while not conn.queue.empty():
        messages.append(json.loads(conn.queue.get_nowait()))
    return messages


@pytest.fixture
def inbox():
    return drain_queue
