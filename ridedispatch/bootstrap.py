"""
Service wiring.

Builds every long-lived collaborator once, from explicit settings, and tears
them down in reverse order.  The FastAPI lifespan owns one ``Services``
bundle; tests build their own around a temporary database.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ridedispatch.config import Settings
from ridedispatch.domain.pricing import PricingEngine
from ridedispatch.infrastructure.database import build_engine, build_session_factory
from ridedispatch.infrastructure.locks import (
    InProcessLockManager,
    LockManager,
    RedisLockManager,
)
from ridedispatch.infrastructure.push import (
    LoggingPushSender,
    PushSender,
    WebhookPushSender,
)
from ridedispatch.infrastructure.redis_client import build_redis
from ridedispatch.realtime.hub import ConnectionHub
from ridedispatch.services.dispatch import DispatchService
from ridedispatch.services.notifier import EventNotifier
from ridedispatch.services.presence import PresenceTracker

logger = logging.getLogger(__name__)


@dataclass
class Services:
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    locks: LockManager
    hub: ConnectionHub
    push: PushSender
    notifier: EventNotifier
    presence: PresenceTracker
    dispatch: DispatchService
    redis: Optional[aioredis.Redis] = None

    async def aclose(self) -> None:
        await self.notifier.drain()
        self.hub.close_all()
        await self.push.aclose()
        if self.redis is not None:
            await self.redis.aclose()
        await self.engine.dispose()


def build_services(
    settings: Settings,
    *,
    engine: Optional[AsyncEngine] = None,
    push: Optional[PushSender] = None,
) -> Services:
    """Assemble the service graph described by *settings*.

    *engine* and *push* may be supplied to override the configured ones.
    """
    engine = engine or build_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    session_factory = build_session_factory(engine)

    redis_client = None
    if settings.lock_backend == "redis":
        redis_client = build_redis(settings.redis_url)
        locks: LockManager = RedisLockManager(
            redis_client,
            timeout=settings.lock_timeout_seconds,
            ttl_seconds=settings.lock_ttl_seconds,
        )
    else:
        locks = InProcessLockManager(timeout=settings.lock_timeout_seconds)

    if push is None:
        if settings.push_webhook_url:
            push = WebhookPushSender(
                settings.push_webhook_url, timeout=settings.push_timeout_seconds
            )
        else:
            push = LoggingPushSender()

    hub = ConnectionHub(queue_size=settings.connection_queue_size)
    notifier = EventNotifier(hub, push)
    presence = PresenceTracker(
        session_factory,
        locks,
        notifier,
        retry_attempts=settings.store_retry_attempts,
    )
    dispatch = DispatchService(
        session_factory,
        locks,
        notifier,
        presence,
        PricingEngine.from_settings(settings),
        dispatch_radius_km=settings.dispatch_radius_km,
        average_speed_kmh=settings.average_speed_kmh,
        retry_attempts=settings.store_retry_attempts,
    )
    logger.info(
        "Services built (locks=%s, push=%s)",
        settings.lock_backend,
        type(push).__name__,
    )
    return Services(
        engine=engine,
        session_factory=session_factory,
        locks=locks,
        hub=hub,
        push=push,
        notifier=notifier,
        presence=presence,
        dispatch=dispatch,
        redis=redis_client,
    )
