"""
Driver presence tracker.

Holds each driver's latest location and online/available flags.  All writes
for one driver run under the ``driver:{id}`` lock and commit before the lock
is released, so a concurrent ``accept`` for the same driver always sees the
latest availability.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ridedispatch.domain.distance import haversine_km
from ridedispatch.domain.entities import NearbyDriver
from ridedispatch.domain.errors import InvalidState, NotFound
from ridedispatch.infrastructure.locks import LockManager
from ridedispatch.infrastructure.models import DriverPresenceModel
from ridedispatch.infrastructure.repositories import (
    DriverPresenceRepository,
    RideRepository,
)
from .notifier import EventNotifier
from .store import driver_key, exclusive, read_with_retry, unit_of_work

logger = logging.getLogger(__name__)


def presence_status(presence: DriverPresenceModel) -> str:
    if not presence.is_online:
        return "offline"
    return "available" if presence.is_available else "busy"


class PresenceTracker:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: LockManager,
        notifier: Optional[EventNotifier] = None,
        retry_attempts: int = 3,
    ):
        self.session_factory = session_factory
        self.locks = locks
        self.notifier = notifier
        self.retry_attempts = retry_attempts

    async def set_location(
        self, driver_id: int, lat: float, lng: float, heading: float = 0.0
    ) -> DriverPresenceModel:
        if not -90 <= lat <= 90:
            raise InvalidState("Invalid latitude")
        if not -180 <= lng <= 180:
            raise InvalidState("Invalid longitude")
        if not 0 <= heading < 360:
            raise InvalidState("Invalid heading")

        async with exclusive(self.locks, driver_key(driver_id)):
            async with unit_of_work(self.session_factory) as session:
                presence = await DriverPresenceRepository(session).upsert_location(
                    driver_id, lat, lng, heading
                )

        if self.notifier is not None:
            self.notifier.driver_location(presence)
        return presence

    async def set_availability(
        self, driver_id: int, available: bool
    ) -> DriverPresenceModel:
        async with exclusive(self.locks, driver_key(driver_id)):
            async with unit_of_work(self.session_factory) as session:
                repo = DriverPresenceRepository(session)
                presence = await repo.get_for_update(driver_id)
                if presence is None:
                    raise NotFound("Driver location not found")
                if available and await RideRepository(session).has_active_ride(driver_id):
                    raise InvalidState("Driver has an active ride")
                presence.is_available = available
                if available:
                    presence.is_online = True
                presence.last_seen = datetime.now(timezone.utc)

        logger.info("Driver %d availability set to %s", driver_id, available)
        return presence

    async def go_offline(self, driver_id: int) -> DriverPresenceModel:
        async with exclusive(self.locks, driver_key(driver_id)):
            async with unit_of_work(self.session_factory) as session:
                presence = await DriverPresenceRepository(session).get_for_update(driver_id)
                if presence is None:
                    raise NotFound("Driver location not found")
                presence.is_online = False
                presence.is_available = False
                presence.last_seen = datetime.now(timezone.utc)
        return presence

    async def get(self, driver_id: int) -> DriverPresenceModel:
        async def _read(session: AsyncSession) -> Optional[DriverPresenceModel]:
            return await DriverPresenceRepository(session).get(driver_id)

        presence = await read_with_retry(self.session_factory, _read, self.retry_attempts)
        if presence is None:
            raise NotFound("Driver location not found")
        return presence

    async def find_available_near(
        self, lat: float, lng: float, radius_km: float
    ) -> list[NearbyDriver]:
        """Online, available drivers within *radius_km*, closest first."""

        async def _read(session: AsyncSession) -> list[DriverPresenceModel]:
            return await DriverPresenceRepository(session).get_available()

        candidates = await read_with_retry(
            self.session_factory, _read, self.retry_attempts
        )
        nearby = []
        for p in candidates:
            distance = haversine_km(lat, lng, p.latitude, p.longitude)
            if distance <= radius_km:
                nearby.append(
                    NearbyDriver(
                        driver_id=p.driver_id,
                        latitude=p.latitude,
                        longitude=p.longitude,
                        heading=p.heading,
                        distance_km=distance,
                    )
                )
        nearby.sort(key=lambda d: d.distance_km)
        return nearby
