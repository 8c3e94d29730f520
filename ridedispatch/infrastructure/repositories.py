"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work) and exposes
domain-relevant queries only.  Mutations that race with other requests are
written as guarded ``UPDATE ... WHERE <expected state>`` statements and
report whether they matched, so the caller can roll back instead of
clobbering a concurrent writer.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    DriverPresenceModel,
    RideRequestModel,
    TripCompletionModel,
    UserModel,
)
from ridedispatch.domain.entities import FareQuote, Location
from ridedispatch.domain.enums import ACTIVE_STATUSES, RideStatus, Role


class RideRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_ride(
        self,
        *,
        client_id: int,
        pickup: Location,
        destination: Location,
        quote: FareQuote,
    ) -> RideRequestModel:
        ride = RideRequestModel(
            client_id=client_id,
            pickup_lat=pickup.latitude,
            pickup_lng=pickup.longitude,
            pickup_address=pickup.address,
            dest_lat=destination.latitude,
            dest_lng=destination.longitude,
            dest_address=destination.address,
            status=RideStatus.PENDING,
            price=quote.price,
            distance_km=quote.distance_km,
            duration_min=quote.duration_min,
        )
        self.session.add(ride)
        await self.session.flush()
        return ride

    async def get_by_id(self, ride_id: int) -> Optional[RideRequestModel]:
        return await self.session.get(RideRequestModel, ride_id)

    async def get_for_update(self, ride_id: int) -> Optional[RideRequestModel]:
        """SELECT ... FOR UPDATE so the row stays put for the transition."""
        result = await self.session.execute(
            select(RideRequestModel)
            .where(RideRequestModel.id == ride_id)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def transition(
        self,
        ride: RideRequestModel,
        expected: Iterable[RideStatus],
        *,
        require_unassigned: bool = False,
        **values,
    ) -> bool:
        """Apply *values* only if the row is still in one of *expected*.

        Returns False when a concurrent writer got there first.  On success
        the in-session instance is refreshed from the row.
        """
        stmt = (
            update(RideRequestModel)
            .where(RideRequestModel.id == ride.id)
            .where(RideRequestModel.status.in_(list(expected)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if require_unassigned:
            stmt = stmt.where(RideRequestModel.driver_id.is_(None))
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            return False
        await self.session.refresh(ride)
        return True

    async def get_active_for_driver(self, driver_id: int) -> list[RideRequestModel]:
        result = await self.session.execute(
            select(RideRequestModel)
            .where(RideRequestModel.driver_id == driver_id)
            .where(RideRequestModel.status.in_(list(ACTIVE_STATUSES)))
            .order_by(RideRequestModel.created_at.desc())
        )
        return list(result.scalars().all())

    async def has_active_ride(self, driver_id: int) -> bool:
        result = await self.session.execute(
            select(func.count())
            .select_from(RideRequestModel)
            .where(RideRequestModel.driver_id == driver_id)
            .where(RideRequestModel.status.in_(list(ACTIVE_STATUSES)))
        )
        return (result.scalar() or 0) > 0


class DriverPresenceRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, driver_id: int) -> Optional[DriverPresenceModel]:
        result = await self.session.execute(
            select(DriverPresenceModel).where(
                DriverPresenceModel.driver_id == driver_id
            )
        )
        return result.scalar_one_or_none()

    async def get_for_update(self, driver_id: int) -> Optional[DriverPresenceModel]:
        result = await self.session.execute(
            select(DriverPresenceModel)
            .where(DriverPresenceModel.driver_id == driver_id)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def upsert_location(
        self, driver_id: int, lat: float, lng: float, heading: float
    ) -> DriverPresenceModel:
        now = datetime.now(timezone.utc)
        presence = await self.get_for_update(driver_id)
        if presence is None:
            presence = DriverPresenceModel(
                driver_id=driver_id,
                latitude=lat,
                longitude=lng,
                heading=heading,
                is_online=True,
                is_available=False,
                last_seen=now,
            )
            self.session.add(presence)
        else:
            presence.latitude = lat
            presence.longitude = lng
            presence.heading = heading
            presence.is_online = True
            presence.last_seen = now
        await self.session.flush()
        return presence

    async def reserve(self, driver_id: int) -> bool:
        """Flip an online, available driver to unavailable.  False if not."""
        result = await self.session.execute(
            update(DriverPresenceModel)
            .where(DriverPresenceModel.driver_id == driver_id)
            .where(DriverPresenceModel.is_online.is_(True))
            .where(DriverPresenceModel.is_available.is_(True))
            .values(is_available=False)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def release(self, driver_id: int) -> bool:
        """Make the driver available again, unless they went offline meanwhile."""
        result = await self.session.execute(
            update(DriverPresenceModel)
            .where(DriverPresenceModel.driver_id == driver_id)
            .where(DriverPresenceModel.is_online.is_(True))
            .values(is_available=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def get_available(self) -> list[DriverPresenceModel]:
        result = await self.session.execute(
            select(DriverPresenceModel)
            .where(DriverPresenceModel.is_online.is_(True))
            .where(DriverPresenceModel.is_available.is_(True))
        )
        return list(result.scalars().all())


class TripCompletionRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, completion: TripCompletionModel) -> TripCompletionModel:
        self.session.add(completion)
        await self.session.flush()
        return completion

    async def get_by_ride(self, ride_id: int) -> Optional[TripCompletionModel]:
        result = await self.session.execute(
            select(TripCompletionModel).where(TripCompletionModel.ride_id == ride_id)
        )
        return result.scalar_one_or_none()

    async def get_history(
        self, user_id: int, role: Role, *, offset: int, limit: int
    ) -> tuple[list[TripCompletionModel], int]:
        column = (
            TripCompletionModel.driver_id
            if role is Role.DRIVER
            else TripCompletionModel.client_id
        )
        rows = await self.session.execute(
            select(TripCompletionModel)
            .where(column == user_id)
            .order_by(TripCompletionModel.created_at.desc(), TripCompletionModel.id.desc())
            .offset(offset)
            .limit(limit)
        )
        total = await self.session.execute(
            select(func.count())
            .select_from(TripCompletionModel)
            .where(column == user_id)
        )
        return list(rows.scalars().all()), total.scalar() or 0


class UserRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, user_id: int) -> Optional[UserModel]:
        return await self.session.get(UserModel, user_id)
