"""
Ride dispatch service
=====================

The authoritative owner of the ride lifecycle.  Every transition follows the
same shape:

1. Take ``ride:{id}`` (and ``driver:{id}`` when presence changes too, always
   in that order).  A wait past the configured timeout fails as ``Busy``.
2. Open one transaction, load the ride ``FOR UPDATE`` and run the pure guard
   from ``domain.state_machine``.
3. Write the ride with a status-guarded ``UPDATE``; if presence changes,
   write it with its own guarded ``UPDATE`` in the same transaction.  A
   guard that matches no row raises, and the whole transaction rolls back.
4. After commit, hand the outcome to the notifier.

Two drivers racing to accept one pending ride are serialized by step 1, and
step 3 still holds if the lock layer is bypassed: the loser sees
``InvalidState("Ride is no longer available")`` and its presence row is
untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ridedispatch.domain.distance import eta_minutes, haversine_km
from ridedispatch.domain.entities import Actor, Location
from ridedispatch.domain.enums import RideStatus
from ridedispatch.domain.errors import Conflict, InvalidState, NotFound, Unauthorized
from ridedispatch.domain.pricing import PricingEngine
from ridedispatch.domain.state_machine import (
    TRANSITION_RULES,
    Transition,
    bound_driver,
    owner_or_bound_driver,
    plan_transition,
    transition_for_status,
)
from ridedispatch.infrastructure.locks import LockManager
from ridedispatch.infrastructure.models import RideRequestModel, TripCompletionModel
from ridedispatch.infrastructure.repositories import (
    DriverPresenceRepository,
    RideRepository,
    TripCompletionRepository,
    UserRepository,
)
from .notifier import EventNotifier
from .presence import PresenceTracker
from .store import driver_key, exclusive, read_with_retry, ride_key, unit_of_work

logger = logging.getLogger(__name__)


@dataclass
class RideRequestResult:
    ride: RideRequestModel
    drivers_notified: int


@dataclass
class AcceptResult:
    ride: RideRequestModel
    eta: int


@dataclass
class CompletionResult:
    ride: RideRequestModel
    completion: TripCompletionModel


def _check_coordinates(point: Location) -> None:
    if not -90 <= point.latitude <= 90:
        raise InvalidState("Invalid latitude")
    if not -180 <= point.longitude <= 180:
        raise InvalidState("Invalid longitude")


class DispatchService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: LockManager,
        notifier: EventNotifier,
        presence: PresenceTracker,
        pricing: PricingEngine,
        *,
        dispatch_radius_km: float = 10.0,
        average_speed_kmh: float = 30.0,
        retry_attempts: int = 3,
    ):
        self.session_factory = session_factory
        self.locks = locks
        self.notifier = notifier
        self.presence = presence
        self.pricing = pricing
        self.dispatch_radius_km = dispatch_radius_km
        self.average_speed_kmh = average_speed_kmh
        self.retry_attempts = retry_attempts

    # ── Create ────────────────────────────────────────────────────────

    async def request_ride(
        self, actor: Actor, pickup: Location, destination: Location
    ) -> RideRequestResult:
        if not actor.is_client:
            raise Unauthorized("Only clients can request rides")
        _check_coordinates(pickup)
        _check_coordinates(destination)

        quote = self.pricing.quote(pickup, destination)
        async with unit_of_work(self.session_factory) as session:
            ride = await RideRepository(session).create_ride(
                client_id=actor.user_id,
                pickup=pickup,
                destination=destination,
                quote=quote,
            )
            client = await UserRepository(session).get_by_id(actor.user_id)
        logger.info("Ride %d requested by client %d", ride.id, actor.user_id)

        # Informational fan-out; the ride exists whatever happens here
        notified = 0
        try:
            nearby = await self.presence.find_available_near(
                pickup.latitude, pickup.longitude, self.dispatch_radius_km
            )
            notified = self.notifier.ride_request(
                ride,
                nearby,
                client_name=client.name if client else "",
                average_speed_kmh=self.average_speed_kmh,
            )
        except Exception:
            logger.exception("Failed to notify drivers about ride %d", ride.id)
        return RideRequestResult(ride=ride, drivers_notified=notified)

    # ── Transitions ───────────────────────────────────────────────────

    async def accept(self, actor: Actor, ride_id: int) -> AcceptResult:
        if not actor.is_driver:
            raise Unauthorized("Only drivers can accept rides")

        async with exclusive(self.locks, ride_key(ride_id)):
            async with exclusive(self.locks, driver_key(actor.user_id)):
                async with unit_of_work(self.session_factory) as session:
                    rides = RideRepository(session)
                    drivers = DriverPresenceRepository(session)

                    ride = await self._load_for_update(rides, ride_id)
                    target = plan_transition(Transition.ACCEPT, actor, ride)

                    presence = await drivers.get_for_update(actor.user_id)
                    if presence is None:
                        raise InvalidState("Driver location not found")
                    if not (presence.is_online and presence.is_available):
                        raise InvalidState("Driver is not available")

                    if not await rides.transition(
                        ride,
                        TRANSITION_RULES[Transition.ACCEPT].sources,
                        require_unassigned=True,
                        status=target,
                        driver_id=actor.user_id,
                    ):
                        raise InvalidState("Ride is no longer available")
                    if not await drivers.reserve(actor.user_id):
                        raise InvalidState("Driver is not available")

                    eta = eta_minutes(
                        haversine_km(
                            presence.latitude, presence.longitude,
                            ride.pickup_lat, ride.pickup_lng,
                        ),
                        self.average_speed_kmh,
                    )

        logger.info("Ride %d accepted by driver %d", ride_id, actor.user_id)
        self.notifier.ride_accepted(ride, eta)
        return AcceptResult(ride=ride, eta=eta)

    async def reject(self, actor: Actor, ride_id: int) -> RideRequestModel:
        if not actor.is_driver:
            raise Unauthorized("Only drivers can reject rides")

        async with exclusive(self.locks, ride_key(ride_id)):
            async with unit_of_work(self.session_factory) as session:
                rides = RideRepository(session)
                ride = await self._load_for_update(rides, ride_id)
                target = plan_transition(Transition.REJECT, actor, ride)
                if not await rides.transition(
                    ride,
                    TRANSITION_RULES[Transition.REJECT].sources,
                    require_unassigned=True,
                    status=target,
                    cancelled_by=actor.role,
                ):
                    raise InvalidState("Ride is no longer available")

        logger.info("Ride %d rejected by driver %d", ride_id, actor.user_id)
        self.notifier.ride_cancelled(ride, None, "Driver rejected the ride")
        return ride

    async def arrive(self, actor: Actor, ride_id: int) -> RideRequestModel:
        ride = await self._advance(Transition.ARRIVE, actor, ride_id)
        self.notifier.driver_arrived(ride)
        return ride

    async def start(self, actor: Actor, ride_id: int) -> RideRequestModel:
        ride = await self._advance(Transition.START, actor, ride_id)
        self.notifier.ride_started(ride)
        return ride

    async def complete(
        self,
        actor: Actor,
        ride_id: int,
        *,
        actual_fare: float,
        actual_distance: float,
        actual_duration: int,
        driver_notes: Optional[str] = None,
    ) -> CompletionResult:
        if not actor.is_driver:
            raise Unauthorized("Only drivers can complete trips")
        if actual_fare < 0:
            raise InvalidState("Actual fare must be non-negative")
        if actual_distance < 0:
            raise InvalidState("Actual distance must be non-negative")
        if actual_duration < 0:
            raise InvalidState("Actual duration must be non-negative")

        async with exclusive(self.locks, ride_key(ride_id)):
            async with exclusive(self.locks, driver_key(actor.user_id)):
                async with unit_of_work(self.session_factory) as session:
                    rides = RideRepository(session)
                    completions = TripCompletionRepository(session)

                    ride = await self._load_for_update(rides, ride_id)
                    if not bound_driver(actor, ride):
                        raise Unauthorized("Not allowed to complete this ride")
                    if await completions.get_by_ride(ride.id) is not None:
                        raise Conflict("Trip already completed")
                    target = plan_transition(Transition.COMPLETE, actor, ride)

                    if not await rides.transition(
                        ride, TRANSITION_RULES[Transition.COMPLETE].sources, status=target
                    ):
                        raise InvalidState("Ride must be started before completion")
                    completion = await completions.create(
                        TripCompletionModel(
                            ride_id=ride.id,
                            driver_id=actor.user_id,
                            client_id=ride.client_id,
                            actual_fare=actual_fare,
                            actual_distance=actual_distance,
                            actual_duration=actual_duration,
                            driver_notes=driver_notes,
                        )
                    )
                    await DriverPresenceRepository(session).release(actor.user_id)

        logger.info("Ride %d completed by driver %d", ride_id, actor.user_id)
        self.notifier.ride_completed(ride, completion)
        return CompletionResult(ride=ride, completion=completion)

    async def cancel(self, actor: Actor, ride_id: int) -> RideRequestModel:
        async with exclusive(self.locks, ride_key(ride_id)):
            # driver_id cannot change while the ride lock is held
            bound = await self._peek_driver(ride_id)
            if bound is None:
                ride = await self._cancel_locked(actor, ride_id, None)
            else:
                async with exclusive(self.locks, driver_key(bound)):
                    ride = await self._cancel_locked(actor, ride_id, bound)

        reason = "Cancelled by client" if actor.is_client else "Cancelled by driver"
        logger.info("Ride %d cancelled by %s %d", ride_id, actor.role.value, actor.user_id)
        self.notifier.ride_cancelled(ride, bound, reason)
        return ride

    async def update_status(
        self, actor: Actor, ride_id: int, status: RideStatus
    ) -> RideRequestModel:
        """Reach *status* through the matching guarded transition."""
        transition = transition_for_status(status)
        if transition is Transition.ACCEPT:
            return (await self.accept(actor, ride_id)).ride
        if transition is Transition.ARRIVE:
            return await self.arrive(actor, ride_id)
        if transition is Transition.START:
            return await self.start(actor, ride_id)
        return await self.cancel(actor, ride_id)

    # ── Reads and ratings ─────────────────────────────────────────────

    async def get_ride(self, actor: Actor, ride_id: int) -> RideRequestModel:
        async def _read(session: AsyncSession) -> Optional[RideRequestModel]:
            return await RideRepository(session).get_by_id(ride_id)

        ride = await read_with_retry(self.session_factory, _read, self.retry_attempts)
        if ride is None:
            raise NotFound("Ride not found")
        if not owner_or_bound_driver(actor, ride):
            raise Unauthorized("Unauthorized to view this ride")
        return ride

    async def driver_active_rides(self, actor: Actor) -> list[RideRequestModel]:
        if not actor.is_driver:
            raise Unauthorized("Only drivers can view assigned rides")

        async def _read(session: AsyncSession) -> list[RideRequestModel]:
            return await RideRepository(session).get_active_for_driver(actor.user_id)

        return await read_with_retry(self.session_factory, _read, self.retry_attempts)

    async def get_completion(self, actor: Actor, ride_id: int) -> TripCompletionModel:
        async def _read(session: AsyncSession) -> Optional[TripCompletionModel]:
            return await TripCompletionRepository(session).get_by_ride(ride_id)

        completion = await read_with_retry(
            self.session_factory, _read, self.retry_attempts
        )
        if completion is None:
            raise NotFound("Trip completion not found")
        if actor.user_id not in (completion.driver_id, completion.client_id):
            raise Unauthorized("Unauthorized to view this trip completion")
        return completion

    async def rate_trip(
        self, actor: Actor, ride_id: int, rating: float, notes: Optional[str] = None
    ) -> TripCompletionModel:
        if not 1 <= rating <= 5:
            raise InvalidState("Rating must be between 1 and 5")

        async with exclusive(self.locks, ride_key(ride_id)):
            async with unit_of_work(self.session_factory) as session:
                completion = await TripCompletionRepository(session).get_by_ride(ride_id)
                if completion is None:
                    raise NotFound("Trip completion not found")
                if actor.is_client and completion.client_id == actor.user_id:
                    completion.client_rating = rating
                    completion.client_notes = notes
                elif actor.is_driver and completion.driver_id == actor.user_id:
                    completion.driver_rating = rating
                else:
                    raise Unauthorized("Unauthorized to rate this trip")
        return completion

    async def trip_history(
        self, actor: Actor, page: int = 1, limit: int = 10
    ) -> tuple[list[TripCompletionModel], int]:
        page = max(page, 1)
        if not 1 <= limit <= 100:
            limit = 10

        async def _read(session: AsyncSession):
            return await TripCompletionRepository(session).get_history(
                actor.user_id, actor.role, offset=(page - 1) * limit, limit=limit
            )

        return await read_with_retry(self.session_factory, _read, self.retry_attempts)

    # ── Internals ─────────────────────────────────────────────────────

    async def _load_for_update(
        self, rides: RideRepository, ride_id: int
    ) -> RideRequestModel:
        ride = await rides.get_for_update(ride_id)
        if ride is None:
            raise NotFound("Ride not found")
        return ride

    async def _advance(
        self, transition: Transition, actor: Actor, ride_id: int
    ) -> RideRequestModel:
        """Ride-only transitions: no presence side effects."""
        rule = TRANSITION_RULES[transition]
        async with exclusive(self.locks, ride_key(ride_id)):
            async with unit_of_work(self.session_factory) as session:
                rides = RideRepository(session)
                ride = await self._load_for_update(rides, ride_id)
                target = plan_transition(transition, actor, ride)
                if not await rides.transition(ride, rule.sources, status=target):
                    raise InvalidState(rule.invalid_message)
        logger.info("Ride %d -> %s", ride_id, target.value)
        return ride

    async def _peek_driver(self, ride_id: int) -> Optional[int]:
        async def _read(session: AsyncSession) -> Optional[RideRequestModel]:
            return await RideRepository(session).get_by_id(ride_id)

        ride = await read_with_retry(self.session_factory, _read, self.retry_attempts)
        if ride is None:
            raise NotFound("Ride not found")
        return ride.driver_id

    async def _cancel_locked(
        self, actor: Actor, ride_id: int, bound: Optional[int]
    ) -> RideRequestModel:
        rule = TRANSITION_RULES[Transition.CANCEL]
        async with unit_of_work(self.session_factory) as session:
            rides = RideRepository(session)
            ride = await self._load_for_update(rides, ride_id)
            target = plan_transition(Transition.CANCEL, actor, ride)
            if not await rides.transition(
                ride,
                rule.sources,
                status=target,
                driver_id=None,
                cancelled_by=actor.role,
            ):
                raise InvalidState(rule.invalid_message)
            if bound is not None:
                await DriverPresenceRepository(session).release(bound)
        return ride
