"""
Dispatch service tests.

Demonstrates:
1. At most one of several concurrent accepts wins; the loser sees
   ``InvalidState`` and keeps its availability; a driver racing for two rides
   ends up with exactly one.
2. Every failed transition leaves ride and presence exactly as they were.
3. Events reach the parties in transition order.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from ridedispatch.domain.entities import Location
from ridedispatch.domain.enums import DRIVER_BOUND_STATUSES, RideStatus, Role
from ridedispatch.domain.errors import (
    Busy,
    Conflict,
    InvalidState,
    NotFound,
    Unauthorized,
)
from ridedispatch.infrastructure.repositories import (
    DriverPresenceRepository,
    RideRepository,
)
from ridedispatch.services.store import ride_key

PICKUP = Location(0.0, 0.0, "Origin")
DESTINATION = Location(0.0, 1.0, "One degree east")


async def new_ride(services, actors):
    result = await services.dispatch.request_ride(actors.client, PICKUP, DESTINATION)
    return result.ride


async def started_ride(services, actors, go_available):
    await go_available(actors.driver, 0.0, 0.01)
    ride = await new_ride(services, actors)
    await services.dispatch.accept(actors.driver, ride.id)
    await services.dispatch.start(actors.driver, ride.id)
    return ride


def assert_driver_binding(ride):
    assert (ride.driver_id is not None) == (ride.status in DRIVER_BOUND_STATUSES)


# ── Request ───────────────────────────────────────────────────────────


class TestRequestRide:
    @pytest.mark.asyncio
    async def test_creates_pending_ride_with_quote(self, services, actors):
        result = await services.dispatch.request_ride(actors.client, PICKUP, DESTINATION)
        ride = result.ride
        assert ride.status == RideStatus.PENDING
        assert ride.driver_id is None
        assert ride.client_id == actors.client.user_id
        assert 111.0 < ride.distance_km < 111.4
        assert ride.price > 0
        assert result.drivers_notified == 0

    @pytest.mark.asyncio
    async def test_drivers_cannot_request(self, services, actors):
        with pytest.raises(Unauthorized):
            await services.dispatch.request_ride(actors.driver, PICKUP, DESTINATION)

    @pytest.mark.asyncio
    async def test_nearby_available_drivers_are_offered_the_ride(
        self, services, actors, go_available, inbox
    ):
        await go_available(actors.driver, 0.0, 0.01)
        await go_available(actors.other_driver, 0.01, 0.0)
        await go_available(actors.far_driver, 5.0, 5.0)
        conns = {
            a.user_id: services.hub.connect(a.user_id, Role.DRIVER)
            for a in (actors.driver, actors.other_driver, actors.far_driver)
        }

        result = await services.dispatch.request_ride(actors.client, PICKUP, DESTINATION)

        assert result.drivers_notified == 2
        for driver in (actors.driver, actors.other_driver):
            messages = inbox(conns[driver.user_id])
            assert [m["type"] for m in messages] == ["ride_request"]
            assert messages[0]["data"]["rideId"] == result.ride.id
            assert messages[0]["data"]["status"] == "pending"
            assert messages[0]["data"]["clientName"] == "Client One"
        assert inbox(conns[actors.far_driver.user_id]) == []

    @pytest.mark.asyncio
    async def test_unavailable_driver_is_not_offered(
        self, services, actors, go_available, inbox
    ):
        await go_available(actors.driver, 0.0, 0.01)
        await services.presence.set_availability(actors.driver.user_id, False)
        conn = services.hub.connect(actors.driver.user_id, Role.DRIVER)

        result = await services.dispatch.request_ride(actors.client, PICKUP, DESTINATION)

        assert result.drivers_notified == 0
        assert inbox(conn) == []

    @pytest.mark.asyncio
    async def test_fan_out_failure_does_not_fail_request(
        self, services, actors, monkeypatch
    ):
        monkeypatch.setattr(
            services.presence,
            "find_available_near",
            AsyncMock(side_effect=RuntimeError("boom")),
        )
        result = await services.dispatch.request_ride(actors.client, PICKUP, DESTINATION)
        assert result.ride.status == RideStatus.PENDING
        assert result.drivers_notified == 0


# ── Accept ────────────────────────────────────────────────────────────


class TestAccept:
    @pytest.mark.asyncio
    async def test_accept_binds_driver_and_reserves(self, services, actors, go_available):
        await go_available(actors.driver, 0.0, 0.01)
        ride = await new_ride(services, actors)

        result = await services.dispatch.accept(actors.driver, ride.id)

        assert result.ride.status == RideStatus.ACCEPTED
        assert result.ride.driver_id == actors.driver.user_id
        assert result.eta >= 1
        presence = await services.presence.get(actors.driver.user_id)
        assert presence.is_available is False
        assert presence.is_online is True

    @pytest.mark.asyncio
    async def test_concurrent_accepts_have_one_winner(
        self, services, actors, go_available
    ):
        await go_available(actors.driver, 0.0, 0.01)
        await go_available(actors.other_driver, 0.01, 0.0)
        ride = await new_ride(services, actors)

        results = await asyncio.gather(
            services.dispatch.accept(actors.driver, ride.id),
            services.dispatch.accept(actors.other_driver, ride.id),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], InvalidState)
        assert losers[0].message == "Ride is no longer available"

        winner_id = winners[0].ride.driver_id
        stored = await services.dispatch.get_ride(actors.client, ride.id)
        assert stored.driver_id == winner_id

        busy = []
        for driver in (actors.driver, actors.other_driver):
            presence = await services.presence.get(driver.user_id)
            if not presence.is_available:
                busy.append(driver.user_id)
        assert busy == [winner_id]

    @pytest.mark.asyncio
    async def test_driver_racing_for_two_rides_gets_one(
        self, services, actors, go_available
    ):
        await go_available(actors.driver, 0.0, 0.01)
        first = await new_ride(services, actors)
        second = (
            await services.dispatch.request_ride(actors.other_client, PICKUP, DESTINATION)
        ).ride

        results = await asyncio.gather(
            services.dispatch.accept(actors.driver, first.id),
            services.dispatch.accept(actors.driver, second.id),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], InvalidState)
        assert losers[0].message == "Driver is not available"

        active = await services.dispatch.driver_active_rides(actors.driver)
        assert [r.id for r in active] == [winners[0].ride.id]
        statuses = sorted(
            [
                (await services.dispatch.get_ride(actors.client, first.id)).status,
                (await services.dispatch.get_ride(actors.other_client, second.id)).status,
            ]
        )
        assert statuses == sorted([RideStatus.ACCEPTED, RideStatus.PENDING])

    @pytest.mark.asyncio
    async def test_accept_and_going_unavailable_are_serialized(
        self, services, actors, go_available
    ):
        await go_available(actors.driver, 0.0, 0.01)
        ride = await new_ride(services, actors)

        accepted, _ = await asyncio.gather(
            services.dispatch.accept(actors.driver, ride.id),
            services.presence.set_availability(actors.driver.user_id, False),
            return_exceptions=True,
        )

        stored = await services.dispatch.get_ride(actors.client, ride.id)
        presence = await services.presence.get(actors.driver.user_id)
        assert presence.is_available is False
        assert_driver_binding(stored)
        if isinstance(accepted, Exception):
            assert isinstance(accepted, InvalidState)
            assert stored.status == RideStatus.PENDING
            assert stored.driver_id is None
        else:
            assert stored.status == RideStatus.ACCEPTED
            assert stored.driver_id == actors.driver.user_id

    @pytest.mark.asyncio
    async def test_unavailable_driver_cannot_accept(self, services, actors, go_available):
        await go_available(actors.driver, 0.0, 0.01)
        await services.presence.set_availability(actors.driver.user_id, False)
        ride = await new_ride(services, actors)

        with pytest.raises(InvalidState, match="not available"):
            await services.dispatch.accept(actors.driver, ride.id)
        stored = await services.dispatch.get_ride(actors.client, ride.id)
        assert stored.status == RideStatus.PENDING

    @pytest.mark.asyncio
    async def test_driver_without_presence_cannot_accept(self, services, actors):
        ride = await new_ride(services, actors)
        with pytest.raises(InvalidState, match="location not found"):
            await services.dispatch.accept(actors.driver, ride.id)

    @pytest.mark.asyncio
    async def test_failed_reserve_rolls_back_ride(
        self, services, actors, go_available, monkeypatch
    ):
        await go_available(actors.driver, 0.0, 0.01)
        ride = await new_ride(services, actors)
        monkeypatch.setattr(
            DriverPresenceRepository, "reserve", AsyncMock(return_value=False)
        )

        with pytest.raises(InvalidState):
            await services.dispatch.accept(actors.driver, ride.id)

        stored = await services.dispatch.get_ride(actors.client, ride.id)
        assert stored.status == RideStatus.PENDING
        assert stored.driver_id is None

    @pytest.mark.asyncio
    async def test_unknown_ride(self, services, actors, go_available):
        await go_available(actors.driver, 0.0, 0.01)
        with pytest.raises(NotFound):
            await services.dispatch.accept(actors.driver, 999)

    @pytest.mark.asyncio
    async def test_busy_when_ride_lock_is_held(self, services, actors, go_available):
        await go_available(actors.driver, 0.0, 0.01)
        ride = await new_ride(services, actors)
        services.locks.timeout = 0.05

        async with services.locks.hold(ride_key(ride.id)):
            with pytest.raises(Busy):
                await services.dispatch.accept(actors.driver, ride.id)

        stored = await services.dispatch.get_ride(actors.client, ride.id)
        assert stored.status == RideStatus.PENDING


class TestGuardedUpdate:
    @pytest.mark.asyncio
    async def test_stale_expected_status_matches_nothing(
        self, services, actors, go_available
    ):
        await go_available(actors.driver, 0.0, 0.01)
        ride = await new_ride(services, actors)
        await services.dispatch.accept(actors.driver, ride.id)

        async with services.session_factory() as session:
            rides = RideRepository(session)
            loaded = await rides.get_by_id(ride.id)
            applied = await rides.transition(
                loaded,
                {RideStatus.PENDING},
                require_unassigned=True,
                status=RideStatus.ACCEPTED,
                driver_id=actors.other_driver.user_id,
            )
            await session.rollback()
        assert applied is False


# ── Reject / advance ──────────────────────────────────────────────────


class TestReject:
    @pytest.mark.asyncio
    async def test_reject_cancels_pending(self, services, actors, inbox):
        ride = await new_ride(services, actors)
        client_conn = services.hub.connect(actors.client.user_id, Role.CLIENT)

        rejected = await services.dispatch.reject(actors.driver, ride.id)

        assert rejected.status == RideStatus.CANCELLED
        assert rejected.driver_id is None
        assert rejected.cancelled_by == Role.DRIVER
        messages = inbox(client_conn)
        assert messages[-1]["type"] == "ride_cancelled"
        assert messages[-1]["data"]["reason"] == "Driver rejected the ride"

    @pytest.mark.asyncio
    async def test_client_cannot_reject(self, services, actors):
        ride = await new_ride(services, actors)
        with pytest.raises(Unauthorized):
            await services.dispatch.reject(actors.client, ride.id)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_client_observes_every_status_in_order(
        self, services, actors, go_available, inbox
    ):
        await go_available(actors.driver, 0.0, 0.01)
        ride = await new_ride(services, actors)
        client_conn = services.hub.connect(actors.client.user_id, Role.CLIENT)

        await services.dispatch.accept(actors.driver, ride.id)
        await services.dispatch.arrive(actors.driver, ride.id)
        await services.dispatch.start(actors.driver, ride.id)
        await services.dispatch.complete(
            actors.driver,
            ride.id,
            actual_fare=500.0,
            actual_distance=111.2,
            actual_duration=230,
        )

        statuses = [m["data"]["status"] for m in inbox(client_conn)]
        assert statuses == ["accepted", "arrived", "started", "completed"]

    @pytest.mark.asyncio
    async def test_only_bound_driver_can_advance(self, services, actors, go_available):
        await go_available(actors.driver, 0.0, 0.01)
        ride = await new_ride(services, actors)
        await services.dispatch.accept(actors.driver, ride.id)

        with pytest.raises(Unauthorized):
            await services.dispatch.arrive(actors.other_driver, ride.id)
        with pytest.raises(Unauthorized):
            await services.dispatch.start(actors.client, ride.id)

    @pytest.mark.asyncio
    async def test_arrive_after_start_fails(self, services, actors, go_available):
        ride = await started_ride(services, actors, go_available)
        with pytest.raises(InvalidState, match="must be accepted"):
            await services.dispatch.arrive(actors.driver, ride.id)
        stored = await services.dispatch.get_ride(actors.client, ride.id)
        assert stored.status == RideStatus.STARTED


# ── Complete ──────────────────────────────────────────────────────────


class TestComplete:
    @pytest.mark.asyncio
    async def test_completion_round_trip(self, services, actors, go_available):
        ride = await started_ride(services, actors, go_available)

        result = await services.dispatch.complete(
            actors.driver,
            ride.id,
            actual_fare=500.0,
            actual_distance=12.5,
            actual_duration=27,
            driver_notes="Smooth ride",
        )
        assert result.ride.status == RideStatus.COMPLETED
        assert_driver_binding(result.ride)

        completion = await services.dispatch.get_completion(actors.client, ride.id)
        assert completion.actual_fare == 500.0
        assert completion.actual_distance == 12.5
        assert completion.actual_duration == 27
        assert completion.driver_notes == "Smooth ride"

        presence = await services.presence.get(actors.driver.user_id)
        assert presence.is_available is True

    @pytest.mark.asyncio
    async def test_second_completion_conflicts(self, services, actors, go_available):
        ride = await started_ride(services, actors, go_available)
        actuals = dict(actual_fare=20.0, actual_distance=5.0, actual_duration=10)

        await services.dispatch.complete(actors.driver, ride.id, **actuals)
        with pytest.raises(Conflict, match="already completed"):
            await services.dispatch.complete(actors.driver, ride.id, **actuals)

        completion = await services.dispatch.get_completion(actors.driver, ride.id)
        assert completion.actual_fare == 20.0

    @pytest.mark.asyncio
    async def test_complete_before_start_fails(self, services, actors, go_available):
        await go_available(actors.driver, 0.0, 0.01)
        ride = await new_ride(services, actors)
        await services.dispatch.accept(actors.driver, ride.id)

        with pytest.raises(InvalidState, match="must be started"):
            await services.dispatch.complete(
                actors.driver, ride.id, actual_fare=1.0, actual_distance=1.0, actual_duration=1
            )
        with pytest.raises(NotFound):
            await services.dispatch.get_completion(actors.driver, ride.id)

    @pytest.mark.asyncio
    async def test_other_driver_cannot_complete(self, services, actors, go_available):
        ride = await started_ride(services, actors, go_available)
        with pytest.raises(Unauthorized):
            await services.dispatch.complete(
                actors.other_driver,
                ride.id,
                actual_fare=1.0,
                actual_distance=1.0,
                actual_duration=1,
            )

    @pytest.mark.asyncio
    async def test_negative_actuals_rejected(self, services, actors, go_available):
        ride = await started_ride(services, actors, go_available)
        with pytest.raises(InvalidState):
            await services.dispatch.complete(
                actors.driver, ride.id, actual_fare=-1.0, actual_distance=1.0, actual_duration=1
            )


# ── Cancel ────────────────────────────────────────────────────────────


class TestCancel:
    @pytest.mark.asyncio
    async def test_client_cancels_pending(self, services, actors):
        ride = await new_ride(services, actors)
        cancelled = await services.dispatch.cancel(actors.client, ride.id)
        assert cancelled.status == RideStatus.CANCELLED
        assert cancelled.cancelled_by == Role.CLIENT
        assert_driver_binding(cancelled)

    @pytest.mark.asyncio
    async def test_cancel_twice_fails_without_mutation(self, services, actors):
        ride = await new_ride(services, actors)
        first = await services.dispatch.cancel(actors.client, ride.id)

        with pytest.raises(InvalidState, match="cannot be cancelled"):
            await services.dispatch.cancel(actors.client, ride.id)

        stored = await services.dispatch.get_ride(actors.client, ride.id)
        assert stored.status == RideStatus.CANCELLED
        assert stored.updated_at == first.updated_at

    @pytest.mark.asyncio
    async def test_cancel_accepted_frees_driver_and_notifies(
        self, services, actors, go_available, inbox
    ):
        await go_available(actors.driver, 0.0, 0.01)
        ride = await new_ride(services, actors)
        await services.dispatch.accept(actors.driver, ride.id)
        driver_conn = services.hub.connect(actors.driver.user_id, Role.DRIVER)

        cancelled = await services.dispatch.cancel(actors.client, ride.id)

        assert cancelled.driver_id is None
        presence = await services.presence.get(actors.driver.user_id)
        assert presence.is_available is True
        messages = inbox(driver_conn)
        assert [m["type"] for m in messages] == ["ride_cancelled"]
        assert messages[0]["data"]["driverId"] == actors.driver.user_id

    @pytest.mark.asyncio
    async def test_bound_driver_can_cancel(self, services, actors, go_available):
        ride = await started_ride(services, actors, go_available)
        cancelled = await services.dispatch.cancel(actors.driver, ride.id)
        assert cancelled.cancelled_by == Role.DRIVER

    @pytest.mark.asyncio
    async def test_stranger_cannot_cancel(self, services, actors):
        ride = await new_ride(services, actors)
        with pytest.raises(Unauthorized):
            await services.dispatch.cancel(actors.other_client, ride.id)
        stored = await services.dispatch.get_ride(actors.client, ride.id)
        assert stored.status == RideStatus.PENDING

    @pytest.mark.asyncio
    async def test_cannot_cancel_completed(self, services, actors, go_available):
        ride = await started_ride(services, actors, go_available)
        await services.dispatch.complete(
            actors.driver, ride.id, actual_fare=9.0, actual_distance=3.0, actual_duration=7
        )
        with pytest.raises(InvalidState):
            await services.dispatch.cancel(actors.client, ride.id)


# ── Generic status update ─────────────────────────────────────────────


class TestUpdateStatus:
    @pytest.mark.asyncio
    async def test_status_routes_through_guards(self, services, actors, go_available):
        await go_available(actors.driver, 0.0, 0.01)
        ride = await new_ride(services, actors)

        accepted = await services.dispatch.update_status(
            actors.driver, ride.id, RideStatus.ACCEPTED
        )
        assert accepted.status == RideStatus.ACCEPTED
        presence = await services.presence.get(actors.driver.user_id)
        assert presence.is_available is False

        started = await services.dispatch.update_status(
            actors.driver, ride.id, RideStatus.STARTED
        )
        assert started.status == RideStatus.STARTED

    @pytest.mark.asyncio
    async def test_cannot_jump_to_completed(self, services, actors, go_available):
        ride = await started_ride(services, actors, go_available)
        with pytest.raises(InvalidState, match="cannot be set directly"):
            await services.dispatch.update_status(actors.driver, ride.id, RideStatus.COMPLETED)

    @pytest.mark.asyncio
    async def test_cannot_skip_acceptance(self, services, actors):
        ride = await new_ride(services, actors)
        with pytest.raises(Unauthorized):
            await services.dispatch.update_status(actors.driver, ride.id, RideStatus.STARTED)


# ── Reads, ratings, history ───────────────────────────────────────────


class TestReads:
    @pytest.mark.asyncio
    async def test_get_ride_visibility(self, services, actors, go_available):
        ride = await started_ride(services, actors, go_available)
        assert (await services.dispatch.get_ride(actors.client, ride.id)).id == ride.id
        assert (await services.dispatch.get_ride(actors.driver, ride.id)).id == ride.id
        with pytest.raises(Unauthorized):
            await services.dispatch.get_ride(actors.other_client, ride.id)
        with pytest.raises(NotFound):
            await services.dispatch.get_ride(actors.client, 999)

    @pytest.mark.asyncio
    async def test_driver_active_rides(self, services, actors, go_available):
        ride = await started_ride(services, actors, go_available)
        rides = await services.dispatch.driver_active_rides(actors.driver)
        assert [r.id for r in rides] == [ride.id]
        assert await services.dispatch.driver_active_rides(actors.other_driver) == []
        with pytest.raises(Unauthorized):
            await services.dispatch.driver_active_rides(actors.client)

    @pytest.mark.asyncio
    async def test_rating_by_each_party(self, services, actors, go_available):
        ride = await started_ride(services, actors, go_available)
        await services.dispatch.complete(
            actors.driver, ride.id, actual_fare=9.0, actual_distance=3.0, actual_duration=7
        )

        await services.dispatch.rate_trip(actors.client, ride.id, 5, "Great driver")
        rated = await services.dispatch.rate_trip(actors.driver, ride.id, 4)

        assert rated.client_rating == 5
        assert rated.client_notes == "Great driver"
        assert rated.driver_rating == 4

    @pytest.mark.asyncio
    async def test_rating_bounds_and_access(self, services, actors, go_available):
        ride = await started_ride(services, actors, go_available)
        await services.dispatch.complete(
            actors.driver, ride.id, actual_fare=9.0, actual_distance=3.0, actual_duration=7
        )
        with pytest.raises(InvalidState):
            await services.dispatch.rate_trip(actors.client, ride.id, 6)
        with pytest.raises(Unauthorized):
            await services.dispatch.rate_trip(actors.other_client, ride.id, 3)
        with pytest.raises(NotFound):
            await services.dispatch.rate_trip(actors.client, 999, 3)

    @pytest.mark.asyncio
    async def test_trip_history_pagination(self, services, actors, go_available):
        for _ in range(3):
            ride = await started_ride(services, actors, go_available)
            await services.dispatch.complete(
                actors.driver, ride.id, actual_fare=9.0, actual_distance=3.0, actual_duration=7
            )

        page1, total = await services.dispatch.trip_history(actors.client, page=1, limit=2)
        page2, _ = await services.dispatch.trip_history(actors.client, page=2, limit=2)
        assert total == 3
        assert len(page1) == 2
        assert len(page2) == 1

        driver_trips, driver_total = await services.dispatch.trip_history(actors.driver)
        assert driver_total == 3
        assert len(driver_trips) == 3

        _, other_total = await services.dispatch.trip_history(actors.other_client)
        assert other_total == 0


# ── Notifications ─────────────────────────────────────────────────────


class TestPush:
    @pytest.mark.asyncio
    async def test_ride_events_are_pushed(self, services, actors, go_available, push):
        await go_available(actors.driver, 0.0, 0.01)
        ride = await new_ride(services, actors)
        await services.dispatch.accept(actors.driver, ride.id)
        await services.notifier.drain()

        targets = [target for target, _ in push.sent]
        assert f"user:{actors.driver.user_id}" in targets
        assert f"user:{actors.client.user_id}" in targets
        accepted = [p for _, p in push.sent if p["data"]["type"] == "ride_accepted"]
        assert accepted[0]["data"]["rideId"] == ride.id

    @pytest.mark.asyncio
    async def test_push_failure_does_not_fail_transition(
        self, services, actors, go_available, push
    ):
        push.fail = True
        await go_available(actors.driver, 0.0, 0.01)
        ride = await new_ride(services, actors)

        result = await services.dispatch.accept(actors.driver, ride.id)
        await services.notifier.drain()

        assert result.ride.status == RideStatus.ACCEPTED
        assert push.sent == []
