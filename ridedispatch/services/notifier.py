"""
Event notifier: dispatch outcomes -> typed realtime messages.

Every ride event goes to the hub for the parties involved and, in parallel,
to the push collaborator as a background task.  Nothing in here may fail the
transition that triggered it: hub delivery never blocks, and push errors are
logged and dropped.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Optional

from ridedispatch.domain.distance import eta_minutes
from ridedispatch.domain.entities import NearbyDriver
from ridedispatch.domain.enums import Role
from ridedispatch.infrastructure.models import (
    DriverPresenceModel,
    RideRequestModel,
    TripCompletionModel,
)
from ridedispatch.infrastructure.push import PushSender
from ridedispatch.realtime.hub import ConnectionHub, envelope

logger = logging.getLogger(__name__)

RIDE_REQUEST = "ride_request"
RIDE_ACCEPTED = "ride_accepted"
DRIVER_ARRIVED = "driver_arrived"
RIDE_STARTED = "ride_started"
RIDE_COMPLETED = "ride_completed"
RIDE_CANCELLED = "ride_cancelled"
DRIVER_LOCATION_UPDATE = "driver_location_update"


def _ride_summary(ride: RideRequestModel) -> dict[str, Any]:
    return {
        "rideId": ride.id,
        "status": ride.status.value,
        "clientId": ride.client_id,
        "driverId": ride.driver_id,
        "pickup": {
            "lat": ride.pickup_lat,
            "lng": ride.pickup_lng,
            "address": ride.pickup_address,
        },
        "destination": {
            "lat": ride.dest_lat,
            "lng": ride.dest_lng,
            "address": ride.dest_address,
        },
        "price": ride.price,
        "distance": ride.distance_km,
        "duration": ride.duration_min,
    }


class EventNotifier:
    def __init__(self, hub: ConnectionHub, push: Optional[PushSender] = None):
        self.hub = hub
        self.push = push
        self._pending: set[asyncio.Task] = set()

    # ── Ride events ───────────────────────────────────────────────────

    def ride_request(
        self,
        ride: RideRequestModel,
        drivers: Iterable[NearbyDriver],
        client_name: str = "",
        average_speed_kmh: float = 30.0,
    ) -> int:
        """Offer a new ride to each nearby driver.  Returns how many were reached."""
        notified = 0
        for driver in drivers:
            data = {
                **_ride_summary(ride),
                "clientName": client_name,
                "driverDistance": round(driver.distance_km, 2),
                "estimatedTime": eta_minutes(driver.distance_km, average_speed_kmh),
            }
            if self.hub.send_to_user(driver.driver_id, envelope(RIDE_REQUEST, data)):
                notified += 1
            self._schedule_push(
                driver.driver_id,
                "New ride request",
                f"Pickup at {ride.pickup_address or 'client location'}",
                RIDE_REQUEST,
                ride.id,
            )
        return notified

    def ride_accepted(self, ride: RideRequestModel, eta: int) -> None:
        data = {**_ride_summary(ride), "estimatedTime": eta}
        self._to_parties(ride, RIDE_ACCEPTED, data, ride.driver_id)
        self._schedule_push(
            ride.client_id,
            "Ride accepted",
            f"Your driver arrives in about {eta} min",
            RIDE_ACCEPTED,
            ride.id,
        )

    def driver_arrived(self, ride: RideRequestModel) -> None:
        data = {**_ride_summary(ride), "message": "Driver has arrived at pickup location"}
        self._to_parties(ride, DRIVER_ARRIVED, data, ride.driver_id)
        self._schedule_push(
            ride.client_id, "Driver arrived", "Your driver is waiting", DRIVER_ARRIVED, ride.id
        )

    def ride_started(self, ride: RideRequestModel) -> None:
        data = {**_ride_summary(ride), "message": "Ride has started"}
        self._to_parties(ride, RIDE_STARTED, data, ride.driver_id)
        self._schedule_push(
            ride.client_id, "Ride started", "Enjoy your trip", RIDE_STARTED, ride.id
        )

    def ride_completed(
        self, ride: RideRequestModel, completion: TripCompletionModel
    ) -> None:
        data = {
            **_ride_summary(ride),
            "actualFare": completion.actual_fare,
            "actualDistance": completion.actual_distance,
            "actualDuration": completion.actual_duration,
            "driverNotes": completion.driver_notes,
        }
        self._to_parties(ride, RIDE_COMPLETED, data, ride.driver_id)
        self._schedule_push(
            ride.client_id,
            "Ride completed",
            f"Fare: {completion.actual_fare:.2f}",
            RIDE_COMPLETED,
            ride.id,
        )

    def ride_cancelled(
        self, ride: RideRequestModel, previous_driver_id: Optional[int], reason: str
    ) -> None:
        """Tell the client and, if one was bound, the driver that lost the ride."""
        data = {**_ride_summary(ride), "driverId": previous_driver_id, "reason": reason}
        self._to_parties(ride, RIDE_CANCELLED, data, previous_driver_id)
        for user_id in filter(None, (ride.client_id, previous_driver_id)):
            self._schedule_push(user_id, "Ride cancelled", reason, RIDE_CANCELLED, ride.id)

    # ── Presence events ───────────────────────────────────────────────

    def driver_location(self, presence: DriverPresenceModel) -> int:
        data = {
            "driverId": presence.driver_id,
            "location": {
                "lat": presence.latitude,
                "lng": presence.longitude,
                "heading": presence.heading,
            },
        }
        return self.hub.send_to_role(Role.CLIENT, envelope(DRIVER_LOCATION_UPDATE, data))

    # ── Internals ─────────────────────────────────────────────────────

    def _to_parties(
        self,
        ride: RideRequestModel,
        msg_type: str,
        data: dict[str, Any],
        driver_id: Optional[int],
    ) -> None:
        message = envelope(msg_type, data)
        self.hub.send_to_user(ride.client_id, message)
        if driver_id is not None:
            self.hub.send_to_user(driver_id, message)

    def _schedule_push(
        self, user_id: int, title: str, body: str, event: str, ride_id: int
    ) -> None:
        if self.push is None:
            return
        payload = {
            "title": title,
            "body": body,
            "data": {"type": event, "rideId": ride_id},
        }
        task = asyncio.create_task(self._push(f"user:{user_id}", payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _push(self, target: str, payload: dict[str, Any]) -> None:
        try:
            ok = await self.push.send(target, payload)
        except Exception:
            logger.exception("Push sender raised for %s", target)
            return
        if not ok:
            logger.warning("Push to %s was not delivered", target)

    async def drain(self) -> None:
        """Wait for in-flight push tasks (used on shutdown and in tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
