"""
Driver presence endpoints
=========================

POST /api/v1/drivers/location     -- report current position (goes online)
POST /api/v1/drivers/availability -- toggle availability for new rides
POST /api/v1/drivers/offline      -- leave the dispatch pool
GET  /api/v1/drivers/status       -- offline / available / busy
GET  /api/v1/drivers/nearby       -- available drivers around a point
GET  /api/v1/drivers/rides        -- the caller's rides in progress
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from ridedispatch.api.dependencies import get_actor, get_dispatch, get_presence
from ridedispatch.api.middleware import RATE_LIMIT, limiter
from ridedispatch.api.schemas import (
    AvailabilityRequest,
    DriverPresenceResponse,
    LocationUpdateRequest,
    NearbyDriverResponse,
    RideResponse,
)
from ridedispatch.domain.entities import Actor
from ridedispatch.services.dispatch import DispatchService
from ridedispatch.services.presence import PresenceTracker

router = APIRouter(prefix="/drivers", tags=["drivers"])


def _require_driver(actor: Actor) -> None:
    if not actor.is_driver:
        raise HTTPException(status_code=403, detail="Only drivers can do this")


@router.post(
    "/location",
    response_model=DriverPresenceResponse,
    summary="Update the caller's location",
)
@limiter.limit(RATE_LIMIT)
async def update_location(
    request: Request,
    body: LocationUpdateRequest,
    actor: Actor = Depends(get_actor),
    presence: PresenceTracker = Depends(get_presence),
):
    _require_driver(actor)
    record = await presence.set_location(actor.user_id, body.lat, body.lng, body.heading)
    return DriverPresenceResponse.from_model(record)


@router.post(
    "/availability",
    response_model=DriverPresenceResponse,
    summary="Set whether the caller takes new rides",
)
@limiter.limit(RATE_LIMIT)
async def update_availability(
    request: Request,
    body: AvailabilityRequest,
    actor: Actor = Depends(get_actor),
    presence: PresenceTracker = Depends(get_presence),
):
    _require_driver(actor)
    record = await presence.set_availability(actor.user_id, body.is_available)
    return DriverPresenceResponse.from_model(record)


@router.post("/offline", response_model=DriverPresenceResponse, summary="Go offline")
@limiter.limit(RATE_LIMIT)
async def go_offline(
    request: Request,
    actor: Actor = Depends(get_actor),
    presence: PresenceTracker = Depends(get_presence),
):
    _require_driver(actor)
    return DriverPresenceResponse.from_model(await presence.go_offline(actor.user_id))


@router.get("/status", response_model=DriverPresenceResponse, summary="Presence of the caller")
@limiter.limit(RATE_LIMIT)
async def driver_status(
    request: Request,
    actor: Actor = Depends(get_actor),
    presence: PresenceTracker = Depends(get_presence),
):
    _require_driver(actor)
    return DriverPresenceResponse.from_model(await presence.get(actor.user_id))


@router.get(
    "/nearby",
    response_model=list[NearbyDriverResponse],
    summary="Available drivers within a radius, closest first",
)
@limiter.limit(RATE_LIMIT)
async def nearby_drivers(
    request: Request,
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius: float = Query(10.0, gt=0, le=100, description="Kilometres"),
    actor: Actor = Depends(get_actor),
    presence: PresenceTracker = Depends(get_presence),
):
    drivers = await presence.find_available_near(lat, lng, radius)
    return [
        NearbyDriverResponse(
            driver_id=d.driver_id,
            latitude=d.latitude,
            longitude=d.longitude,
            heading=d.heading,
            distance_km=round(d.distance_km, 2),
        )
        for d in drivers
    ]


@router.get(
    "/rides",
    response_model=list[RideResponse],
    summary="Rides currently assigned to the caller",
)
@limiter.limit(RATE_LIMIT)
async def active_rides(
    request: Request,
    actor: Actor = Depends(get_actor),
    dispatch: DispatchService = Depends(get_dispatch),
):
    rides = await dispatch.driver_active_rides(actor)
    return [RideResponse.from_model(r) for r in rides]
