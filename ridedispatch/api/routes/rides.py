"""
Ride endpoints
==============

POST  /api/v1/rides/request          -- client requests a ride
GET   /api/v1/rides/{ride_id}        -- ride details (owner or bound driver)
POST  /api/v1/rides/{ride_id}/accept -- driver takes a pending ride
POST  /api/v1/rides/{ride_id}/reject -- driver declines a pending ride
POST  /api/v1/rides/{ride_id}/arrived
POST  /api/v1/rides/{ride_id}/start
POST  /api/v1/rides/{ride_id}/complete
POST  /api/v1/rides/{ride_id}/cancel
PATCH /api/v1/rides/{ride_id}/status -- generic status change, mapped onto
                                        the named transitions above
GET   /api/v1/rides/{ride_id}/completion
POST  /api/v1/rides/{ride_id}/rate
"""

from fastapi import APIRouter, Depends, Request

from ridedispatch.api.dependencies import get_actor, get_dispatch
from ridedispatch.api.middleware import RATE_LIMIT, limiter
from ridedispatch.api.schemas import (
    AcceptRideResponse,
    CompleteRideRequest,
    CompleteRideResponse,
    ErrorResponse,
    RateTripRequest,
    RideCreateRequest,
    RideRequestResponse,
    RideResponse,
    StatusUpdateRequest,
    TripCompletionResponse,
)
from ridedispatch.domain.entities import Actor
from ridedispatch.services.dispatch import DispatchService

router = APIRouter(
    prefix="/rides",
    tags=["rides"],
    responses={
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)


@router.post(
    "/request",
    status_code=201,
    response_model=RideRequestResponse,
    summary="Request a ride",
    responses={201: {"description": "Ride created and offered to nearby drivers."}},
)
@limiter.limit(RATE_LIMIT)
async def request_ride(
    request: Request,
    body: RideCreateRequest,
    actor: Actor = Depends(get_actor),
    dispatch: DispatchService = Depends(get_dispatch),
):
    result = await dispatch.request_ride(
        actor, body.pickup.to_domain(), body.destination.to_domain()
    )
    return RideRequestResponse(
        ride=RideResponse.from_model(result.ride),
        drivers_notified=result.drivers_notified,
    )


@router.get("/{ride_id}", response_model=RideResponse, summary="Get a ride")
@limiter.limit(RATE_LIMIT)
async def get_ride(
    request: Request,
    ride_id: int,
    actor: Actor = Depends(get_actor),
    dispatch: DispatchService = Depends(get_dispatch),
):
    return RideResponse.from_model(await dispatch.get_ride(actor, ride_id))


@router.post(
    "/{ride_id}/accept",
    response_model=AcceptRideResponse,
    summary="Accept a pending ride",
    description=(
        "Binds the calling driver to the ride and marks them unavailable. "
        "Only one of several concurrent accepts can succeed; the others "
        "get 400 'Ride is no longer available'."
    ),
)
@limiter.limit(RATE_LIMIT)
async def accept_ride(
    request: Request,
    ride_id: int,
    actor: Actor = Depends(get_actor),
    dispatch: DispatchService = Depends(get_dispatch),
):
    result = await dispatch.accept(actor, ride_id)
    return AcceptRideResponse(
        ride=RideResponse.from_model(result.ride), estimated_time=result.eta
    )


@router.post("/{ride_id}/reject", response_model=RideResponse, summary="Reject a pending ride")
@limiter.limit(RATE_LIMIT)
async def reject_ride(
    request: Request,
    ride_id: int,
    actor: Actor = Depends(get_actor),
    dispatch: DispatchService = Depends(get_dispatch),
):
    return RideResponse.from_model(await dispatch.reject(actor, ride_id))


@router.post(
    "/{ride_id}/arrived",
    response_model=RideResponse,
    summary="Mark arrival at the pickup point",
)
@limiter.limit(RATE_LIMIT)
async def mark_arrived(
    request: Request,
    ride_id: int,
    actor: Actor = Depends(get_actor),
    dispatch: DispatchService = Depends(get_dispatch),
):
    return RideResponse.from_model(await dispatch.arrive(actor, ride_id))


@router.post("/{ride_id}/start", response_model=RideResponse, summary="Start the trip")
@limiter.limit(RATE_LIMIT)
async def start_ride(
    request: Request,
    ride_id: int,
    actor: Actor = Depends(get_actor),
    dispatch: DispatchService = Depends(get_dispatch),
):
    return RideResponse.from_model(await dispatch.start(actor, ride_id))


@router.post(
    "/{ride_id}/complete",
    response_model=CompleteRideResponse,
    summary="Complete the trip with its actuals",
)
@limiter.limit(RATE_LIMIT)
async def complete_ride(
    request: Request,
    ride_id: int,
    body: CompleteRideRequest,
    actor: Actor = Depends(get_actor),
    dispatch: DispatchService = Depends(get_dispatch),
):
    result = await dispatch.complete(
        actor,
        ride_id,
        actual_fare=body.actual_fare,
        actual_distance=body.actual_distance,
        actual_duration=body.actual_duration,
        driver_notes=body.driver_notes,
    )
    return CompleteRideResponse(
        ride=RideResponse.from_model(result.ride),
        completion=TripCompletionResponse.model_validate(result.completion),
    )


@router.post(
    "/{ride_id}/cancel",
    response_model=RideResponse,
    summary="Cancel a ride",
    description=(
        "Allowed for the owning client or the bound driver while the ride "
        "is not yet completed or cancelled. A bound driver is freed."
    ),
)
@limiter.limit(RATE_LIMIT)
async def cancel_ride(
    request: Request,
    ride_id: int,
    actor: Actor = Depends(get_actor),
    dispatch: DispatchService = Depends(get_dispatch),
):
    return RideResponse.from_model(await dispatch.cancel(actor, ride_id))


@router.patch(
    "/{ride_id}/status",
    response_model=RideResponse,
    summary="Change ride status",
    description=(
        "Accepts accepted, arrived, started or cancelled and applies the "
        "matching transition with all of its guards. Completion has its "
        "own endpoint."
    ),
)
@limiter.limit(RATE_LIMIT)
async def update_ride_status(
    request: Request,
    ride_id: int,
    body: StatusUpdateRequest,
    actor: Actor = Depends(get_actor),
    dispatch: DispatchService = Depends(get_dispatch),
):
    return RideResponse.from_model(
        await dispatch.update_status(actor, ride_id, body.status)
    )


@router.get(
    "/{ride_id}/completion",
    response_model=TripCompletionResponse,
    summary="Get the completion record of a ride",
)
@limiter.limit(RATE_LIMIT)
async def get_completion(
    request: Request,
    ride_id: int,
    actor: Actor = Depends(get_actor),
    dispatch: DispatchService = Depends(get_dispatch),
):
    return await dispatch.get_completion(actor, ride_id)


@router.post(
    "/{ride_id}/rate",
    response_model=TripCompletionResponse,
    summary="Rate a completed trip",
)
@limiter.limit(RATE_LIMIT)
async def rate_trip(
    request: Request,
    ride_id: int,
    body: RateTripRequest,
    actor: Actor = Depends(get_actor),
    dispatch: DispatchService = Depends(get_dispatch),
):
    return await dispatch.rate_trip(actor, ride_id, body.rating, body.notes)
