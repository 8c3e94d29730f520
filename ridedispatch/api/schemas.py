"""Pydantic request / response schemas for the REST API.

Field names are snake_case in Python and camelCase on the wire.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ridedispatch.domain.entities import Location
from ridedispatch.domain.enums import RideStatus
from ridedispatch.infrastructure.models import DriverPresenceModel, RideRequestModel
from ridedispatch.services.presence import presence_status


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# ── Requests ──────────────────────────────────────────────────────────


class LocationIn(CamelModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    address: str = Field("", max_length=255)

    def to_domain(self) -> Location:
        return Location(latitude=self.lat, longitude=self.lng, address=self.address)


class RideCreateRequest(CamelModel):
    pickup: LocationIn
    destination: LocationIn


class CompleteRideRequest(CamelModel):
    actual_fare: float = Field(..., ge=0)
    actual_distance: float = Field(..., ge=0)
    actual_duration: int = Field(..., ge=0, description="Minutes")
    driver_notes: Optional[str] = Field(None, max_length=1000)


class StatusUpdateRequest(CamelModel):
    status: RideStatus


class RateTripRequest(CamelModel):
    rating: float
    notes: Optional[str] = Field(None, max_length=1000)


class LocationUpdateRequest(CamelModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    heading: float = Field(0.0, ge=0, lt=360)


class AvailabilityRequest(CamelModel):
    is_available: bool


# ── Responses ─────────────────────────────────────────────────────────


class LocationOut(CamelModel):
    lat: float
    lng: float
    address: str = ""


class RideResponse(CamelModel):
    id: int
    client_id: int
    driver_id: Optional[int] = None
    pickup: LocationOut
    destination: LocationOut
    status: RideStatus
    price: float
    distance: float
    duration: int
    cancelled_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, ride: RideRequestModel) -> "RideResponse":
        return cls(
            id=ride.id,
            client_id=ride.client_id,
            driver_id=ride.driver_id,
            pickup=LocationOut(
                lat=ride.pickup_lat, lng=ride.pickup_lng, address=ride.pickup_address
            ),
            destination=LocationOut(
                lat=ride.dest_lat, lng=ride.dest_lng, address=ride.dest_address
            ),
            status=ride.status,
            price=ride.price,
            distance=ride.distance_km,
            duration=ride.duration_min,
            cancelled_by=ride.cancelled_by.value if ride.cancelled_by else None,
            created_at=ride.created_at,
            updated_at=ride.updated_at,
        )


class RideRequestResponse(CamelModel):
    ride: RideResponse
    drivers_notified: int


class AcceptRideResponse(CamelModel):
    ride: RideResponse
    estimated_time: int = Field(..., description="Minutes until pickup")


class TripCompletionResponse(CamelModel):
    id: int
    ride_id: int
    driver_id: int
    client_id: int
    actual_fare: float
    actual_distance: float
    actual_duration: int
    driver_notes: Optional[str] = None
    client_rating: Optional[float] = None
    client_notes: Optional[str] = None
    driver_rating: Optional[float] = None
    created_at: Optional[datetime] = None


class CompleteRideResponse(CamelModel):
    ride: RideResponse
    completion: TripCompletionResponse


class TripHistoryResponse(CamelModel):
    trips: list[TripCompletionResponse]
    total: int
    page: int
    limit: int


class DriverPresenceResponse(CamelModel):
    driver_id: int
    latitude: float
    longitude: float
    heading: float
    is_online: bool
    is_available: bool
    status: str
    last_seen: Optional[datetime] = None

    @classmethod
    def from_model(cls, presence: DriverPresenceModel) -> "DriverPresenceResponse":
        return cls(
            driver_id=presence.driver_id,
            latitude=presence.latitude,
            longitude=presence.longitude,
            heading=presence.heading,
            is_online=presence.is_online,
            is_available=presence.is_available,
            status=presence_status(presence),
            last_seen=presence.last_seen,
        )


class NearbyDriverResponse(CamelModel):
    driver_id: int
    latitude: float
    longitude: float
    heading: float
    distance_km: float


class HealthResponse(BaseModel):
    status: str = "ok"
    connections: int = 0


class ErrorResponse(BaseModel):
    detail: str
