"""
Domain value objects.

``Actor`` is the verified caller identity handed to the core by the
authentication layer; role-specific behaviour hangs off its ``role`` tag
instead of string comparisons scattered through handlers.
"""

from __future__ import annotations

from dataclasses import dataclass

from .enums import Role


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float
    address: str = ""


@dataclass(frozen=True)
class Actor:
    user_id: int
    role: Role

    @property
    def is_client(self) -> bool:
        return self.role is Role.CLIENT

    @property
    def is_driver(self) -> bool:
        return self.role is Role.DRIVER


@dataclass(frozen=True)
class FareQuote:
    price: float
    distance_km: float
    duration_min: int


@dataclass(frozen=True)
class NearbyDriver:
    driver_id: int
    latitude: float
    longitude: float
    heading: float
    distance_km: float
