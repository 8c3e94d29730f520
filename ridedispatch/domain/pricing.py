"""
Fare quoting  (Strategy Pattern)
================================

Formula
-------
Price = Base_Fare + Distance x Rate_Per_KM

Short trips (``distance <= minimum_fare_distance_km``) are charged a flat
``minimum_fare`` when one is configured.

Complexity: O(1) per quote.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from .distance import eta_minutes, haversine_km
from .entities import FareQuote, Location


# ── Strategy hierarchy ────────────────────────────────────────────────


class PricingStrategy(ABC):
    @abstractmethod
    def calculate(
        self, distance_km: float, base_fare: float, rate_per_km: float
    ) -> float: ...


class StandardPricing(PricingStrategy):
    def calculate(
        self, distance_km: float, base_fare: float, rate_per_km: float
    ) -> float:
        return round(base_fare + distance_km * rate_per_km, 2)


class MinimumFarePricing(PricingStrategy):
    """Flat fare up to a threshold distance, standard pricing beyond it."""

    def __init__(self, minimum_fare: float, threshold_km: float):
        self.minimum_fare = minimum_fare
        self.threshold_km = threshold_km

    def calculate(
        self, distance_km: float, base_fare: float, rate_per_km: float
    ) -> float:
        if distance_km <= self.threshold_km:
            return self.minimum_fare
        standard = StandardPricing().calculate(distance_km, base_fare, rate_per_km)
        return max(self.minimum_fare, standard)


# ── Engine facade ─────────────────────────────────────────────────────


class PricingEngine:
    """Quotes price, distance and duration for a ride request."""

    def __init__(
        self,
        base_fare: float = 5.0,
        rate_per_km: float = 2.0,
        average_speed_kmh: float = 30.0,
        minimum_fare: float = 0.0,
        minimum_fare_distance_km: float = 3.0,
    ):
        self.base_fare = base_fare
        self.rate_per_km = rate_per_km
        self.average_speed_kmh = average_speed_kmh
        if minimum_fare > 0:
            self.strategy: PricingStrategy = MinimumFarePricing(
                minimum_fare, minimum_fare_distance_km
            )
        else:
            self.strategy = StandardPricing()

    @classmethod
    def from_settings(cls, settings) -> "PricingEngine":
        return cls(
            base_fare=settings.base_fare,
            rate_per_km=settings.rate_per_km,
            average_speed_kmh=settings.average_speed_kmh,
            minimum_fare=settings.minimum_fare,
            minimum_fare_distance_km=settings.minimum_fare_distance_km,
        )

    def quote(self, pickup: Location, destination: Location) -> FareQuote:
        distance = haversine_km(
            pickup.latitude, pickup.longitude,
            destination.latitude, destination.longitude,
        )
        return FareQuote(
            price=self.strategy.calculate(distance, self.base_fare, self.rate_per_km),
            distance_km=round(distance, 2),
            duration_min=eta_minutes(distance, self.average_speed_kmh),
        )
