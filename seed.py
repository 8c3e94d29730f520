"""
Seed script -- populates the database with sample data for reviewers.

Run after migrations:
    python seed.py

Creates:
  - 5 sample clients
  - 8 sample drivers, each with a presence record around Mumbai airport
    (six online and available, one busy, one offline)
  - 3 sample ride requests (pending, accepted, completed)
"""

import asyncio

from sqlalchemy import text

from ridedispatch.config import settings
from ridedispatch.domain.entities import Location
from ridedispatch.domain.enums import RideStatus, Role
from ridedispatch.domain.pricing import PricingEngine
from ridedispatch.infrastructure.database import build_engine, build_session_factory
from ridedispatch.infrastructure.models import (
    DriverPresenceModel,
    RideRequestModel,
    TripCompletionModel,
    UserModel,
)

# Mumbai airport coordinates (approx)
AIRPORT_LAT, AIRPORT_LNG = 19.0896, 72.8656


CLIENTS = [
    {"name": "Aarav Sharma", "email": "aarav@example.com", "phone": "+919800000001"},
    {"name": "Priya Patel", "email": "priya@example.com", "phone": "+919800000002"},
    {"name": "Rohan Mehta", "email": "rohan@example.com", "phone": "+919800000003"},
    {"name": "Sneha Gupta", "email": "sneha@example.com", "phone": "+919800000004"},
    {"name": "Vikram Singh", "email": "vikram@example.com", "phone": "+919800000005"},
]

DRIVERS = [
    {"name": "Ananya Reddy", "email": "ananya@example.com", "lat": 19.0900, "lng": 72.8660, "online": True, "available": True},
    {"name": "Karan Joshi", "email": "karan@example.com", "lat": 19.0880, "lng": 72.8640, "online": True, "available": True},
    {"name": "Meera Nair", "email": "meera@example.com", "lat": 19.0910, "lng": 72.8670, "online": True, "available": True},
    {"name": "Arjun Kumar", "email": "arjun@example.com", "lat": 19.0920, "lng": 72.8680, "online": True, "available": True},
    {"name": "Diya Iyer", "email": "diya@example.com", "lat": 19.0870, "lng": 72.8630, "online": True, "available": True},
    {"name": "Kabir Das", "email": "kabir@example.com", "lat": 19.0905, "lng": 72.8665, "online": True, "available": True},
    # Carries the accepted sample ride below
    {"name": "Isha Kapoor", "email": "isha@example.com", "lat": 19.0895, "lng": 72.8655, "online": True, "available": False},
    {"name": "Nikhil Rao", "email": "nikhil@example.com", "lat": 19.0940, "lng": 72.8700, "online": False, "available": False},
]


async def seed(session_factory):
    pricing = PricingEngine.from_settings(settings)

    async with session_factory() as session:
        # Check if already seeded
        result = await session.execute(text("SELECT count(*) FROM users"))
        if result.scalar() > 0:
            print("Database already seeded. Skipping.")
            return

        # ── Users ─────────────────────────────────────────────────────
        clients = []
        for c in CLIENTS:
            m = UserModel(name=c["name"], email=c["email"], phone=c["phone"], role=Role.CLIENT)
            session.add(m)
            clients.append(m)
        drivers = []
        for d in DRIVERS:
            m = UserModel(name=d["name"], email=d["email"], role=Role.DRIVER)
            session.add(m)
            drivers.append(m)
        await session.flush()
        print(f"  Created {len(clients)} clients and {len(drivers)} drivers")

        # ── Presence ──────────────────────────────────────────────────
        for model, d in zip(drivers, DRIVERS):
            session.add(
                DriverPresenceModel(
                    driver_id=model.id,
                    latitude=d["lat"],
                    longitude=d["lng"],
                    heading=0.0,
                    is_online=d["online"],
                    is_available=d["available"],
                )
            )
        await session.flush()
        print(f"  Created {len(drivers)} presence records")

        # ── Rides ─────────────────────────────────────────────────────
        airport = Location(AIRPORT_LAT, AIRPORT_LNG, "Terminal 2, Mumbai Airport")
        rides_data = [
            {
                "client": clients[0],
                "destination": Location(19.0540, 72.8400, "Bandra"),
                "status": RideStatus.PENDING,
                "driver": None,
            },
            {
                "client": clients[1],
                "destination": Location(19.1200, 72.9100, "IIT Bombay"),
                "status": RideStatus.ACCEPTED,
                "driver": drivers[6],
            },
            {
                "client": clients[2],
                "destination": Location(19.0200, 72.8500, "Dadar"),
                "status": RideStatus.COMPLETED,
                "driver": drivers[0],
            },
        ]

        rides = []
        for r in rides_data:
            quote = pricing.quote(airport, r["destination"])
            ride = RideRequestModel(
                client_id=r["client"].id,
                driver_id=r["driver"].id if r["driver"] else None,
                pickup_lat=airport.latitude,
                pickup_lng=airport.longitude,
                pickup_address=airport.address,
                dest_lat=r["destination"].latitude,
                dest_lng=r["destination"].longitude,
                dest_address=r["destination"].address,
                status=r["status"],
                price=quote.price,
                distance_km=quote.distance_km,
                duration_min=quote.duration_min,
            )
            session.add(ride)
            rides.append(ride)
        await session.flush()
        print(f"  Created {len(rides)} rides")

        completed = rides[2]
        session.add(
            TripCompletionModel(
                ride_id=completed.id,
                driver_id=completed.driver_id,
                client_id=completed.client_id,
                actual_fare=completed.price,
                actual_distance=completed.distance_km,
                actual_duration=completed.duration_min,
                client_rating=5.0,
            )
        )

        await session.commit()
        print("\nSeed complete!")


async def main():
    print("Seeding database...")
    engine = build_engine(settings.database_url)
    try:
        await seed(build_session_factory(engine))
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
