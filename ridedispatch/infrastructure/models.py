"""
SQLAlchemy ORM models.

Tables
------
* ``users``            -- clients and drivers (identity is issued elsewhere)
* ``ride_requests``    -- one trip from request to terminal state
* ``driver_presence``  -- latest location / availability, one row per driver
* ``trip_completions`` -- actuals and ratings of a completed ride

Indexes
-------
* **B-Tree** on ``ride_requests.status``, ``client_id``, ``driver_id`` for the
  ownership and active-ride look-ups done on every transition.
* ``driver_presence(is_online, is_available)`` for the dispatch fan-out scan.
* Unique ``trip_completions.ride_id`` backs the one-completion-per-ride rule.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)

from .database import Base
from ridedispatch.domain.enums import RideStatus, Role


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserModel(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(120), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    phone = Column(String(32), nullable=True)
    role = Column(Enum(Role, name="user_role"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class RideRequestModel(Base):
    __tablename__ = "ride_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    client_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    driver_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    pickup_address = Column(String(255), nullable=False, default="")
    dest_lat = Column(Float, nullable=False)
    dest_lng = Column(Float, nullable=False)
    dest_address = Column(String(255), nullable=False, default="")

    status = Column(
        Enum(RideStatus, name="ride_status"),
        default=RideStatus.PENDING,
        nullable=False,
    )
    price = Column(Float, nullable=False, default=0.0)
    distance_km = Column(Float, nullable=False, default=0.0)
    duration_min = Column(Integer, nullable=False, default=0)
    cancelled_by = Column(Enum(Role, name="user_role"), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("idx_ride_requests_status", "status"),
        Index("idx_ride_requests_client", "client_id"),
        Index("idx_ride_requests_driver", "driver_id"),
    )


class DriverPresenceModel(Base):
    __tablename__ = "driver_presence"

    id = Column(Integer, primary_key=True, autoincrement=True)
    driver_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    heading = Column(Float, nullable=False, default=0.0)
    is_online = Column(Boolean, nullable=False, default=False)
    is_available = Column(Boolean, nullable=False, default=False)
    last_seen = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_driver_presence_flags", "is_online", "is_available"),
    )


class TripCompletionModel(Base):
    __tablename__ = "trip_completions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ride_id = Column(
        Integer, ForeignKey("ride_requests.id"), unique=True, nullable=False
    )
    driver_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    client_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    actual_fare = Column(Float, nullable=False)
    actual_distance = Column(Float, nullable=False)
    actual_duration = Column(Integer, nullable=False)  # minutes
    driver_notes = Column(Text, nullable=True)

    # Filled in post-hoc by either party
    client_rating = Column(Float, nullable=True)  # client rates the driver
    client_notes = Column(Text, nullable=True)
    driver_rating = Column(Float, nullable=True)  # driver rates the client

    created_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("idx_trip_completions_driver", "driver_id"),
        Index("idx_trip_completions_client", "client_id"),
    )
