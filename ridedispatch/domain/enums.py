"""Domain enumerations and status groupings."""

import enum


class RideStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    ARRIVED = "arrived"
    STARTED = "started"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Role(str, enum.Enum):
    CLIENT = "client"
    DRIVER = "driver"


# A driver reference is present exactly in these states
DRIVER_BOUND_STATUSES = frozenset(
    {
        RideStatus.ACCEPTED,
        RideStatus.ARRIVED,
        RideStatus.STARTED,
        RideStatus.COMPLETED,
    }
)

# The driver is occupied by the ride in these states
ACTIVE_STATUSES = frozenset(
    {RideStatus.ACCEPTED, RideStatus.ARRIVED, RideStatus.STARTED}
)
