"""
Ride lifecycle state machine.

    pending -> accepted -> arrived -> started -> completed
       |          |           |          |
       +----------+-----------+----------+----> cancelled

Each named transition carries the set of source states it may fire from,
the target state, and a guard deciding whether the actor may fire it.
``plan_transition`` is pure: it inspects a ride and an actor and returns the
target status, or raises ``Unauthorized`` / ``InvalidState``.  Applying the
result atomically is the dispatch service's job.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from .entities import Actor
from .enums import RideStatus
from .errors import InvalidState, Unauthorized


class RideState(Protocol):
    status: RideStatus
    client_id: int
    driver_id: Optional[int]


class Transition(str, enum.Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    ARRIVE = "arrive"
    START = "start"
    COMPLETE = "complete"
    CANCEL = "cancel"


# ── Guards ────────────────────────────────────────────────────────────


def any_driver(actor: Actor, ride: RideState) -> bool:
    return actor.is_driver


def bound_driver(actor: Actor, ride: RideState) -> bool:
    return actor.is_driver and ride.driver_id == actor.user_id


def owner_or_bound_driver(actor: Actor, ride: RideState) -> bool:
    if actor.is_client:
        return ride.client_id == actor.user_id
    return bound_driver(actor, ride)


@dataclass(frozen=True)
class TransitionRule:
    sources: frozenset[RideStatus]
    target: RideStatus
    guard: Callable[[Actor, RideState], bool]
    invalid_message: str


TRANSITION_RULES: dict[Transition, TransitionRule] = {
    Transition.ACCEPT: TransitionRule(
        sources=frozenset({RideStatus.PENDING}),
        target=RideStatus.ACCEPTED,
        guard=any_driver,
        invalid_message="Ride is no longer available",
    ),
    Transition.REJECT: TransitionRule(
        sources=frozenset({RideStatus.PENDING}),
        target=RideStatus.CANCELLED,
        guard=any_driver,
        invalid_message="Ride is no longer available",
    ),
    Transition.ARRIVE: TransitionRule(
        sources=frozenset({RideStatus.ACCEPTED}),
        target=RideStatus.ARRIVED,
        guard=bound_driver,
        invalid_message="Ride must be accepted before marking arrival",
    ),
    Transition.START: TransitionRule(
        sources=frozenset({RideStatus.ACCEPTED, RideStatus.ARRIVED}),
        target=RideStatus.STARTED,
        guard=bound_driver,
        invalid_message="Ride must be accepted before starting",
    ),
    Transition.COMPLETE: TransitionRule(
        sources=frozenset({RideStatus.STARTED}),
        target=RideStatus.COMPLETED,
        guard=bound_driver,
        invalid_message="Ride must be started before completion",
    ),
    Transition.CANCEL: TransitionRule(
        sources=frozenset(
            {
                RideStatus.PENDING,
                RideStatus.ACCEPTED,
                RideStatus.ARRIVED,
                RideStatus.STARTED,
            }
        ),
        target=RideStatus.CANCELLED,
        guard=owner_or_bound_driver,
        invalid_message="Ride cannot be cancelled",
    ),
}

# PATCH /status targets mapped onto the named transition that reaches them.
# ``completed`` is absent: completion needs trip actuals.
STATUS_TARGETS: dict[RideStatus, Transition] = {
    RideStatus.ACCEPTED: Transition.ACCEPT,
    RideStatus.ARRIVED: Transition.ARRIVE,
    RideStatus.STARTED: Transition.START,
    RideStatus.CANCELLED: Transition.CANCEL,
}


def plan_transition(
    transition: Transition, actor: Actor, ride: RideState
) -> RideStatus:
    """Return the target status for *transition*, or raise.

    Authorization is checked before the source state so that a stranger
    learns nothing about a ride's progress.
    """
    rule = TRANSITION_RULES[transition]
    if not rule.guard(actor, ride):
        raise Unauthorized(f"Not allowed to {transition.value} this ride")
    if RideStatus(ride.status) not in rule.sources:
        raise InvalidState(rule.invalid_message)
    return rule.target


def transition_for_status(status: RideStatus) -> Transition:
    """Resolve a requested target status to its guarded transition."""
    try:
        return STATUS_TARGETS[status]
    except KeyError:
        raise InvalidState(
            f"Status '{status.value}' cannot be set directly"
        ) from None
