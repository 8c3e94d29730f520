"""FastAPI dependency injection helpers."""

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from ridedispatch.bootstrap import Services
from ridedispatch.domain.entities import Actor
from ridedispatch.domain.enums import Role
from ridedispatch.services.dispatch import DispatchService
from ridedispatch.services.presence import PresenceTracker


def parse_actor(user_id: Optional[str], role: Optional[str]) -> Actor:
    """Build an ``Actor`` from gateway-supplied identity values.

    Raises ``ValueError`` if either value is missing or malformed.
    """
    if not user_id or not role:
        raise ValueError("Missing identity")
    try:
        uid = int(user_id)
    except ValueError:
        raise ValueError("Malformed user id") from None
    if uid <= 0:
        raise ValueError("Malformed user id")
    return Actor(user_id=uid, role=Role(role.lower()))


async def get_actor(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Actor:
    try:
        return parse_actor(x_user_id, x_user_role)
    except ValueError:
        raise HTTPException(status_code=401, detail="Authentication required")


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_dispatch(services: Services = Depends(get_services)) -> DispatchService:
    return services.dispatch


def get_presence(services: Services = Depends(get_services)) -> PresenceTracker:
    return services.presence
