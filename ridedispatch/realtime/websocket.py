"""
WebSocket endpoint: ``GET /ws``.

Each socket gets a hub ``Connection`` and two tasks.  The writer drains the
connection's queue onto the socket; the reader handles inbound envelopes:

* ``ping``            -> ``pong``
* ``location_update`` -> driver presence update (drivers only)
* anything else       -> ``error``

When either task ends the other is cancelled and the connection is
unregistered.
"""

from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from ridedispatch.api.dependencies import parse_actor
from ridedispatch.domain.entities import Actor
from ridedispatch.domain.errors import DispatchError
from ridedispatch.realtime.hub import Connection, envelope
from ridedispatch.services.presence import PresenceTracker

logger = logging.getLogger(__name__)

router = APIRouter()


async def _writer(websocket: WebSocket, conn: Connection) -> None:
    while True:
        message = await conn.queue.get()
        await websocket.send_text(message)


def _error(conn: Connection, message: str) -> None:
    conn.offer(envelope("error", {"message": message}))


async def _handle_location(
    conn: Connection, actor: Actor, presence: PresenceTracker, data: object
) -> None:
    if not actor.is_driver:
        _error(conn, "Only drivers can send location updates")
        return
    try:
        lat = float(data["lat"])
        lng = float(data["lng"])
        heading = float(data.get("heading", 0.0))
    except (KeyError, TypeError, ValueError, AttributeError):
        _error(conn, "Invalid location payload")
        return
    try:
        await presence.set_location(actor.user_id, lat, lng, heading)
    except DispatchError as exc:
        _error(conn, exc.message)


async def _reader(
    websocket: WebSocket, conn: Connection, actor: Actor, presence: PresenceTracker
) -> None:
    while True:
        raw = await websocket.receive_text()
        try:
            msg = json.loads(raw)
            msg_type = msg["type"]
        except (ValueError, TypeError, KeyError):
            _error(conn, "Malformed message")
            continue

        if msg_type == "ping":
            conn.offer(envelope("pong", {}))
        elif msg_type == "location_update":
            await _handle_location(conn, actor, presence, msg.get("data"))
        else:
            _error(conn, f"Unknown message type: {msg_type}")


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    services = websocket.app.state.services
    try:
        actor = parse_actor(
            websocket.headers.get("x-user-id") or websocket.query_params.get("user_id"),
            websocket.headers.get("x-user-role") or websocket.query_params.get("role"),
        )
    except ValueError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    conn = services.hub.connect(actor.user_id, actor.role)
    reader = asyncio.create_task(_reader(websocket, conn, actor, services.presence))
    writer = asyncio.create_task(_writer(websocket, conn))
    try:
        done, pending = await asyncio.wait(
            {reader, writer}, return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning("WebSocket task for %r ended: %s", conn, exc)
    finally:
        reader.cancel()
        writer.cancel()
        services.hub.unregister(conn)
