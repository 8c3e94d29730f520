"""
Connection registry and fan-out.

The hub owns every live connection for its whole lifetime.  Each connection
has a bounded outbound queue drained by its own writer task; delivery only
ever does ``put_nowait``, so a slow or stuck consumer loses messages instead
of stalling the sender or the other recipients.

The connection set is guarded by the hub's own lock.  Recipients are
snapshotted under the lock and delivered to outside it, and no ride or driver
lock is ever taken while it is held.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import threading
from typing import Any, Optional

from ridedispatch.domain.enums import Role

logger = logging.getLogger(__name__)

_ids = itertools.count(1)


def envelope(msg_type: str, data: dict[str, Any]) -> str:
    """Serialize one ``{type, data}`` event."""
    return json.dumps({"type": msg_type, "data": data}, default=str)


class Connection:
    """One live channel to an authenticated user."""

    def __init__(self, user_id: int, role: Role, queue_size: int = 256):
        self.id = next(_ids)
        self.user_id = user_id
        self.role = role
        self.queue: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_size)
        self.closed = False
        self.dropped = 0

    def offer(self, message: str) -> bool:
        """Enqueue without blocking.  False if closed or the queue is full."""
        if self.closed:
            return False
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True

    def close(self) -> None:
        self.closed = True
        while not self.queue.empty():
            self.queue.get_nowait()

    def __repr__(self) -> str:
        return f"<Connection #{self.id} user={self.user_id} role={self.role.value}>"


class ConnectionHub:
    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self._by_user: dict[int, set[Connection]] = {}
        self._lock = threading.Lock()

    def connect(self, user_id: int, role: Role) -> Connection:
        """Create and register a connection for a freshly upgraded socket."""
        conn = Connection(user_id, role, queue_size=self.queue_size)
        self.register(conn)
        return conn

    def register(self, conn: Connection) -> None:
        with self._lock:
            self._by_user.setdefault(conn.user_id, set()).add(conn)
        logger.info("Client %d (%s) connected", conn.user_id, conn.role.value)

    def unregister(self, conn: Connection) -> None:
        """Remove and close *conn*.  Removing it twice is a no-op."""
        with self._lock:
            conns = self._by_user.get(conn.user_id)
            if conns is None or conn not in conns:
                return
            conns.discard(conn)
            if not conns:
                del self._by_user[conn.user_id]
        conn.close()
        logger.info("Client %d (%s) disconnected", conn.user_id, conn.role.value)

    # ── Delivery ──────────────────────────────────────────────────────

    def send_to_user(self, user_id: int, message: str) -> int:
        with self._lock:
            targets = list(self._by_user.get(user_id, ()))
        return self._deliver(targets, message)

    def send_to_role(self, role: Role, message: str) -> int:
        with self._lock:
            targets = [
                c for conns in self._by_user.values() for c in conns if c.role is role
            ]
        return self._deliver(targets, message)

    def broadcast_all(self, message: str) -> int:
        with self._lock:
            targets = [c for conns in self._by_user.values() for c in conns]
        return self._deliver(targets, message)

    def _deliver(self, targets: list[Connection], message: str) -> int:
        delivered = 0
        for conn in targets:
            if conn.offer(message):
                delivered += 1
            elif not conn.closed:
                logger.warning("Dropped message for %r (queue full)", conn)
        return delivered

    # ── Introspection ─────────────────────────────────────────────────

    def connection_count(self, user_id: Optional[int] = None) -> int:
        with self._lock:
            if user_id is not None:
                return len(self._by_user.get(user_id, ()))
            return sum(len(conns) for conns in self._by_user.values())

    def close_all(self) -> None:
        with self._lock:
            conns = [c for group in self._by_user.values() for c in group]
            self._by_user.clear()
        for conn in conns:
            conn.close()
