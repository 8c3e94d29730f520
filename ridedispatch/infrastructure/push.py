"""
Outbound push-notification senders.

Senders are fire-and-forget collaborators: ``send`` reports success as a
bool and never raises for delivery problems.  The webhook sender hands the
payload to an external push gateway over HTTP; the logging sender is used
when no gateway is configured.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)


class PushSender(Protocol):
    async def send(self, target: str, payload: dict[str, Any]) -> bool: ...

    async def aclose(self) -> None: ...


class LoggingPushSender:
    async def send(self, target: str, payload: dict[str, Any]) -> bool:
        logger.info("Push to %s: %s", target, payload.get("title", ""))
        return True

    async def aclose(self) -> None:
        return None


class WebhookPushSender:
    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def send(self, target: str, payload: dict[str, Any]) -> bool:
        try:
            resp = await self._client.post(
                self.url, json={"target": target, **payload}
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Push to %s failed: %s", target, exc)
            return False
        return True

    async def aclose(self) -> None:
        await self._client.aclose()
