"""Media-server inventory probe.

Queries the path listing of the media server and reports which device ids
of a room currently have a live path (``{room}/{id}``). The probe is
best-effort: any failure yields an empty result with a warning.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


def match_room_paths(items: list[Any], room: str) -> list[str]:
    """Return the ids of *items* whose ``name`` is exactly ``room/id``."""
    ids: list[str] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        parts = str(item.get("name", "")).split("/")
        if len(parts) == 2 and parts[0] == room and parts[1] and parts[1] not in ids:
            ids.append(parts[1])
    return ids


class InventoryProbe:
    """Thin async wrapper around ``GET /v3/paths/list``.

    A single :class:`httpx.AsyncClient` is reused across probes. Call
    :meth:`aclose` when done.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> InventoryProbe:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()

    async def list_paths(self) -> list[dict[str, Any]]:
        """Fetch raw ``items``; ``[]`` when the server is unreachable or errors."""
        try:
            response = await self._client.get(self.url)
        except (httpx.ConnectError, httpx.TimeoutException, httpx.NetworkError) as exc:
            logger.warning("Inventory probe unreachable at %s: %s", self.url, exc)
            return []

        if response.status_code >= 400:
            logger.warning("Inventory probe returned HTTP %d", response.status_code)
            return []
        try:
            body = response.json()
        except ValueError:
            logger.warning("Inventory probe returned a non-JSON body")
            return []

        items = body.get("items") if isinstance(body, dict) else None
        return items if isinstance(items, list) else []

    async def probe(self, room: str) -> list[str]:
        """Return device ids with a live path in *room*."""
        ids = match_room_paths(await self.list_paths(), room)
        logger.info("Inventory probe found %d live path(s) in %s", len(ids), room)
        return ids
