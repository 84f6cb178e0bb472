from __future__ import annotations

from typing import Any

import httpx


class MaintenanceClient:
    """Calls the API's machine-authenticated repair endpoints."""

    def __init__(
        self,
        base_url: str,
        module_id: str,
        api_key: str,
        *,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {
            "X-Module-Id": module_id,
            "X-API-Key": api_key,
        }
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def link_candidates(self, limit: int = 100) -> dict[str, Any]:
        return await self._run("link-candidates", limit)

    async def replay_events(self, limit: int = 100) -> dict[str, Any]:
        return await self._run("replay-events", limit)

    async def recount_metrics(self, limit: int = 100) -> dict[str, Any]:
        return await self._run("recount-metrics", limit)

    async def _run(self, task: str, limit: int) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            response = await client.post(
                f"{self.base_url}/maintenance/{task}",
                params={"limit": limit},
                headers=self.headers,
            )
            response.raise_for_status()
            return response.json()
