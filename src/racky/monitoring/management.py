"""
Thin async client for the RabbitMQ HTTP management API.
"""
from __future__ import annotations

import asyncio
from typing import Any, Dict, List
from urllib.parse import quote

import aiohttp
from loguru import logger

from racky.exceptions import ManagementAPIError


class ManagementApiClient:
    """Every failure surfaces as ``ManagementAPIError``; callers decide how to degrade."""

    def __init__(self, base_url: str, user: str, password: str, vhost: str, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.vhost = vhost
        self._headers = {"Authorization": aiohttp.BasicAuth(user, password).encode()} if user else {}
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    @property
    def _vhost(self) -> str:
        return quote(self.vhost, safe="")

    async def get_json(self, path: str) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with aiohttp.ClientSession(timeout=self._timeout, headers=self._headers) as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        raise ManagementAPIError(
                            f"Management API returned HTTP {response.status} for {path}",
                            path=path,
                            status=response.status,
                        )
                    return await response.json()
        except ManagementAPIError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.debug(f"Management API call {path} failed: {e!r}")
            raise ManagementAPIError(
                f"Management API unreachable for {path}: {e!r}", path=path
            ) from e

    async def overview(self) -> Dict[str, Any]:
        return await self.get_json("/api/overview")

    async def nodes(self) -> List[Dict[str, Any]]:
        return await self.get_json("/api/nodes")

    async def queues(self) -> List[Dict[str, Any]]:
        return await self.get_json(f"/api/queues/{self._vhost}")

    async def queue(self, queue_name: str) -> Dict[str, Any]:
        return await self.get_json(f"/api/queues/{self._vhost}/{quote(queue_name, safe='')}")

    async def connections(self) -> List[Dict[str, Any]]:
        return await self.get_json("/api/connections")

    async def channels(self) -> List[Dict[str, Any]]:
        return await self.get_json("/api/channels")
