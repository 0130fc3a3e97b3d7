"""
Client for the cache proxy's control endpoint.
"""

import asyncio
import logging
from typing import Any

import aiohttp

from sfloader.exceptions import ControlChannelError

from .server import CONTROL_PATH

log = logging.getLogger(__name__)


class ControlChannel:
    """Sends `{type, data}` control messages to a running cache proxy."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        session: aiohttp.ClientSession | None = None,
    ):
        self.endpoint = base_url.rstrip("/") + CONTROL_PATH
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "ControlChannel":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def send(self, message_type: str, data: dict | None = None) -> dict[str, Any]:
        """
        Sends one message and returns the proxy's response body.

        Raises:
            ControlChannelError: If the proxy is unreachable or reports a failure.
        """
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

        payload = {"type": message_type, "data": data or {}}
        log.debug(f"Control message {message_type} -> {self.endpoint}")
        try:
            async with self._session.post(
                self.endpoint,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                body = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise ControlChannelError(
                f"Cache proxy at {self.endpoint} is not reachable: {e}"
            ) from e

        if not isinstance(body, dict) or not body.get("success"):
            error = body.get("error") if isinstance(body, dict) else None
            raise ControlChannelError(error or f"{message_type} was refused.")
        return body

    async def get_version(self) -> dict[str, Any]:
        return await self.send("GET_VERSION")

    async def get_cache_stats(self) -> dict[str, Any]:
        return await self.send("GET_CACHE_STATS")

    async def cleanup_cache(self, required_space: int | None = None) -> dict[str, Any]:
        data = {} if required_space is None else {"requiredSpace": required_space}
        return await self.send("CLEANUP_CACHE", data)

    async def protect(self, identifier: str) -> dict[str, Any]:
        return await self.send("PROTECT_FAVORITE", {"identifier": identifier})

    async def unprotect(self, identifier: str) -> dict[str, Any]:
        return await self.send("UNPROTECT_FAVORITE", {"identifier": identifier})

    async def skip_waiting(self) -> dict[str, Any]:
        return await self.send("SKIP_WAITING")
