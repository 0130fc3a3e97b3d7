"""
Retrieves raw payload bytes for a resource descriptor, walking its ordered list
of sources (local bundle first, then remote mirrors) until one succeeds.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from urllib.parse import urlsplit
from urllib.request import url2pathname

import aiofiles
import aiohttp

from sfloader.exceptions import AllSourcesExhausted
from sfloader.models.descriptor import ResourceDescriptor
from sfloader.utils.formatting import format_size, short_name
from sfloader.utils.source_health import SourceHealth, SourceSkipped

log = logging.getLogger(__name__)

DEFAULT_LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1")


class MalformedResponseError(ValueError):
    """Raised when a source answers with a body that cannot be a payload."""


def is_source_outage(error: Exception) -> bool:
    """
    True when `error` means the source itself is down: a timeout, a failed
    connection or a 5xx answer. A 4xx status, a missing local file or a
    malformed body only concerns the requested resource.
    """
    if isinstance(error, aiohttp.ClientResponseError):
        return error.status >= 500
    return isinstance(error, (asyncio.TimeoutError, aiohttp.ClientConnectionError))


@dataclass(frozen=True)
class FetchResult:
    """Bytes retrieved for one resource, with the source that served them."""

    key: str
    data: bytes = field(repr=False)
    url: str
    source_base: str
    elapsed: float

    @property
    def size(self) -> int:
        return len(self.data)


class MirrorFetcher:
    """
    Fetches resource payloads from ordered sources with per-source timeouts.

    A failing source (timeout, non-2xx status, network error or malformed body)
    only moves the fetch on to the next source; the resource fails as a whole
    when every source has failed.
    """

    def __init__(
        self,
        local_timeout: float = 5.0,
        remote_timeout: float = 45.0,
        local_hosts: tuple[str, ...] = DEFAULT_LOCAL_HOSTS,
        max_connections: int = 8,
        skip_threshold: int = 5,
        skip_cooldown: float = 60,
        session: aiohttp.ClientSession | None = None,
    ):
        """
        Args:
            local_timeout: Seconds allowed for a local or bundled source.
            remote_timeout: Seconds allowed for a remote mirror (payloads can be
                several megabytes).
            local_hosts: Host names treated as local sources.
            max_connections: Per-host connection limit of the owned session.
            skip_threshold: Consecutive failures before a source is skipped.
            skip_cooldown: Seconds a skipped source waits before a new try.
            session: Optional externally managed session (not closed by us).
        """
        self.local_timeout = local_timeout
        self.remote_timeout = remote_timeout
        self.local_hosts = set(local_hosts)
        self.max_connections = max_connections

        self._session = session
        self._owns_session = session is None
        self._session_lock = asyncio.Lock()
        self.health = SourceHealth(skip_threshold, skip_cooldown)
        # Diagnostics, keyed by resource key and never by URL
        self.last_source: dict[str, str] = {}

    async def _get_session(self) -> aiohttp.ClientSession:
        """Gets or creates the aiohttp ClientSession used for remote sources."""
        async with self._session_lock:
            if self._session and not self._session.closed:
                return self._session

            connector = aiohttp.TCPConnector(
                limit=self.max_connections * 2,
                limit_per_host=self.max_connections,
                ttl_dns_cache=600,  # 10 minutes
                keepalive_timeout=30,
                enable_cleanup_closed=True,
            )
            self._session = aiohttp.ClientSession(
                connector=connector,
                headers={"Accept-Encoding": "gzip, deflate"},
            )
            self._owns_session = True
            log.debug(
                f"Created mirror session with limit_per_host={self.max_connections}"
            )
        return self._session

    async def close(self) -> None:
        """Closes the owned connection pool."""
        async with self._session_lock:
            if self._owns_session and self._session and not self._session.closed:
                await self._session.close()
                log.debug("Mirror fetcher connection pool closed.")
            self._session = None

    def is_local(self, url: str) -> bool:
        parts = urlsplit(url)
        return parts.scheme == "file" or (parts.hostname or "") in self.local_hosts

    def timeout_for(self, url: str) -> float:
        return self.local_timeout if self.is_local(url) else self.remote_timeout

    async def fetch(self, descriptor: ResourceDescriptor) -> FetchResult:
        """
        Returns the first successful payload among the descriptor's sources.

        Raises:
            AllSourcesExhausted: If every source failed.
        """
        errors: list[tuple[str, str]] = []
        for base, url in descriptor.urls():
            timeout = self.timeout_for(url)
            start = time.monotonic()
            try:
                async with self.health.guard(base, is_source_outage):
                    data = await self._fetch_one(url, timeout)
            except SourceSkipped as e:
                log.debug(f"Skipping {base} for '{descriptor.key}': {e}")
                errors.append((url, "source skipped"))
                continue
            except asyncio.TimeoutError:
                log.debug(
                    f"Source timed out after {timeout:.0f}s for "
                    f"'{descriptor.key}': {url}"
                )
                errors.append((url, f"timeout after {timeout:.0f}s"))
                continue
            except (aiohttp.ClientError, OSError, MalformedResponseError) as e:
                log.debug(f"Source failed for '{descriptor.key}': {url} ({e})")
                errors.append((url, str(e) or type(e).__name__))
                continue

            elapsed = time.monotonic() - start
            self.last_source[descriptor.key] = url
            log.debug(
                f"Fetched {short_name(url)} ({format_size(len(data))}) from {base} "
                f"in {elapsed:.2f}s"
            )
            return FetchResult(
                key=descriptor.key,
                data=data,
                url=url,
                source_base=base,
                elapsed=elapsed,
            )

        log.warning(
            f"[yellow]All {len(errors)} sources failed for "
            f"'{descriptor.key}'.[/yellow]"
        )
        raise AllSourcesExhausted(descriptor.key, errors)

    async def _fetch_one(self, url: str, timeout: float) -> bytes:
        if urlsplit(url).scheme == "file":
            return await asyncio.wait_for(self._read_local_file(url), timeout)

        session = await self._get_session()
        client_timeout = aiohttp.ClientTimeout(total=timeout)
        async with session.get(
            url, timeout=client_timeout, allow_redirects=True
        ) as response:
            response.raise_for_status()
            data = await response.read()
            expected = response.headers.get("Content-Length")
            encoded = response.headers.get("Content-Encoding", "identity")

        if not data:
            raise MalformedResponseError("empty response body")
        if expected and encoded == "identity" and len(data) < int(expected):
            raise MalformedResponseError(
                f"truncated body ({len(data)} of {expected} bytes)"
            )
        return data

    @staticmethod
    async def _read_local_file(url: str) -> bytes:
        path = url2pathname(urlsplit(url).path)
        async with aiofiles.open(path, "rb") as f:
            data = await f.read()
        if not data:
            raise MalformedResponseError("empty local file")
        return data
