"""
The cache proxy: serves resource requests from versioned local stores, fetches
misses from the upstream origin and keeps the soundfont store within its budget.

Request handling depends on the resource category:

- critical: cache-first, pre-cached at install, never evicted.
- soundfont: cache-first with access tracking, one upstream fetch per URL at a
  time, and the default piano as a fallback when the network fails.
- generic: network-first, the stored copy is only used while offline.
"""

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import Any

import aiohttp

from sfloader import __version__
from sfloader.exceptions import (
    ConfigurationError,
    QuotaExceeded,
    SfLoaderError,
    UpstreamUnavailable,
)
from sfloader.models.config import Budget, LoaderConfig
from sfloader.models.entry import CacheCategory
from sfloader.utils.formatting import format_size, short_name

from .eviction import EvictionEngine, EvictionReport, needs_cleanup
from .pins import PinSet
from .store import ProxyStore, store_name, version_of

log = logging.getLogger(__name__)

SOUNDFONT_SEGMENT = "/soundfonts/"
SOUNDFONT_EXTENSIONS = (".json", ".js")
NEAR_FULL_FRACTION = 0.95

STORE_ERRORS = (sqlite3.Error, OSError)


def _consume_exception(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


class ProxyState(Enum):
    INSTALLING = "installing"
    WAITING = "waiting"
    ACTIVE = "active"


@dataclass
class ProxyResponse:
    """What the HTTP layer sends back for one proxied request."""

    status: int
    body: bytes
    content_type: str = "application/octet-stream"
    cache_status: str = "MISS"


class CacheProxy:
    """Categorized caching in front of an upstream origin."""

    def __init__(
        self,
        store: ProxyStore,
        upstream_url: str,
        budget: Budget,
        pins: PinSet,
        essential_soundfonts: list[str],
        critical_assets: list[str],
        version: str = __version__,
        timeout: float = 45.0,
        session: aiohttp.ClientSession | None = None,
    ):
        if not upstream_url:
            raise ConfigurationError("The cache proxy needs an upstream_url.")
        self.store = store
        self.upstream_url = upstream_url.rstrip("/")
        self.budget = budget
        self.pins = pins
        self.essential_soundfonts = list(essential_soundfonts)
        self.critical_assets = list(critical_assets)
        self.version = version
        self.timeout = timeout
        self.eviction = EvictionEngine(store, budget, self.essential_soundfonts)
        self.state = ProxyState.INSTALLING

        self._session = session
        self._owns_session = session is None
        self._downloads: dict[str, asyncio.Future] = {}
        self.usage: dict[str, int] = {
            "totalSize": 0,
            "soundfontCount": 0,
            "soundfontSize": 0,
            "criticalSize": 0,
        }

    @classmethod
    def from_config(cls, config: LoaderConfig) -> "CacheProxy":
        proxy_dir = config.cache_path / "proxy"
        return cls(
            store=ProxyStore(proxy_dir),
            upstream_url=config.upstream_url,
            budget=config.budget,
            pins=PinSet(proxy_dir / "pins.json"),
            essential_soundfonts=config.essential_soundfonts,
            critical_assets=config.critical_assets,
            timeout=config.remote_timeout,
        )

    @property
    def resource_store(self) -> str:
        return store_name(CacheCategory.GENERIC, self.version)

    @property
    def soundfont_store(self) -> str:
        return store_name(CacheCategory.SOUNDFONT, self.version)

    @property
    def critical_store(self) -> str:
        return store_name(CacheCategory.CRITICAL, self.version)

    @property
    def cache_names(self) -> dict[str, str]:
        return {
            "resources": self.resource_store,
            "soundfonts": self.soundfont_store,
            "critical": self.critical_store,
        }

    def is_critical(self, path: str) -> bool:
        for asset in self.critical_assets:
            if asset == "/":
                if path in ("/", "/index.html"):
                    return True
            elif path == asset or path.endswith(asset):
                return True
        return False

    def categorize(self, path: str) -> CacheCategory:
        plain = path.split("?", 1)[0]
        if self.is_critical(plain):
            return CacheCategory.CRITICAL
        if SOUNDFONT_SEGMENT in plain and plain.endswith(SOUNDFONT_EXTENSIONS):
            return CacheCategory.SOUNDFONT
        return CacheCategory.GENERIC

    # --- Upstream -----------------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        for future in list(self._downloads.values()):
            future.cancel()
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _fetch_upstream(self, path: str) -> tuple[int, bytes, str]:
        """
        Returns (status, body, content_type) from the origin.

        Raises:
            UpstreamUnavailable: If the origin cannot be reached.
        """
        session = await self._get_session()
        url = self.upstream_url + path
        try:
            async with session.get(url) as response:
                body = await response.read()
                content_type = response.headers.get(
                    "Content-Type", "application/octet-stream"
                )
                return response.status, body, content_type
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamUnavailable(f"Upstream request for {path} failed: {e}") from e

    # --- Lifecycle ----------------------------------------------------------

    async def refresh_usage(self) -> dict[str, int]:
        self.usage = await self.store.usage(self.soundfont_store, self.critical_store)
        return self.usage

    async def install(self) -> None:
        """Pre-caches the critical assets and the essential soundfonts."""
        self.state = ProxyState.INSTALLING
        log.info(f"[cyan]Installing cache proxy v{self.version}...[/cyan]")

        usage = await self.refresh_usage()
        if usage["totalSize"] > self.budget.total_limit * NEAR_FULL_FRACTION:
            log.warning("[yellow]⚠ Cache storage nearly full, cleaning up...[/yellow]")
            await self.cleanup(required_space=self.budget.min_free_space)

        for path in self.critical_assets:
            try:
                status, body, content_type = await self._fetch_upstream(path)
            except UpstreamUnavailable as e:
                log.warning(f"[yellow]⚠ Could not pre-cache {path}: {e}[/yellow]")
                continue
            if status == 200:
                await self._store_critical(path, body, content_type)
            else:
                log.warning(f"[yellow]⚠ Could not pre-cache {path}: HTTP {status}[/yellow]")

        for path in self.essential_soundfonts:
            if await self.store.get(self.soundfont_store, path):
                continue
            try:
                status, body, content_type = await self._fetch_upstream(path)
                if status == 200 and body:
                    await self._store_soundfont(path, body, content_type)
            except (UpstreamUnavailable, QuotaExceeded) as e:
                log.warning(f"[yellow]⚠ Could not pre-cache {path}: {e}[/yellow]")

        self.state = ProxyState.WAITING
        log.info("[green]✓ Cache proxy installed.[/green]")

    async def activate(self) -> dict[str, Any]:
        """
        Migrates soundfonts out of stores left by older versions, deletes every
        obsolete store and trims the cache if it is over its trigger.
        """
        names = await self.store.store_names()
        valid = set(self.cache_names.values())
        previous = next(
            (
                name
                for name in names
                if version_of(name, CacheCategory.GENERIC) not in (None, self.version)
            ),
            None,
        )
        previous_version = (
            version_of(previous, CacheCategory.GENERIC) if previous else None
        )

        migrated = 0
        for name in names:
            if name in valid:
                continue
            if version_of(name, CacheCategory.SOUNDFONT) is not None:
                count, size = await self.store.migrate(name, self.soundfont_store)
                migrated += count
                log.info(
                    f"Migrated {count} soundfonts ({format_size(size)}) from {name}."
                )
            removed = await self.store.delete_store(name)
            log.debug(f"Removed obsolete store {name} ({removed} entries).")

        await self.refresh_usage()
        if needs_cleanup(self.usage, self.budget):
            log.info("[yellow]Cache above its limits, cleaning up...[/yellow]")
            await self.cleanup()

        self.state = ProxyState.ACTIVE
        log.info(f"[green]✓ Cache proxy v{self.version} active.[/green]")
        return {"previousVersion": previous_version, "migrated": migrated}

    async def skip_waiting(self) -> ProxyState:
        if self.state is not ProxyState.ACTIVE:
            await self.activate()
        return self.state

    # --- Request handling ---------------------------------------------------

    async def handle_fetch(self, path: str) -> ProxyResponse:
        """
        Serves one GET request for a path (including its query string).

        Raises:
            UpstreamUnavailable: If the origin is unreachable and nothing cached
                can stand in for the response.
        """
        category = self.categorize(path)
        if category is CacheCategory.CRITICAL:
            return await self._serve_critical(path)
        if category is CacheCategory.SOUNDFONT:
            return await self._serve_soundfont(path)
        return await self._serve_generic(path)

    async def _serve_critical(self, path: str) -> ProxyResponse:
        cached = await self.store.get(self.critical_store, path)
        if cached is not None:
            return ProxyResponse(200, cached.data, cached.content_type, "HIT")

        log.debug(f"Critical asset {path} missing, fetching it again.")
        status, body, content_type = await self._fetch_upstream(path)
        if status == 200:
            await self._store_critical(path, body, content_type)
        return ProxyResponse(status, body, content_type)

    async def _store_critical(self, path: str, body: bytes, content_type: str) -> None:
        usage = await self.refresh_usage()
        if usage["criticalSize"] + len(body) > self.budget.critical_limit:
            log.warning(
                f"[yellow]Critical store is full, not caching {path}.[/yellow]"
            )
            return
        await self.store.put(self.critical_store, path, body, content_type)

    async def _serve_soundfont(self, path: str) -> ProxyResponse:
        cached = await self.store.get(self.soundfont_store, path)
        if cached is not None:
            await self.store.touch(self.soundfont_store, path)
            log.debug(f"Soundfont from cache: {short_name(path)}")
            return ProxyResponse(200, cached.data, cached.content_type, "HIT")

        future = self._downloads.get(path)
        if future is None:
            future = asyncio.ensure_future(self._download_soundfont(path))
            future.add_done_callback(_consume_exception)
            self._downloads[path] = future
        else:
            log.debug(f"Download already in progress: {short_name(path)}")
        return await asyncio.shield(future)

    async def _download_soundfont(self, path: str) -> ProxyResponse:
        try:
            # A download that finished after our cache miss already stored it.
            cached = await self.store.get(self.soundfont_store, path)
            if cached is not None:
                await self.store.touch(self.soundfont_store, path)
                return ProxyResponse(200, cached.data, cached.content_type, "HIT")

            try:
                status, body, content_type = await self._fetch_upstream(path)
            except UpstreamUnavailable:
                fallback = await self._fallback_soundfont()
                if fallback is None:
                    raise
                log.warning(
                    f"[yellow]⚠ Network failed for {short_name(path)}, serving the "
                    "default piano instead.[/yellow]"
                )
                return fallback

            cache_status = "MISS"
            if status == 200 and body:
                try:
                    await self._store_soundfont(path, body, content_type)
                except QuotaExceeded as e:
                    log.warning(f"[yellow]⚠ {e}[/yellow]")
                    cache_status = "BYPASS"
                except STORE_ERRORS as e:
                    log.warning(f"Could not cache {short_name(path)}: {e}")
                    cache_status = "BYPASS"
            return ProxyResponse(status, body, content_type, cache_status)
        finally:
            self._downloads.pop(path, None)

    async def _fallback_soundfont(self) -> ProxyResponse | None:
        if not self.essential_soundfonts:
            return None
        cached = await self.store.get(self.soundfont_store, self.essential_soundfonts[0])
        if cached is None:
            return None
        return ProxyResponse(200, cached.data, cached.content_type, "FALLBACK")

    def _fits(self, size: int) -> bool:
        return (
            self.usage["totalSize"] + size <= self.budget.total_limit
            and self.usage["soundfontSize"] + size <= self.budget.soundfont_limit
        )

    async def _store_soundfont(self, path: str, body: bytes, content_type: str) -> None:
        """
        Writes a soundfont, evicting first when needed and afterwards when the
        store crossed its trigger.

        Raises:
            QuotaExceeded: If the entry cannot fit even after eviction.
        """
        size = len(body)
        usage = await self.refresh_usage()
        if (
            size > self.budget.large_entry_bytes
            and usage["totalSize"] > self.budget.total_limit * self.budget.large_entry_threshold
        ):
            log.info(f"Large soundfont ({format_size(size)}), cleaning up first...")
            await self.cleanup(required_space=size)

        if not self._fits(size):
            overflow = max(
                self.usage["totalSize"] + size - self.budget.total_limit,
                self.usage["soundfontSize"] + size - self.budget.soundfont_limit,
            )
            await self.cleanup(required_space=overflow)
            if not self._fits(size):
                raise QuotaExceeded(
                    f"{short_name(path)} ({format_size(size)}) does not fit into the "
                    "cache budget, serving it uncached."
                )

        await self.store.put(
            self.soundfont_store,
            path,
            body,
            content_type,
            protected=self.pins.matches(path),
        )
        log.info(f"[green]✓ Cached soundfont {short_name(path)}[/green] ({format_size(size)})")

        await self.refresh_usage()
        if needs_cleanup(self.usage, self.budget):
            await self.cleanup(exclude=(path,))

    async def _serve_generic(self, path: str) -> ProxyResponse:
        try:
            status, body, content_type = await self._fetch_upstream(path)
        except UpstreamUnavailable:
            cached = await self.store.find(path)
            if cached is None:
                raise
            log.debug(f"Serving {path} from cache (offline).")
            return ProxyResponse(200, cached.data, cached.content_type, "OFFLINE")

        if status == 200:
            try:
                await self.store.put(self.resource_store, path, body, content_type)
            except STORE_ERRORS as e:
                log.warning(f"Could not cache {path}: {e}")
        return ProxyResponse(status, body, content_type)

    # --- Budget and pins ----------------------------------------------------

    async def cleanup(
        self, required_space: int | None = None, exclude: tuple[str, ...] = ()
    ) -> EvictionReport:
        report = await self.eviction.cleanup(
            self.soundfont_store, self.critical_store, required_space, exclude=exclude
        )
        await self.refresh_usage()
        return report

    async def protect(self, identifier: str) -> int:
        """Pins an identifier and flags the matching soundfont entries."""
        self.pins.add(identifier)
        count = await self.store.set_protected(self.soundfont_store, identifier, True)
        log.info(f"[green]✓ Protected '{identifier}' ({count} entries).[/green]")
        return count

    async def unprotect(self, identifier: str) -> int:
        self.pins.remove(identifier)
        count = await self.store.set_protected(self.soundfont_store, identifier, False)
        # Entries still covered by another pin stay protected.
        for pin in self.pins:
            await self.store.set_protected(self.soundfont_store, pin, True)
        log.info(f"Unprotected '{identifier}' ({count} entries).")
        return count

    async def stats(self) -> dict[str, Any]:
        usage = await self.refresh_usage()
        return {
            "stats": {
                "totalSize": usage["totalSize"],
                "soundfontCount": usage["soundfontCount"],
                "criticalSize": usage["criticalSize"],
                "lastCleanup": self.eviction.last_cleanup,
            },
            "quota": {
                "totalLimit": self.budget.total_limit,
                "soundfontLimit": self.budget.soundfont_limit,
                "criticalLimit": self.budget.critical_limit,
                "maxSoundfonts": self.budget.max_soundfonts,
                "usage": round(usage["totalSize"] / self.budget.total_limit, 4),
            },
            "pins": list(self.pins),
        }

    # --- Control channel ----------------------------------------------------

    async def handle_message(self, message: Any) -> tuple[int, dict[str, Any]]:
        """
        Dispatches one control message.

        Returns:
            (http_status, response_body); the body always has a 'success' key.
        """
        if not isinstance(message, dict) or not isinstance(message.get("type"), str):
            return 400, {"success": False, "error": "Message must be {type, data}."}

        message_type = message["type"]
        data = message.get("data") or {}
        handlers = {
            "GET_VERSION": self._on_get_version,
            "GET_CACHE_STATS": self._on_get_cache_stats,
            "CLEANUP_CACHE": self._on_cleanup_cache,
            "PROTECT_FAVORITE": self._on_protect,
            "UNPROTECT_FAVORITE": self._on_unprotect,
            "SKIP_WAITING": self._on_skip_waiting,
        }
        handler = handlers.get(message_type)
        if handler is None:
            log.warning(f"Unrecognized control message: {message_type}")
            return 400, {
                "success": False,
                "error": f"Unknown message type '{message_type}'.",
            }
        if not isinstance(data, dict):
            return 400, {"success": False, "error": "'data' must be an object."}

        try:
            return await handler(data)
        except (SfLoaderError, *STORE_ERRORS) as e:
            log.error(f"[red]Control message {message_type} failed: {e}[/red]")
            return 500, {"success": False, "error": str(e)}

    async def _on_get_version(self, data: dict) -> tuple[int, dict]:
        return 200, {
            "success": True,
            "version": self.version,
            "cacheNames": self.cache_names,
            "state": self.state.value,
        }

    async def _on_get_cache_stats(self, data: dict) -> tuple[int, dict]:
        return 200, {"success": True, **(await self.stats())}

    async def _on_cleanup_cache(self, data: dict) -> tuple[int, dict]:
        required = data.get("requiredSpace")
        if required is not None and (
            isinstance(required, bool) or not isinstance(required, int) or required < 0
        ):
            return 400, {
                "success": False,
                "error": "'requiredSpace' must be a non-negative integer.",
            }
        report = await self.cleanup(required_space=required)
        return 200, {
            "success": True,
            **report.as_dict(),
            "message": f"{format_size(report.freed)} freed",
        }

    @staticmethod
    def _identifier(data: dict) -> str | None:
        identifier = data.get("identifier") or data.get("instrumentName")
        return identifier if isinstance(identifier, str) and identifier else None

    async def _on_protect(self, data: dict) -> tuple[int, dict]:
        identifier = self._identifier(data)
        if identifier is None:
            return 400, {"success": False, "error": "'identifier' is required."}
        count = await self.protect(identifier)
        return 200, {"success": True, "protected": count}

    async def _on_unprotect(self, data: dict) -> tuple[int, dict]:
        identifier = self._identifier(data)
        if identifier is None:
            return 400, {"success": False, "error": "'identifier' is required."}
        count = await self.unprotect(identifier)
        return 200, {"success": True, "unprotected": count}

    async def _on_skip_waiting(self, data: dict) -> tuple[int, dict]:
        state = await self.skip_waiting()
        return 200, {"success": True, "state": state.value}
