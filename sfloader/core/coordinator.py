"""
The loader's entry point: turns resource descriptors into decoded payloads.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager

from sfloader.exceptions import (
    AllSourcesExhausted,
    DecodeError,
    RetriesExhausted,
    SfLoaderError,
)
from sfloader.fetch.mirror_fetcher import FetchResult, MirrorFetcher
from sfloader.models.descriptor import Payload, ResourceDescriptor
from sfloader.models.stats import CoordinatorStats
from sfloader.storage.tiered_cache import TieredCache
from sfloader.utils.formatting import format_size, short_name

from .decoder import decode_payload
from .task_registry import DownloadTaskRegistry

log = logging.getLogger(__name__)


class DownloadCoordinator:
    """
    Orchestrates cache lookups, request deduplication and bounded downloads.

    - At most `concurrency_limit` mirror fetches run at once; further fetches
      wait for a slot in FIFO order.
    - Concurrent requests for one key share a single fetch and its result.
    - A fetch that exhausts every source is retried as a whole after a delay.
    """

    def __init__(
        self,
        cache: TieredCache,
        fetcher: MirrorFetcher,
        concurrency_limit: int = 3,
        chain_retries: int = 2,
        retry_delay: float = 1.0,
        decoder: Callable[[str, bytes, str | None], Payload] = decode_payload,
        stats: CoordinatorStats | None = None,
    ):
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be at least 1")
        self.cache = cache
        self.fetcher = fetcher
        self.concurrency_limit = concurrency_limit
        self.chain_retries = chain_retries
        self.retry_delay = retry_delay
        self.stats = stats or CoordinatorStats()
        self._decode = decoder
        self._slots = asyncio.Semaphore(concurrency_limit)
        self._registry = DownloadTaskRegistry()
        self.active_fetches = 0
        self.peak_fetches = 0

    def in_flight(self) -> list[str]:
        """Keys currently being downloaded."""
        return self._registry.keys()

    async def acquire(self, descriptor: ResourceDescriptor) -> Payload:
        """
        Returns the payload for a descriptor, downloading it on a cache miss.

        Raises:
            AllSourcesExhausted: Every source failed and retries are disabled.
            RetriesExhausted: Every source failed on every retry round.
            DecodeError: The payload was retrieved but is malformed.
        """
        key = descriptor.key
        hit = await self.cache.locate(key)
        if hit is not None:
            payload, tier = hit
            self.stats.record_hit(from_memory=tier == self.cache.memory.name)
            log.debug(f"Cache hit for '{key}' ({tier}).")
            return payload

        # Re-check memory and join or start the task without awaiting in between:
        # a download that finished while we were reading the persistent tiers has
        # already populated the memory tier.
        payload = self.cache.memory.get(key)
        if payload is not None:
            self.stats.record_hit(from_memory=True)
            return payload

        task, created = self._registry.get_or_create(
            key, lambda: self._download(descriptor)
        )
        if created:
            self.stats.misses += 1
        else:
            self.stats.dedup_joins += 1
            log.debug(
                f"Joining in-flight download of '{key}' ({task.ref_count} waiters)."
            )
        # Shielded so that a caller giving up never cancels the shared download.
        return await asyncio.shield(task.future)

    async def acquire_with_fallback(
        self, descriptor: ResourceDescriptor, fallback: ResourceDescriptor
    ) -> Payload:
        """Acquires a resource, degrading to a designated default on failure."""
        try:
            return await self.acquire(descriptor)
        except SfLoaderError as e:
            if descriptor.key == fallback.key:
                raise
            self.stats.fallbacks += 1
            log.warning(
                f"[yellow]⚠ Could not load '{descriptor.key}' ({e}). "
                f"Falling back to '{fallback.key}'.[/yellow]"
            )
            return await self.acquire(fallback)

    async def preload(
        self, descriptors: Iterable[ResourceDescriptor]
    ) -> dict[str, Payload | BaseException]:
        """
        Acquires many resources concurrently without failing on individual errors.

        Returns:
            Dictionary mapping each key to its payload or the raised exception.
        """
        descriptors = list(descriptors)
        if not descriptors:
            return {}
        log.info(f"Preloading {len(descriptors)} resources...")
        results = await asyncio.gather(
            *(self.acquire(d) for d in descriptors), return_exceptions=True
        )
        outcome = {d.key: result for d, result in zip(descriptors, results)}
        failed = sum(isinstance(r, BaseException) for r in outcome.values())
        if failed:
            log.warning(
                f"[yellow]Preload finished with {failed} of {len(outcome)} "
                "failures.[/yellow]"
            )
        else:
            log.info(f"[green]✓ Preloaded {len(outcome)} resources.[/green]")
        return outcome

    @asynccontextmanager
    async def _slot(self) -> AsyncIterator[None]:
        """Holds one concurrency slot while tracking the number of active fetches."""
        async with self._slots:
            self.active_fetches += 1
            self.peak_fetches = max(self.peak_fetches, self.active_fetches)
            try:
                yield
            finally:
                self.active_fetches -= 1

    async def _download(self, descriptor: ResourceDescriptor) -> Payload:
        key = descriptor.key
        try:
            return await self._fetch_with_retries(descriptor)
        except SfLoaderError as e:
            self.stats.failures += 1
            log.error(f"[red]✗ Failed to acquire '{key}': {e}[/red]")
            raise
        finally:
            self._registry.release(key)

    async def _fetch_with_retries(self, descriptor: ResourceDescriptor) -> Payload:
        rounds = self.chain_retries + 1
        last_error: AllSourcesExhausted | None = None

        for attempt in range(1, rounds + 1):
            async with self._slot():
                try:
                    result = await self.fetcher.fetch(descriptor)
                except AllSourcesExhausted as e:
                    last_error = e
                else:
                    return await self._store(descriptor, result)

            if attempt < rounds:
                log.debug(
                    f"Attempt {attempt}/{rounds} for '{descriptor.key}' failed on "
                    f"every source. Retrying in {self.retry_delay:.1f}s..."
                )
                await asyncio.sleep(self.retry_delay)

        if self.chain_retries == 0:
            raise last_error
        raise RetriesExhausted(descriptor.key, rounds) from last_error

    async def _store(self, descriptor: ResourceDescriptor, result: FetchResult) -> Payload:
        key = descriptor.key
        try:
            payload = self._decode(key, result.data, result.url)
        except DecodeError:
            self.stats.decode_failures += 1
            await self.cache.evict(key)
            raise

        written = await self.cache.write_through(key, payload)
        self.stats.record_download(payload.size, result.elapsed, result.source_base)
        log.info(
            f"[green]✓ Loaded {short_name(result.url)}[/green] "
            f"({format_size(payload.size)}, {result.elapsed * 1000:.0f}ms, "
            f"cached in {len(written)} tiers)"
        )
        return payload
