"""
Composition root wiring the cache tiers, the mirror fetcher and the coordinator.

One CacheSystem is built per process and passed to whatever needs to load
resources; nothing in the loader reaches for module-level state.
"""

import logging
from collections.abc import Sequence

from sfloader.fetch.mirror_fetcher import MirrorFetcher
from sfloader.models.config import LoaderConfig
from sfloader.models.descriptor import Payload, ResourceDescriptor
from sfloader.storage.file_store import FileStoreTier
from sfloader.storage.legacy_store import LegacyStoreTier
from sfloader.storage.metadata_index import MetadataIndex
from sfloader.storage.tiered_cache import TieredCache
from sfloader.storage.tiers import MemoryTier, PersistentTier

from .coordinator import DownloadCoordinator

log = logging.getLogger(__name__)


class CacheSystem:
    """Owns the loader's long-lived collaborators and their shutdown."""

    def __init__(
        self,
        config: LoaderConfig,
        fetcher: MirrorFetcher | None = None,
        persistent_tiers: Sequence[PersistentTier] | None = None,
    ):
        self.config = config
        cache_dir = config.cache_path
        self.index = MetadataIndex(cache_dir)
        if persistent_tiers is None:
            persistent_tiers = [
                FileStoreTier(cache_dir),
                LegacyStoreTier(cache_dir, max_bytes=config.legacy_max_bytes),
            ]
        self.cache = TieredCache(MemoryTier(), persistent_tiers, self.index)
        self.fetcher = fetcher or MirrorFetcher(
            local_timeout=config.local_timeout,
            remote_timeout=config.remote_timeout,
            max_connections=config.concurrency_limit * 2,
        )
        self.coordinator = DownloadCoordinator(
            self.cache,
            self.fetcher,
            concurrency_limit=config.concurrency_limit,
            chain_retries=config.chain_retries,
            retry_delay=config.retry_delay,
        )

    @classmethod
    def from_config(cls, config: LoaderConfig) -> "CacheSystem":
        return cls(config)

    def descriptor(
        self, key: str, relative_path: str, sources: Sequence[str] | None = None
    ) -> ResourceDescriptor:
        """Builds a descriptor using the configured source order by default."""
        return ResourceDescriptor(
            key=key,
            relative_path=relative_path,
            sources=tuple(sources or self.config.source_bases()),
        )

    async def acquire(self, descriptor: ResourceDescriptor) -> Payload:
        return await self.coordinator.acquire(descriptor)

    async def start(self) -> None:
        """Drops index entries older than the configured maximum age."""
        stale = self.index.prune(self.config.index_max_age_days * 86400)
        if stale:
            log.debug(f"Pruned {len(stale)} stale index entries.")
        log.debug(f"Cache tiers ready: {', '.join(self.cache.tier_names)}")

    async def close(self) -> None:
        await self.fetcher.close()
        await self.index.close()

    async def __aenter__(self) -> "CacheSystem":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False
