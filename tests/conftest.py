"""Shared test fixtures for sfloader tests."""

import asyncio
import base64
import json
from collections import Counter

import pytest

from sfloader.core.coordinator import DownloadCoordinator
from sfloader.exceptions import AllSourcesExhausted
from sfloader.fetch.mirror_fetcher import FetchResult
from sfloader.models.descriptor import ResourceDescriptor
from sfloader.storage.file_store import FileStoreTier
from sfloader.storage.legacy_store import LegacyStoreTier
from sfloader.storage.metadata_index import MetadataIndex
from sfloader.storage.tiered_cache import TieredCache
from sfloader.storage.tiers import MemoryTier

MIRROR_A = "https://mirror-a.example/sound/"
MIRROR_B = "https://mirror-b.example/sound/"


def preset_bytes(tag: str = "piano", zones: int = 1) -> bytes:
    """Return a valid JSON preset document."""
    sample = base64.b64encode(tag.encode()).decode()
    return json.dumps(
        {
            "zones": [
                {
                    "keyRangeLow": i * 12,
                    "keyRangeHigh": i * 12 + 11,
                    "originalPitch": 6000,
                    "sampleRate": 44100,
                    "file": sample,
                }
                for i in range(zones)
            ]
        }
    ).encode()


def make_descriptor(key: str, sources=(MIRROR_A, MIRROR_B)) -> ResourceDescriptor:
    return ResourceDescriptor(key=key, relative_path=f"{key}.json", sources=sources)


class FakeFetcher:
    """
    Stands in for MirrorFetcher.

    `outcomes` maps a key to a list consumed one item per fetch: bytes succeed,
    exceptions are raised. The last item repeats once the list is exhausted.
    """

    def __init__(self, outcomes: dict | None = None, delay: float = 0.0):
        self.outcomes = outcomes or {}
        self.delay = delay
        self.calls: Counter = Counter()
        self.order: list[str] = []
        self.active = 0
        self.peak = 0
        self.closed = False

    async def fetch(self, descriptor: ResourceDescriptor) -> FetchResult:
        key = descriptor.key
        self.calls[key] += 1
        self.order.append(key)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1

        items = self.outcomes.get(key, [preset_bytes(key)])
        outcome = items[min(self.calls[key] - 1, len(items) - 1)]
        if isinstance(outcome, BaseException):
            raise outcome
        base = descriptor.sources[0]
        return FetchResult(
            key=key,
            data=outcome,
            url=descriptor.url_for(base),
            source_base=base,
            elapsed=self.delay,
        )

    async def close(self) -> None:
        self.closed = True


def exhausted(key: str) -> AllSourcesExhausted:
    return AllSourcesExhausted(key, [(MIRROR_A + key, "HTTP 503")])


@pytest.fixture
def memory_tier():
    """Return an empty memory tier."""
    return MemoryTier()


@pytest.fixture
def file_tier(tmp_path):
    """Return a file store rooted in a temporary directory."""
    return FileStoreTier(tmp_path)


@pytest.fixture
def legacy_tier(tmp_path):
    """Return a legacy SQLite store rooted in a temporary directory."""
    return LegacyStoreTier(tmp_path, max_bytes=1024 * 1024)


@pytest.fixture
async def index(tmp_path):
    metadata_index = MetadataIndex(tmp_path, flush_delay=0.01)
    yield metadata_index
    await metadata_index.close()


@pytest.fixture
def tiered_cache(memory_tier, file_tier, legacy_tier, index):
    """Return the full three-tier cache stack."""
    return TieredCache(memory_tier, [file_tier, legacy_tier], index)


@pytest.fixture
def fake_fetcher():
    return FakeFetcher(delay=0.01)


@pytest.fixture
def coordinator(tiered_cache, fake_fetcher):
    """Return a coordinator over the real tiers and a fake fetcher."""
    return DownloadCoordinator(
        tiered_cache, fake_fetcher, concurrency_limit=3, chain_retries=2, retry_delay=0
    )
