"""
Cache entry metadata shared by the loader tiers and the cache proxy store.
"""

import time
from dataclasses import dataclass, field
from enum import Enum

ONE_DAY_MS = 86_400_000


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class CacheCategory(Enum):
    """Storage categories of the cache proxy."""

    CRITICAL = "critical"  # Application assets, never evicted
    SOUNDFONT = "soundfont"  # Evictable, scored
    GENERIC = "generic"  # Network-first, best effort


@dataclass
class CacheEntry:
    """Access and ownership metadata for one cached resource."""

    key: str
    size_bytes: int
    cached_at: int = field(default_factory=now_ms)
    last_accessed: int = field(default_factory=now_ms)
    access_count: int = 1
    protected: bool = False
    category: CacheCategory = CacheCategory.SOUNDFONT

    def touch(self, now: int | None = None) -> None:
        """Records one read access."""
        self.access_count += 1
        self.last_accessed = now if now is not None else now_ms()

    def stale_days(self, now: int | None = None) -> float:
        now = now if now is not None else now_ms()
        return max(0, now - self.last_accessed) / ONE_DAY_MS
