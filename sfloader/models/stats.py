"""
Dataclass for tracking download coordinator statistics.
"""

from collections import Counter
from dataclasses import dataclass, field


@dataclass
class CoordinatorStats:
    """Tracks cache hits, network downloads and latency for one coordinator."""

    memory_hits: int = 0
    persistent_hits: int = 0
    misses: int = 0
    downloads: int = 0
    dedup_joins: int = 0
    failures: int = 0
    decode_failures: int = 0
    fallbacks: int = 0
    bytes_downloaded: int = 0
    source_successes: Counter = field(default_factory=Counter)

    # Latency samples, in milliseconds
    _latencies_ms: list[float] = field(default_factory=list, repr=False)
    max_samples: int = field(default=200, repr=False)

    @property
    def hits(self) -> int:
        return self.memory_hits + self.persistent_hits

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0

    @property
    def average_latency_ms(self) -> float:
        if not self._latencies_ms:
            return 0.0
        return sum(self._latencies_ms) / len(self._latencies_ms)

    def record_hit(self, from_memory: bool) -> None:
        if from_memory:
            self.memory_hits += 1
        else:
            self.persistent_hits += 1

    def record_download(self, size: int, elapsed_s: float, source_base: str) -> None:
        """Records one successful network download."""
        self.downloads += 1
        self.bytes_downloaded += size
        self.source_successes[source_base] += 1
        self._latencies_ms.append(elapsed_s * 1000)
        # Keep a sliding window of the most recent samples
        if len(self._latencies_ms) > self.max_samples:
            self._latencies_ms.pop(0)

    def as_dict(self) -> dict:
        return {
            "memory_hits": self.memory_hits,
            "persistent_hits": self.persistent_hits,
            "misses": self.misses,
            "downloads": self.downloads,
            "dedup_joins": self.dedup_joins,
            "failures": self.failures,
            "decode_failures": self.decode_failures,
            "fallbacks": self.fallbacks,
            "bytes_downloaded": self.bytes_downloaded,
            "hit_rate": round(self.hit_rate, 3),
            "average_latency_ms": round(self.average_latency_ms, 1),
            "source_successes": dict(self.source_successes),
        }
