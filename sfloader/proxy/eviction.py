"""
Budget enforcement for the cache proxy's soundfont store.

Entries are ranked by a recency/frequency score (lowest first) and removed until
enough space is freed, usage is back under the target fraction of the total
budget and the entry count is back under its trigger. Protected entries and the essential default instruments are never
removed, but they still count towards usage.
"""

import asyncio
import logging
from collections.abc import Callable, Collection, Sequence
from dataclasses import dataclass, field

from sfloader.models.config import Budget
from sfloader.models.entry import CacheEntry, now_ms
from sfloader.utils.formatting import format_size, short_name

from .store import ProxyStore

log = logging.getLogger(__name__)


def score_entry(entry: CacheEntry, now: int, access_count_cap: int | None = None) -> float:
    """
    Eviction score: access count plus days since last access.

    The access count is capped so an entry that was popular long ago cannot
    outrank recently used ones forever.
    """
    count = entry.access_count
    if access_count_cap is not None:
        count = min(count, access_count_cap)
    return count + entry.stale_days(now)


def needs_cleanup(usage: dict[str, int], budget: Budget) -> bool:
    """Whether usage crossed the byte or entry-count trigger."""
    return (
        usage["totalSize"] > budget.total_limit * budget.cleanup_threshold
        or usage["soundfontCount"] > budget.max_soundfonts * budget.count_threshold
    )


@dataclass
class EvictionReport:
    """Outcome of one cleanup run."""

    freed: int = 0
    removed: list[str] = field(default_factory=list)
    remaining_usage: int = 0
    overshoot: int = 0
    over_budget: bool = False

    def as_dict(self) -> dict:
        return {
            "freedSpace": self.freed,
            "removed": len(self.removed),
            "remainingUsage": self.remaining_usage,
            "overshoot": self.overshoot,
            "overBudget": self.over_budget,
        }


class EvictionEngine:
    """Selects and removes low-value soundfont entries from the proxy store."""

    def __init__(
        self,
        store: ProxyStore,
        budget: Budget,
        essential: Sequence[str] = (),
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.budget = budget
        self.essential = list(essential)
        self._clock = clock
        self._lock = asyncio.Lock()
        self.last_cleanup: int | None = None

    def is_essential(self, key: str) -> bool:
        return any(path in key for path in self.essential)

    def is_evictable(self, entry: CacheEntry) -> bool:
        return not entry.protected and not self.is_essential(entry.key)

    def plan(
        self,
        entries: Sequence[CacheEntry],
        usage: int,
        required_space: int | None = None,
        now: int | None = None,
        exclude: Collection[str] = (),
    ) -> list[CacheEntry]:
        """
        Returns the entries to remove, in removal order.

        Removal stops once at least `required_space` bytes are freed, the
        remaining usage is at or below the target and the remaining entry count
        is back under the count trigger, or when candidates run out. Without
        `required_space` only the target usage and count apply. Keys in
        `exclude` are kept this round.
        """
        now = now if now is not None else self._clock()
        required = required_space or 0
        target = self.budget.target_usage
        remaining = len(entries)

        candidates = sorted(
            (
                entry
                for entry in entries
                if self.is_evictable(entry) and entry.key not in exclude
            ),
            key=lambda entry: score_entry(entry, now, self.budget.access_count_cap),
        )
        selected = []
        freed = 0
        for entry in candidates:
            if (
                freed >= required
                and usage - freed <= target
                and remaining <= self.budget.target_count
            ):
                break
            selected.append(entry)
            freed += entry.size_bytes
            remaining -= 1
        return selected

    async def cleanup(
        self,
        soundfont_store: str,
        critical_store: str,
        required_space: int | None = None,
        exclude: Collection[str] = (),
    ) -> EvictionReport:
        """
        Removes soundfont entries according to `plan` and reports the outcome.

        Overshoot (usage still above the target once candidates are exhausted)
        is logged, not raised.
        """
        async with self._lock:
            usage = (await self.store.usage(soundfont_store, critical_store))["totalSize"]
            entries = await self.store.entries(soundfont_store)
            victims = self.plan(entries, usage, required_space, exclude=exclude)

            report = EvictionReport()
            for entry in victims:
                if await self.store.delete(soundfont_store, entry.key):
                    report.freed += entry.size_bytes
                    report.removed.append(entry.key)
                    log.debug(
                        f"Evicted {short_name(entry.key)} "
                        f"({format_size(entry.size_bytes)}, "
                        f"{entry.access_count} accesses)"
                    )

            report.remaining_usage = usage - report.freed
            report.overshoot = max(0, report.remaining_usage - self.budget.target_usage)
            report.over_budget = report.remaining_usage > self.budget.total_limit
            self.last_cleanup = self._clock()

        log.info(
            f"[green]✓ Cleanup removed {len(report.removed)} soundfonts, "
            f"{format_size(report.freed)} freed.[/green]"
        )
        if report.overshoot:
            kept = len(entries) - len(report.removed)
            log.warning(
                f"[yellow]Cache usage is still {format_size(report.overshoot)} above "
                f"the target after cleanup ({kept} protected or essential entries "
                "kept).[/yellow]"
            )
        return report
