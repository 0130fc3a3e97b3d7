"""
Per-mirror health tracking so a dead source base is skipped for a while.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Callable, Optional

log = logging.getLogger(__name__)


class SourceState(Enum):
    """Availability of a single source base."""

    AVAILABLE = "available"
    SKIPPED = "skipped"
    PROBING = "probing"  # one trial request after the cool-down


class SourceSkipped(Exception):
    """Raised when a source base is still cooling down after repeated failures."""

    def __init__(self, base: str, retry_in: float):
        self.base = base
        self.retry_in = retry_in
        super().__init__(f"{base} is skipped for another {retry_in:.0f}s")


@dataclass
class _SourceRecord:
    state: SourceState = SourceState.AVAILABLE
    consecutive_failures: int = 0
    skipped_at: Optional[float] = None


class SourceHealth:
    """
    Tracks consecutive failures per source base.

    A base that fails `failure_threshold` times in a row is skipped for
    `cooldown` seconds. The first request after that is a probe: success makes
    the base available again, failure restarts the cool-down.

    Only outages count as failures. An error the base answered with on
    purpose (a missing file, a bad body) shows the base is reachable.
    """

    def __init__(self, failure_threshold: int = 5, cooldown: float = 60):
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self._records: dict[str, _SourceRecord] = {}
        self._lock = asyncio.Lock()

    def state(self, base: str) -> SourceState:
        record = self._records.get(base)
        return record.state if record else SourceState.AVAILABLE

    def failures(self, base: str) -> int:
        record = self._records.get(base)
        return record.consecutive_failures if record else 0

    def skipped(self) -> list[str]:
        return [
            base
            for base, record in self._records.items()
            if record.state is SourceState.SKIPPED
        ]

    async def admit(self, base: str) -> None:
        """Raises SourceSkipped while `base` is cooling down."""
        async with self._lock:
            record = self._records.setdefault(base, _SourceRecord())
            if record.state is not SourceState.SKIPPED:
                return
            waited = time.monotonic() - (record.skipped_at or 0.0)
            if waited < self.cooldown:
                raise SourceSkipped(base, self.cooldown - waited)
            log.info(f"[yellow]Probing {base} again after {waited:.0f}s[/yellow]")
            record.state = SourceState.PROBING

    async def record_success(self, base: str) -> None:
        async with self._lock:
            record = self._records.setdefault(base, _SourceRecord())
            if record.state is SourceState.PROBING:
                log.info(f"[green]✓ {base} is reachable again[/green]")
            record.state = SourceState.AVAILABLE
            record.consecutive_failures = 0
            record.skipped_at = None

    async def record_failure(self, base: str) -> None:
        async with self._lock:
            record = self._records.setdefault(base, _SourceRecord())
            record.consecutive_failures += 1
            if record.state is SourceState.PROBING:
                log.warning(f"[yellow]{base} still failing, skipping it again[/yellow]")
            elif record.consecutive_failures < self.failure_threshold:
                return
            else:
                log.warning(
                    f"[red]✗ Skipping {base} for {self.cooldown:.0f}s after "
                    f"{record.consecutive_failures} consecutive failures[/red]"
                )
            record.state = SourceState.SKIPPED
            record.skipped_at = time.monotonic()

    @asynccontextmanager
    async def guard(
        self,
        base: str,
        is_outage: Callable[[Exception], bool] = lambda e: True,
    ) -> AsyncIterator[None]:
        """
        Admits a request to `base` and records its outcome.

        Exceptions for which `is_outage` is false propagate unchanged and mark
        the base as reachable.
        """
        await self.admit(base)
        try:
            yield
        except Exception as e:
            if is_outage(e):
                await self.record_failure(base)
            else:
                await self.record_success(base)
            raise
        await self.record_success(base)
