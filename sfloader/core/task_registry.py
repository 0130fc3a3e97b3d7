"""
Registry of in-flight downloads guaranteeing one shared task per resource key.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any

log = logging.getLogger(__name__)


@dataclass
class DownloadTask:
    """One in-flight fetch shared by every caller interested in the same key."""

    key: str
    future: asyncio.Task
    ref_count: int = 1
    started_at: float = field(default_factory=time.monotonic)

    @property
    def done(self) -> bool:
        return self.future.done()


def _consume_exception(future: asyncio.Future) -> None:
    # Callers may all have walked away; mark the failure as retrieved.
    if not future.cancelled():
        future.exception()


class DownloadTaskRegistry:
    """
    Maps resource keys to their in-flight DownloadTask.

    `get_or_create` performs its check and insert without yielding to the event
    loop, so two coroutines can never both start a task for the same key. A
    multi-threaded port would need a mutex around it.
    """

    def __init__(self):
        self._tasks: dict[str, DownloadTask] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def get(self, key: str) -> DownloadTask | None:
        return self._tasks.get(key)

    def keys(self) -> list[str]:
        return list(self._tasks)

    def get_or_create(
        self, key: str, factory: Callable[[], Coroutine[Any, Any, Any]]
    ) -> tuple[DownloadTask, bool]:
        """
        Returns the task for a key, starting it with `factory` if none exists.

        Returns:
            (task, created): `created` is False when the caller joined an
            existing task, whose ref_count was incremented.
        """
        task = self._tasks.get(key)
        if task is not None:
            task.ref_count += 1
            return task, False

        future = asyncio.ensure_future(factory())
        future.add_done_callback(_consume_exception)
        task = DownloadTask(key=key, future=future)
        self._tasks[key] = task
        return task, True

    def release(self, key: str) -> DownloadTask | None:
        """Removes the task for a key once it has resolved or failed."""
        return self._tasks.pop(key, None)
