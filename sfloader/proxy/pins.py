"""
The favorites registry: identifiers whose soundfont entries the eviction engine
must never remove.
"""

import json
import logging
from collections.abc import Iterator
from pathlib import Path

log = logging.getLogger(__name__)


class PinSet:
    """
    A persisted set of pin identifiers.

    An identifier protects every entry whose key contains it, including entries
    written after the pin was added.
    """

    def __init__(self, path: Path):
        self.path = path
        self._pins: set[str] = self._load()

    def _load(self) -> set[str]:
        if not self.path.is_file():
            return set()
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            log.warning(f"Pin registry unreadable, starting empty: {e}")
            return set()
        return {item for item in data if isinstance(item, str) and item}

    def save(self) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(".tmp")
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(sorted(self._pins), f, indent=2)
            tmp_path.replace(self.path)
            return True
        except OSError as e:
            log.error(f"Could not save pin registry: {e}")
            return False

    def __contains__(self, identifier: str) -> bool:
        return identifier in self._pins

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._pins))

    def __len__(self) -> int:
        return len(self._pins)

    def add(self, identifier: str) -> bool:
        """Returns False if the identifier was already pinned."""
        if not identifier:
            raise ValueError("Pin identifier cannot be empty.")
        if identifier in self._pins:
            return False
        self._pins.add(identifier)
        self.save()
        return True

    def remove(self, identifier: str) -> bool:
        if identifier not in self._pins:
            return False
        self._pins.discard(identifier)
        self.save()
        return True

    def matches(self, key: str) -> bool:
        """Whether any pin protects the entry with this key."""
        return any(pin in key for pin in self._pins)
