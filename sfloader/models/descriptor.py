"""
Value types exchanged between the catalog, the loader and the audio engine.
"""

from collections.abc import Iterator
from dataclasses import dataclass, field
from urllib.parse import urlsplit

from .preset import SoundfontPreset


@dataclass(frozen=True)
class ResourceDescriptor:
    """Identifier plus location metadata for one downloadable soundfont payload."""

    key: str
    relative_path: str
    sources: tuple[str, ...]

    def __post_init__(self):
        if not self.key or not self.key.strip():
            raise ValueError("Resource key cannot be empty.")
        if not self.relative_path or not self.relative_path.strip():
            raise ValueError(f"Resource '{self.key}' has no relative path.")
        # Accept any iterable of base URLs but store an immutable tuple.
        object.__setattr__(self, "sources", tuple(self.sources))
        if not self.sources:
            raise ValueError(f"Resource '{self.key}' has no sources.")

    def url_for(self, base: str) -> str:
        """Joins a source base URL with this resource's relative path."""
        return base.rstrip("/") + "/" + self.relative_path.lstrip("/")

    def urls(self) -> Iterator[tuple[str, str]]:
        """Yields (base, full_url) pairs in source order."""
        for base in self.sources:
            yield base, self.url_for(base)

    @property
    def filename(self) -> str:
        return self.relative_path.rsplit("/", 1)[-1]

    @classmethod
    def from_dict(cls, data: dict) -> "ResourceDescriptor":
        """Builds a descriptor from the catalog's camelCase JSON shape."""
        return cls(
            key=data["key"],
            relative_path=data.get("relativePath") or data.get("relative_path", ""),
            sources=tuple(data.get("sources", ())),
        )

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "relativePath": self.relative_path,
            "sources": list(self.sources),
        }


@dataclass(frozen=True)
class Payload:
    """Decoded sound data handed to the audio engine, keyed like its descriptor."""

    key: str
    data: bytes = field(repr=False)
    preset: SoundfontPreset = field(repr=False)
    source: str | None = None

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def source_host(self) -> str:
        """Host the payload was retrieved from, or 'cache' when not known."""
        if not self.source:
            return "cache"
        return urlsplit(self.source).netloc or self.source
