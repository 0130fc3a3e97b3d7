"""
Reads the resource manifest and turns its entries into ResourceDescriptors.

Manifest shape:

    {
        "local": "http://localhost:8000/soundfonts/",
        "mirrors": ["https://mirror.example/sound/"],
        "essential": ["piano"],
        "resources": {
            "piano": {"key": "_tone_0000_FluidR3_GM_sf2_file",
                      "relativePath": "0000_FluidR3_GM_sf2_file.json"}
        }
    }

A resource may carry its own "sources" list, which then replaces the manifest's
local-then-mirrors order.
"""

import json
import logging
from collections.abc import Iterator, Sequence
from pathlib import Path

from sfloader.exceptions import ConfigurationError
from sfloader.models.descriptor import ResourceDescriptor

log = logging.getLogger(__name__)


class Catalog:
    """An immutable mapping of resource identifiers to descriptors."""

    def __init__(
        self,
        resources: dict[str, ResourceDescriptor],
        essential_ids: Sequence[str] = (),
    ):
        self._resources = dict(resources)
        unknown = [i for i in essential_ids if i not in self._resources]
        if unknown:
            raise ConfigurationError(
                f"Essential resources missing from catalog: {', '.join(unknown)}"
            )
        self._essential = list(essential_ids)

    def __contains__(self, identifier: str) -> bool:
        return identifier in self._resources

    def __iter__(self) -> Iterator[str]:
        return iter(self._resources)

    def __len__(self) -> int:
        return len(self._resources)

    @classmethod
    def from_dict(
        cls, data: dict, default_sources: Sequence[str] = ()
    ) -> "Catalog":
        """
        Builds a catalog from a parsed manifest.

        Args:
            data: The manifest document.
            default_sources: Sources used when the manifest declares none.

        Raises:
            ConfigurationError: If the manifest or one of its entries is invalid.
        """
        if not isinstance(data, dict) or not isinstance(data.get("resources"), dict):
            raise ConfigurationError("Manifest must contain a 'resources' object.")

        sources = []
        if data.get("local"):
            sources.append(data["local"])
        sources.extend(data.get("mirrors") or [])
        sources = sources or list(default_sources)

        resources = {}
        for identifier, entry in data["resources"].items():
            if not isinstance(entry, dict):
                raise ConfigurationError(f"Resource '{identifier}' must be an object.")
            entry = {"sources": sources, **entry}
            try:
                resources[identifier] = ResourceDescriptor.from_dict(entry)
            except (KeyError, ValueError) as e:
                raise ConfigurationError(
                    f"Invalid catalog entry '{identifier}': {e}"
                ) from e

        essential = data.get("essential") or []
        return cls(resources, essential)

    @classmethod
    def from_file(cls, path: Path, default_sources: Sequence[str] = ()) -> "Catalog":
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Could not read catalog '{path}': {e}") from e
        catalog = cls.from_dict(data, default_sources)
        log.debug(f"Loaded catalog with {len(catalog)} resources from '{path}'.")
        return catalog

    def get(self, identifier: str) -> ResourceDescriptor:
        """
        Raises:
            KeyError: If the identifier is not in the catalog.
        """
        try:
            return self._resources[identifier]
        except KeyError:
            raise KeyError(f"Unknown resource '{identifier}'") from None

    def descriptors(self) -> list[ResourceDescriptor]:
        return list(self._resources.values())

    def essential(self) -> list[ResourceDescriptor]:
        """Descriptors of the default instruments that must always be available."""
        return [self._resources[i] for i in self._essential]
