"""
Storage Layer.

This package handles all data persistence on the loader side: the configuration
file, the cache tiers and the advisory metadata index.
"""

from .config_manager import ConfigManager
from .file_store import FileStoreTier
from .legacy_store import LegacyStoreTier
from .metadata_index import MetadataIndex
from .tiered_cache import TieredCache
from .tiers import MemoryTier, PersistentTier

__all__ = [
    "ConfigManager",
    "FileStoreTier",
    "LegacyStoreTier",
    "MemoryTier",
    "MetadataIndex",
    "PersistentTier",
    "TieredCache",
]
