"""
Data Models Layer.

This package contains the Pydantic models and dataclasses that define the core
data structures used throughout the application, such as configuration,
resource descriptors, decoded presets, cache entries and statistics.
"""

from .config import Budget, LoaderConfig
from .descriptor import Payload, ResourceDescriptor
from .entry import CacheCategory, CacheEntry
from .preset import SoundfontPreset, Zone
from .stats import CoordinatorStats

__all__ = [
    "Budget",
    "CacheCategory",
    "CacheEntry",
    "CoordinatorStats",
    "LoaderConfig",
    "Payload",
    "ResourceDescriptor",
    "SoundfontPreset",
    "Zone",
]
