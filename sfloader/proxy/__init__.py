"""
Cache proxy.

A separate HTTP process that caches resource responses in versioned stores,
enforces a byte budget through the eviction engine and honours user pins.
"""

from .channel import ControlChannel
from .eviction import EvictionEngine, EvictionReport, needs_cleanup, score_entry
from .pins import PinSet
from .server import CONTROL_PATH, create_app, run_proxy
from .service import CacheProxy, ProxyResponse, ProxyState
from .store import ProxyStore, StoredResponse, store_name

__all__ = [
    "CONTROL_PATH",
    "CacheProxy",
    "ControlChannel",
    "EvictionEngine",
    "EvictionReport",
    "PinSet",
    "ProxyResponse",
    "ProxyState",
    "ProxyStore",
    "StoredResponse",
    "create_app",
    "needs_cleanup",
    "run_proxy",
    "score_entry",
    "store_name",
]
