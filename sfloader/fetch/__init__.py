"""
Network Layer.

This package retrieves raw payload bytes from local bundles and remote mirrors.
"""

from .mirror_fetcher import FetchResult, MalformedResponseError, MirrorFetcher

__all__ = ["FetchResult", "MalformedResponseError", "MirrorFetcher"]
