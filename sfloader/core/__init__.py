"""
Core loader engine.

This package contains the primary acquisition logic. The `DownloadCoordinator`
turns resource descriptors into payloads, sharing one in-flight download per
key through the `DownloadTaskRegistry`, and `CacheSystem` wires it together
with the fetcher and the cache tiers.
"""
