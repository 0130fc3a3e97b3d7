"""
Defines custom exceptions for the application to allow for more specific error handling.
"""


class SfLoaderError(Exception):
    """Base exception for all application-specific errors."""


class ConfigurationError(SfLoaderError):
    """Raised for issues related to configuration loading or validation."""


class AllSourcesExhausted(SfLoaderError):
    """Raised when every source of a resource descriptor failed."""

    def __init__(self, key: str, errors: list[tuple[str, str]] | None = None):
        self.key = key
        self.errors = list(errors or [])
        details = "; ".join(f"{url}: {reason}" for url, reason in self.errors)
        message = f"All sources failed for '{key}'"
        if details:
            message = f"{message} ({details})"
        super().__init__(message)


class RetriesExhausted(SfLoaderError):
    """Raised when the whole mirror chain failed on every retry round."""

    def __init__(self, key: str, attempts: int):
        self.key = key
        self.attempts = attempts
        super().__init__(
            f"Giving up on '{key}' after {attempts} attempts over all sources"
        )


class DecodeError(SfLoaderError):
    """Raised when a retrieved payload cannot be decoded into a preset."""

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Payload for '{key}' is malformed: {reason}")


class CacheTierError(SfLoaderError):
    """Raised when a cache tier is unavailable or rejects an operation."""


class QuotaExceeded(SfLoaderError):
    """Raised when a proxy write cannot fit into the configured byte budget."""


class ControlChannelError(SfLoaderError):
    """Raised when the cache proxy control channel cannot be reached or refuses."""


class UpstreamUnavailable(SfLoaderError):
    """Raised when the cache proxy cannot reach its upstream origin."""
