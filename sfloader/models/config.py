"""
Pydantic models for application configuration.
Provides robust validation for the loader settings and the cache proxy budget.
"""

from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator

MIB = 1024 * 1024

DEFAULT_MIRRORS = [
    "https://surikov.github.io/webaudiofontdata/sound/",
    "https://cdn.jsdelivr.net/gh/surikov/webaudiofontdata@latest/sound/",
]

# Default instrument presets that must always stay cached (acoustic and electric piano).
DEFAULT_ESSENTIAL_SOUNDFONTS = [
    "/soundfonts/0000_FluidR3_GM_sf2_file.json",
    "/soundfonts/0010_FluidR3_GM_sf2_file.json",
]

DEFAULT_CRITICAL_ASSETS = [
    "/index.html",
    "/manifest.json",
    "/soundfonts-manifest.json",
]


class Budget(BaseModel):
    """Byte budget enforced by the cache proxy's eviction engine."""

    critical_limit: int = 30 * MIB
    soundfont_limit: int = 300 * MIB
    total_limit: int = 350 * MIB
    max_soundfonts: int = 100
    min_free_space: int = 50 * MIB

    cleanup_threshold: float = 0.85
    count_threshold: float = 0.90
    target_fraction: float = 0.70
    large_entry_bytes: int = 5 * MIB
    large_entry_threshold: float = 0.80
    access_count_cap: int = 100

    class Config:
        """Pydantic model configuration."""

        validate_assignment = True

    @field_validator(
        "critical_limit",
        "soundfont_limit",
        "total_limit",
        "max_soundfonts",
        "access_count_cap",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Limits and counts must be strictly positive."""
        if v <= 0:
            raise ValueError("Budget limits must be greater than zero.")
        return v

    @field_validator("min_free_space", "large_entry_bytes")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Byte amounts cannot be negative.")
        return v

    @field_validator(
        "cleanup_threshold", "count_threshold", "target_fraction", "large_entry_threshold"
    )
    @classmethod
    def validate_fraction(cls, v: float) -> float:
        """Ensures thresholds are expressed as fractions of a limit."""
        if not 0 < v <= 1:
            raise ValueError("Thresholds must be fractions between 0 and 1.")
        return v

    @model_validator(mode="after")
    def validate_limits(self) -> "Budget":
        """Category limits must fit into the total and the target below the trigger."""
        if self.soundfont_limit > self.total_limit:
            raise ValueError("soundfont_limit cannot exceed total_limit.")
        if self.critical_limit > self.total_limit:
            raise ValueError("critical_limit cannot exceed total_limit.")
        if self.target_fraction >= self.cleanup_threshold:
            raise ValueError(
                "target_fraction must be lower than cleanup_threshold, otherwise "
                "eviction would never make progress."
            )
        return self

    @property
    def target_usage(self) -> int:
        """Usage the eviction engine tries to bring the store down to."""
        return int(self.total_limit * self.target_fraction)

    @property
    def target_count(self) -> int:
        """Soundfont count at or below which the entry-count trigger stays quiet."""
        return int(self.max_soundfonts * self.count_threshold)


class LoaderConfig(BaseModel):
    """A validated configuration model for the application."""

    # Loader Settings
    concurrency_limit: int = 3
    chain_retries: int = 2
    retry_delay: float = 1.0
    local_timeout: float = 5.0
    remote_timeout: float = 45.0

    # Sources
    local_base_url: str = ""
    mirrors: list[str] = Field(default_factory=lambda: list(DEFAULT_MIRRORS))

    # Cache Tiers
    cache_dir: str = ""
    legacy_max_bytes: int = 500 * MIB
    index_max_age_days: int = 30

    # Cache Proxy
    proxy_url: str = ""
    proxy_host: str = "127.0.0.1"
    proxy_port: int = 8765
    upstream_url: str = ""
    essential_soundfonts: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ESSENTIAL_SOUNDFONTS)
    )
    critical_assets: list[str] = Field(
        default_factory=lambda: list(DEFAULT_CRITICAL_ASSETS)
    )
    budget: Budget = Field(default_factory=Budget)

    # Internal fields not loaded from INI file
    config_path: str = Field("", repr=False)

    class Config:
        """Pydantic model configuration."""

        validate_assignment = True
        str_strip_whitespace = True

    @field_validator("concurrency_limit")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        """Ensures a reasonable number of simultaneous downloads."""
        if v < 1 or v > 16:
            raise ValueError("Concurrency limit must be between 1 and 16.")
        return v

    @field_validator("chain_retries")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        if v < 0 or v > 10:
            raise ValueError("Chain retries must be between 0 and 10.")
        return v

    @field_validator("retry_delay")
    @classmethod
    def validate_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Retry delay cannot be negative.")
        return v

    @field_validator("local_timeout", "remote_timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Timeouts must be greater than zero.")
        return v

    @field_validator("mirrors")
    @classmethod
    def validate_mirrors(cls, v: list[str]) -> list[str]:
        """Mirrors must be absolute HTTP(S) base URLs."""
        for url in v:
            if not url.startswith(("http://", "https://")):
                raise ValueError(f"Mirror must be an http(s) URL, got: {url}")
        return v

    @field_validator("local_base_url", "proxy_url", "upstream_url")
    @classmethod
    def validate_optional_url(cls, v: str) -> str:
        if v and not v.startswith(("http://", "https://", "file://")):
            raise ValueError(f"Expected an http(s):// or file:// URL, got: {v}")
        return v

    @field_validator("proxy_port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 0 < v < 65536:
            raise ValueError("Proxy port must be between 1 and 65535.")
        return v

    @field_validator("legacy_max_bytes")
    @classmethod
    def validate_legacy_limit(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Legacy store limit must be greater than zero.")
        return v

    @model_validator(mode="after")
    def validate_sources(self) -> "LoaderConfig":
        """At least one place to fetch resources from must be configured."""
        if not self.mirrors and not self.local_base_url and not self.proxy_url:
            raise ValueError(
                "No sources configured. Provide mirrors, a local_base_url or a "
                "proxy_url."
            )
        return self

    @property
    def cache_path(self) -> Path:
        """Directory holding the persistent cache tiers."""
        if self.cache_dir:
            return Path(self.cache_dir).expanduser()
        return Path(self.config_path or ".").expanduser() / "cache"

    def source_bases(self) -> list[str]:
        """Ordered source base URLs: proxy or local bundle first, then mirrors."""
        bases = []
        if self.proxy_url:
            bases.append(self.proxy_url.rstrip("/") + "/soundfonts/")
        if self.local_base_url:
            bases.append(self.local_base_url)
        bases.extend(self.mirrors)
        return list(dict.fromkeys(bases))

    @classmethod
    def get_ini_keys(cls) -> set[str]:
        """Returns a set of all keys that are expected in the INI file."""
        internal_fields = {"config_path", "budget"}
        keys = {key for key in cls.model_fields if key not in internal_fields}
        keys.update(f"budget_{key}" for key in Budget.model_fields)
        return keys
