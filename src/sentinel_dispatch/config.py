"""
Configuration for Sentinel Dispatch

Environment Variables:
- SENTINEL_RATE_LIMIT_RPS: Default requests per second for unknown providers (default: 5)
- RATE_LIMIT_RPS: Fallback for SENTINEL_RATE_LIMIT_RPS
- SENTINEL_CACHE_TTL: Cache entry time-to-live in seconds (default: 3600)
- SENTINEL_CACHE_MAX_SIZE: Maximum entries in the in-memory tier (default: 10000)
- SENTINEL_CACHE_DIR: Directory holding the durable tier (default: .sentinel/cache)
- SENTINEL_CACHE_ENABLED: Set to "false" to disable caching entirely
- SENTINEL_WARM_MAX_FILE_SIZE: Files above this size are skipped when warming
- OPENAI_API_KEY / SENTINEL_LLM_BASE_URL / SENTINEL_LLM_MODEL: LLM provider access

Per-provider pacing and retry policy lives in PROVIDER_CONFIGS and can be
extended per process through SchedulerConfig.providers.
"""

import math
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _env_rps() -> float:
    raw = os.getenv("SENTINEL_RATE_LIMIT_RPS") or os.getenv("RATE_LIMIT_RPS") or "5"
    try:
        return float(raw)
    except ValueError:
        return 5.0


def _env_flag(name: str, default: str = "true") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "on")


# Exponential backoff never waits longer than this between attempts
MAX_BACKOFF_SECONDS = 30.0


@dataclass
class ProviderConfig:
    """Static pacing, retry and breaker policy for one provider."""

    id: str
    requests_per_second: float
    max_retries: int = 3
    base_delay: float = 1.0  # seconds; doubled per retry
    failure_threshold: int | None = None  # None: trip after max_retries failures
    reset_timeout: float = 30.0  # seconds an open breaker waits before probing

    def __post_init__(self) -> None:
        self.requests_per_second = max(1.0, float(self.requests_per_second or 1))

    @property
    def min_interval(self) -> float:
        """Minimum spacing between two dispatches, in seconds."""
        return math.ceil(1000 / self.requests_per_second) / 1000

    @property
    def breaker_threshold(self) -> int:
        if self.failure_threshold is not None:
            return max(1, self.failure_threshold)
        return max(1, self.max_retries)


PROVIDER_CONFIGS: dict[str, ProviderConfig] = {
    "openai": ProviderConfig("openai", requests_per_second=10, max_retries=3, base_delay=1.0),
    "anthropic": ProviderConfig("anthropic", requests_per_second=5, max_retries=3, base_delay=1.0),
    "gemini": ProviderConfig("gemini", requests_per_second=15, max_retries=3, base_delay=0.5),
    "groq": ProviderConfig("groq", requests_per_second=30, max_retries=3, base_delay=0.2),
}


@dataclass
class SchedulerConfig:
    """Configuration for the provider scheduler."""

    default_rps: float = field(default_factory=_env_rps)
    default_max_retries: int = 3
    default_base_delay: float = 1.0
    max_backoff: float = MAX_BACKOFF_SECONDS

    # Per-process overrides layered over PROVIDER_CONFIGS
    providers: dict[str, ProviderConfig] = field(default_factory=dict)

    def get_provider_config(self, provider_id: str) -> ProviderConfig:
        """
        Get the policy for a provider.

        Args:
            provider_id: Name of the provider (e.g. 'openai', 'groq')

        Returns:
            The override, the static table entry, or a default config
        """
        if provider_id in self.providers:
            return self.providers[provider_id]
        if provider_id in PROVIDER_CONFIGS:
            return PROVIDER_CONFIGS[provider_id]
        return ProviderConfig(
            id=provider_id,
            requests_per_second=self.default_rps,
            max_retries=self.default_max_retries,
            base_delay=self.default_base_delay,
        )


@dataclass
class CacheConfig:
    """Configuration for the tiered result cache."""

    ttl_seconds: float = field(
        default_factory=lambda: float(os.getenv("SENTINEL_CACHE_TTL", "3600"))
    )
    max_size: int = field(
        default_factory=lambda: int(os.getenv("SENTINEL_CACHE_MAX_SIZE", "10000"))
    )
    cache_dir: Path = field(
        default_factory=lambda: Path(os.getenv("SENTINEL_CACHE_DIR", ".sentinel/cache"))
    )
    enabled: bool = field(default_factory=lambda: _env_flag("SENTINEL_CACHE_ENABLED"))
    durable: bool = True  # False keeps the cache in memory only

    db_filename: str = "cache.db"

    @property
    def db_path(self) -> Path:
        return Path(self.cache_dir) / self.db_filename


@dataclass
class WarmerConfig:
    """Configuration for cache warming."""

    root: Path = field(default_factory=Path.cwd)
    patterns: list[str] = field(default_factory=lambda: [
        "**/*.js", "**/*.ts", "**/*.py", "**/*.java",
    ])
    ignored_directories: set[str] = field(default_factory=lambda: {
        "node_modules", "dist", "build", ".git", "__pycache__",
        "venv", ".venv", ".sentinel", ".tox", ".mypy_cache", ".pytest_cache",
    })
    max_file_size: int = field(
        default_factory=lambda: int(os.getenv("SENTINEL_WARM_MAX_FILE_SIZE", "500000"))
    )
    base_ref: str = "main"
    git_timeout_seconds: float = 30.0


@dataclass
class LLMConfig:
    """Configuration for the OpenAI-compatible completion client."""

    api_key: str = field(default_factory=lambda: os.getenv("OPENAI_API_KEY", ""))
    api_base_url: str | None = field(
        default_factory=lambda: os.getenv("SENTINEL_LLM_BASE_URL") or None
    )
    model: str = field(default_factory=lambda: os.getenv("SENTINEL_LLM_MODEL", "gpt-4o-mini"))
    provider: str = "openai"
    max_tokens: int = 4000
    analyzer_tag: str = "llm"


@dataclass
class DispatchConfig:
    """Top-level configuration bundle."""

    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    warmer: WarmerConfig = field(default_factory=WarmerConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors."""
        errors = []

        if self.scheduler.default_rps <= 0:
            errors.append("default requests per second must be positive")

        if self.cache.max_size < 1:
            errors.append("cache max_size must be at least 1")

        if self.cache.ttl_seconds <= 0:
            errors.append("cache ttl_seconds must be positive")

        if self.warmer.max_file_size < 0:
            errors.append("warmer max_file_size must not be negative")

        return errors


def get_config() -> DispatchConfig:
    """Get a configuration instance built from the environment."""
    return DispatchConfig()
