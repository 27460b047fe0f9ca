"""
Sentinel Dispatch

Provider-call scheduling and result caching for the Sentinel code-review tool.

- ProviderScheduler: per-provider FIFO queues with pacing, retry with
  exponential backoff, and a circuit breaker guarding each provider
- TieredCache: in-memory LRU tier backed by a durable SQLite tier, with
  lazy TTL expiry and hit/miss accounting
- CacheWarmer: on-demand pre-population from files, git changes and manifests
- DispatchRuntime: constructs and owns all of the above for one process
"""

__version__ = "1.0.0"

from .cache import TieredCache
from .cache_store import CacheEntry, DurableCacheStore
from .cache_warmer import CacheWarmer, WarmStats
from .circuit_breaker import CircuitBreaker, CircuitState
from .config import (
    CacheConfig,
    DispatchConfig,
    LLMConfig,
    ProviderConfig,
    SchedulerConfig,
    WarmerConfig,
    get_config,
)
from .errors import (
    CacheError,
    CacheReadCorruptionError,
    CacheTierUnavailableError,
    CircuitOpenError,
    DispatchError,
    TransientProviderError,
)
from .llm_client import LLMClient
from .rate_limiter import ProviderScheduler
from .runtime import DispatchRuntime

__all__ = [
    "ProviderScheduler",
    "CircuitBreaker",
    "CircuitState",
    "TieredCache",
    "CacheEntry",
    "DurableCacheStore",
    "CacheWarmer",
    "WarmStats",
    "LLMClient",
    "DispatchRuntime",
    "ProviderConfig",
    "SchedulerConfig",
    "CacheConfig",
    "WarmerConfig",
    "LLMConfig",
    "DispatchConfig",
    "get_config",
    "DispatchError",
    "TransientProviderError",
    "CircuitOpenError",
    "CacheError",
    "CacheTierUnavailableError",
    "CacheReadCorruptionError",
]
