"""Exception hierarchy for provider dispatch and the result cache."""


class DispatchError(Exception):
    """Base exception for all sentinel_dispatch errors."""


class TransientProviderError(DispatchError):
    """A provider call failed in a way worth retrying (network, timeout, 5xx, 429)."""

    def __init__(self, message: str, provider: str = "", status_code: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class CircuitOpenError(DispatchError):
    """The provider's circuit breaker rejected the call without running it."""

    def __init__(self, provider: str = "", retry_after: float = 0.0):
        message = f"Circuit breaker is open for {provider or 'provider'}"
        if retry_after > 0:
            message += f" (retry in {retry_after:.1f}s)"
        super().__init__(message)
        self.provider = provider
        self.retry_after = retry_after


class CacheError(DispatchError):
    """Base class for cache failures. Never propagated out of the cache."""


class CacheTierUnavailableError(CacheError):
    """The durable tier could not be initialized."""


class CacheReadCorruptionError(CacheError):
    """A persisted entry failed to deserialize."""

    def __init__(self, key: str, reason: str = ""):
        super().__init__(f"Corrupt cache entry {key}: {reason}" if reason else f"Corrupt cache entry {key}")
        self.key = key
