"""
Process-level wiring for Sentinel Dispatch.

DispatchRuntime is constructed once at startup and handed to every consumer;
nothing in the package is created as an import side effect.

Usage:
    async with DispatchRuntime.from_env() as runtime:
        result = await runtime.scheduler.schedule("openai", call)
        stats = runtime.cache.get_stats()
"""

import logging
from typing import Any

from .cache import TieredCache
from .cache_warmer import CacheWarmer
from .config import DispatchConfig, get_config
from .llm_client import LLMClient
from .rate_limiter import ProviderScheduler

logger = logging.getLogger(__name__)


class DispatchRuntime:
    """Owns the scheduler, cache, warmer and LLM client for one process."""

    def __init__(self, config: DispatchConfig | None = None):
        self.config = config or get_config()
        self.scheduler = ProviderScheduler(self.config.scheduler)
        self.cache = TieredCache(self.config.cache)
        self.warmer = CacheWarmer(self.cache, self.config.warmer)
        self.llm_client = LLMClient(self.config.llm, self.scheduler, self.cache)
        self._initialized = False

    @classmethod
    def from_env(cls) -> "DispatchRuntime":
        return cls(get_config())

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Open the durable cache tier. Safe to call more than once."""
        if self._initialized:
            return

        for error in self.config.validate():
            logger.warning(f"[Runtime] Configuration problem: {error}")

        await self.cache.initialize()
        self._initialized = True

    async def close(self) -> None:
        """Stop scheduling, flush and close the cache, release the LLM client."""
        await self.scheduler.close()
        await self.cache.close()
        try:
            await self.llm_client.close()
        except Exception as e:
            logger.warning(f"[Runtime] Error closing LLM client: {e}")
        self._initialized = False

    async def get_status(self, provider_id: str | None = None) -> dict[str, Any]:
        """Combined scheduler and cache statistics."""
        return {
            "scheduler": self.scheduler.get_stats(provider_id),
            "cache": self.cache.get_stats(),
            "durable": await self.cache.get_durable_stats(),
        }

    async def __aenter__(self) -> "DispatchRuntime":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
