"""
LLM Client for Sentinel Dispatch.

Chat completions against an OpenAI-compatible endpoint, with:
- Per-provider pacing and circuit breaking via ProviderScheduler
- Result memoization via TieredCache
- Transient upstream failures surfaced as TransientProviderError
"""

import logging
from typing import Any, TYPE_CHECKING

import openai
from openai import AsyncOpenAI

from .errors import TransientProviderError

if TYPE_CHECKING:
    from .cache import TieredCache
    from .config import LLMConfig
    from .rate_limiter import ProviderScheduler

logger = logging.getLogger(__name__)

# Upstream errors worth retrying; everything else is passed through unchanged
TRANSIENT_ERRORS = (
    openai.APIConnectionError,  # includes APITimeoutError
    openai.RateLimitError,
    openai.InternalServerError,
)


class LLMClient:
    """Issues paced, memoized completion requests."""

    def __init__(
        self,
        config: "LLMConfig",
        scheduler: "ProviderScheduler",
        cache: "TieredCache",
        client: AsyncOpenAI | None = None,
    ):
        self.config = config
        self.scheduler = scheduler
        self.cache = cache
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        """Lazy-create the async client so a missing key only fails on use."""
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.config.api_key or None,
                base_url=self.config.api_base_url,
            )
        return self._client

    def cache_key(self, prompt: str, model: str, provider: str, max_tokens: int) -> str:
        return self.cache.generate_key(
            f"{model}:{max_tokens}", prompt, f"{self.config.analyzer_tag}:{provider}"
        )

    async def _request(self, prompt: str, model: str, provider: str, max_tokens: int) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=model,
                max_tokens=max_tokens,
                messages=[{"role": "user", "content": prompt}],
            )
        except TRANSIENT_ERRORS as e:
            status = getattr(e, "status_code", None)
            raise TransientProviderError(f"{type(e).__name__}: {e}", provider, status) from e

        if not response.choices:
            return ""
        return response.choices[0].message.content or ""

    async def complete(
        self,
        prompt: str,
        provider: str | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
        use_cache: bool = True,
    ) -> str:
        """
        Get a completion for prompt.

        Args:
            prompt: User message content
            provider: Scheduler provider id (default: config.provider)
            model: Model name (default: config.model)
            max_tokens: Maximum response tokens
            use_cache: Set False to always call the provider

        Returns:
            The completion text

        Raises:
            CircuitOpenError: If the provider's breaker is open
            TransientProviderError: If retries are exhausted on a transient failure
        """
        provider = provider or self.config.provider
        model = model or self.config.model
        max_tokens = max_tokens or self.config.max_tokens

        def dispatch() -> Any:
            return self.scheduler.schedule(
                provider, lambda: self._request(prompt, model, provider, max_tokens)
            )

        if not use_cache:
            return await dispatch()

        key = self.cache_key(prompt, model, provider, max_tokens)
        return await self.cache.get_or_compute(
            key, dispatch, analyzer_tag=f"{self.config.analyzer_tag}:{provider}"
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


def create_llm_client(
    config: "LLMConfig",
    scheduler: "ProviderScheduler",
    cache: "TieredCache",
) -> LLMClient:
    """Factory function to create an LLMClient."""
    return LLMClient(config, scheduler, cache)
