"""
Pytest configuration and fixtures for Sentinel Dispatch tests.
"""

import tempfile
from pathlib import Path
from typing import AsyncGenerator, Callable, Generator

import pytest
import pytest_asyncio

from sentinel_dispatch.cache import TieredCache
from sentinel_dispatch.config import (
    CacheConfig,
    DispatchConfig,
    LLMConfig,
    ProviderConfig,
    SchedulerConfig,
    WarmerConfig,
)
from sentinel_dispatch.rate_limiter import ProviderScheduler
from sentinel_dispatch.runtime import DispatchRuntime


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def cache_config(temp_dir: Path) -> CacheConfig:
    """Cache configuration pointing at a throwaway directory."""
    return CacheConfig(
        ttl_seconds=3600,
        max_size=100,
        cache_dir=temp_dir / "cache",
        enabled=True,
    )


@pytest_asyncio.fixture
async def cache(cache_config: CacheConfig) -> AsyncGenerator[TieredCache, None]:
    """An initialized two-tier cache."""
    cache = TieredCache(cache_config)
    await cache.initialize()
    yield cache
    await cache.close()


@pytest.fixture
def memory_cache() -> TieredCache:
    """A cache with no durable tier."""
    return TieredCache(CacheConfig(ttl_seconds=3600, max_size=100, enabled=True, durable=False))


@pytest_asyncio.fixture
async def make_scheduler() -> AsyncGenerator[Callable[..., ProviderScheduler], None]:
    """
    Factory for schedulers with per-test provider policies.

    Usage:
        scheduler = make_scheduler(ProviderConfig("fast", requests_per_second=100))
    """
    created: list[ProviderScheduler] = []

    def factory(*providers: ProviderConfig, **kwargs) -> ProviderScheduler:
        config = SchedulerConfig(
            default_rps=100,
            default_base_delay=0.01,
            providers={p.id: p for p in providers},
        )
        scheduler = ProviderScheduler(config, **kwargs)
        created.append(scheduler)
        return scheduler

    yield factory

    for scheduler in created:
        await scheduler.close()


@pytest.fixture
def sample_project(temp_dir: Path) -> Path:
    """Create a small project tree for cache warming."""
    root = temp_dir / "project"
    (root / "src").mkdir(parents=True)
    (root / "node_modules" / "left-pad").mkdir(parents=True)

    (root / "src" / "app.py").write_text('''
def handler(event):
    """Entry point."""
    return {"status": 200, "body": event}
''')
    (root / "src" / "index.js").write_text('''
const express = require("express");
module.exports = express();
''')
    (root / "node_modules" / "left-pad" / "index.js").write_text("module.exports = () => {};\n")
    (root / "README.md").write_text("# Sample\n")

    return root


@pytest.fixture
def dispatch_config(temp_dir: Path, sample_project: Path) -> DispatchConfig:
    """A complete configuration isolated from the environment."""
    return DispatchConfig(
        scheduler=SchedulerConfig(default_rps=100, default_base_delay=0.01),
        cache=CacheConfig(ttl_seconds=3600, max_size=100, cache_dir=temp_dir / "cache", enabled=True),
        warmer=WarmerConfig(root=sample_project, max_file_size=100_000),
        llm=LLMConfig(api_key="test-api-key", api_base_url=None, model="test-model"),
    )


@pytest_asyncio.fixture
async def runtime(dispatch_config: DispatchConfig) -> AsyncGenerator[DispatchRuntime, None]:
    """An initialized runtime."""
    runtime = DispatchRuntime(dispatch_config)
    await runtime.initialize()
    yield runtime
    await runtime.close()
