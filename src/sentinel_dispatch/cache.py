"""
Tiered result cache for Sentinel Dispatch

Memoizes expensive analysis results across runs.

Features:
- In-memory fast tier with LRU eviction (OrderedDict in access order)
- SQLite durable tier, written fire-and-forget
- Lazy TTL expiry on read
- Hit/miss accounting
- Degrades to memory-only or pass-through when the durable tier is unavailable
"""

import asyncio
import hashlib
import inspect
import logging
import re
import time
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Coroutine

from .cache_store import CacheEntry, DurableCacheStore
from .config import CacheConfig
from .errors import CacheReadCorruptionError, CacheTierUnavailableError

logger = logging.getLogger(__name__)

ComputeFn = Callable[[], Awaitable[Any] | Any]


class TieredCache:
    """
    Two-tier key-value cache for analysis results.

    The fast tier is authoritative for the lifetime of the process; the
    durable tier is an optimization, and its failures never reach callers.
    None is the "not found" sentinel, so a None value is never a hit.
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        store: DurableCacheStore | None = None,
    ):
        self.config = config or CacheConfig()
        self.ttl_seconds = self.config.ttl_seconds
        self.max_size = max(1, self.config.max_size)
        self.enabled = self.config.enabled

        if store is None and self.config.durable:
            store = DurableCacheStore(self.config.db_path)
        self._store = store
        self._durable_enabled = False

        self._memory: OrderedDict[str, CacheEntry] = OrderedDict()
        self._pending_writes: set[asyncio.Task] = set()
        self._hits = 0
        self._misses = 0

    @property
    def durable_enabled(self) -> bool:
        return self._durable_enabled

    async def initialize(self) -> None:
        """Open the durable tier, downgrading instead of failing."""
        if not self.enabled or self._store is None or self._durable_enabled:
            return

        try:
            self._store.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"[Cache] Failed to create cache directory, caching disabled: {e}")
            self.enabled = False
            return

        try:
            await self._store.initialize()
        except CacheTierUnavailableError as e:
            logger.warning(f"[Cache] Durable tier unavailable, using memory-only mode: {e}")
            return

        self._durable_enabled = True

    async def close(self) -> None:
        """Flush pending durable writes and close the durable tier."""
        await self.flush()
        if self._store is not None:
            await self._store.close()
        self._durable_enabled = False

    async def flush(self) -> None:
        """Wait for every scheduled durable write to finish."""
        while self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    @staticmethod
    def generate_key(source_path: str, content: str, analyzer_tag: str = "") -> str:
        """
        Derive a deterministic cache key.

        Identical content under the same analyzer and path always maps to the
        same key, whichever call site computes it.
        """
        content_hash = hashlib.sha256(
            content.encode("utf-8", errors="replace")
        ).hexdigest()[:32]
        path_hash = hashlib.sha256(
            source_path.encode("utf-8", errors="replace")
        ).hexdigest()[:8]
        return f"{analyzer_tag}_{path_hash}_{content_hash}"

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        """Run a durable-tier operation in the background."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.debug("[Cache] No running event loop, durable write skipped")
            return

        task = loop.create_task(coro)
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def _durable_put(self, entry: CacheEntry) -> None:
        try:
            await self._store.put(entry)
        except Exception as e:
            logger.warning(f"[Cache] Failed to write cache entry to disk: {e}")

    async def _durable_delete(self, key: str) -> None:
        try:
            await self._store.delete(key)
        except Exception as e:
            logger.debug(f"[Cache] Failed to delete cache entry from disk: {e}")

    def _evict_lru(self) -> None:
        """Evict the least recently accessed entry from both tiers."""
        if not self._memory:
            return
        oldest_key, _ = self._memory.popitem(last=False)
        logger.debug(f"[Cache] Evicted {oldest_key}")
        if self._durable_enabled:
            self._spawn(self._durable_delete(oldest_key))

    def _insert_memory(self, entry: CacheEntry) -> None:
        if entry.key in self._memory:
            self._memory[entry.key] = entry
            self._memory.move_to_end(entry.key)
            return

        if len(self._memory) >= self.max_size:
            self._evict_lru()
        self._memory[entry.key] = entry

    def _drop(self, key: str) -> None:
        self._memory.pop(key, None)
        if self._durable_enabled:
            self._spawn(self._durable_delete(key))

    async def get(self, key: str) -> Any | None:
        """
        Get a cached value.

        Args:
            key: Cache key (see generate_key)

        Returns:
            The cached value, or None on miss or expiry
        """
        if not self.enabled:
            self._misses += 1
            return None

        now = time.time()
        entry = self._memory.get(key)

        if entry is not None:
            if entry.is_expired(self.ttl_seconds, now):
                self._drop(key)
                self._misses += 1
                return None

            entry.accessed_at = now
            self._memory.move_to_end(key)
            self._hits += 1
            return entry.value

        if not self._durable_enabled:
            self._misses += 1
            return None

        try:
            entry = await self._store.get(key)
        except CacheReadCorruptionError as e:
            logger.warning(f"[Cache] {e}, discarding")
            await self._durable_delete(key)
            self._misses += 1
            return None
        except Exception as e:
            logger.warning(f"[Cache] Failed to read cache entry from disk: {e}")
            self._misses += 1
            return None

        # A set() may have landed while the durable read was in flight
        if key in self._memory:
            return await self.get(key)

        if entry is None:
            self._misses += 1
            return None

        if entry.is_expired(self.ttl_seconds, now):
            await self._durable_delete(key)
            self._misses += 1
            return None

        entry.accessed_at = now
        self._insert_memory(entry)
        self._hits += 1
        return entry.value

    def set(
        self,
        key: str,
        value: Any,
        analyzer_tag: str = "",
        source_path: str = "",
    ) -> None:
        """
        Store a value.

        The fast tier is updated before returning; the durable write is
        scheduled in the background and may still be pending afterwards.

        The durable tier stores JSON, so a value hydrated in a later run comes
        back in its JSON form: tuples as lists, non-string dict keys as strings.
        Values json.dumps cannot encode stay in the fast tier only.
        """
        if not self.enabled:
            return

        entry = CacheEntry(
            key=key,
            value=value,
            created_at=time.time(),
            analyzer_tag=analyzer_tag,
            source_path=source_path,
        )
        self._insert_memory(entry)

        if self._durable_enabled:
            self._spawn(self._durable_put(entry))

    async def get_or_compute(
        self,
        key: str,
        compute_fn: ComputeFn,
        analyzer_tag: str = "",
        source_path: str = "",
    ) -> Any:
        """
        Return the cached value for key, computing and storing it on a miss.

        Args:
            key: Cache key
            compute_fn: Zero-argument callable returning a value or an awaitable

        Returns:
            The cached or freshly computed value
        """
        if not self.enabled:
            return await _call(compute_fn)

        cached = await self.get(key)
        if cached is not None:
            return cached

        result = await _call(compute_fn)
        self.set(key, result, analyzer_tag, source_path)
        return result

    async def delete(self, key: str) -> bool:
        """Remove a single key from both tiers."""
        removed = self._memory.pop(key, None) is not None
        if self._durable_enabled:
            await self.flush()
            try:
                removed = await self._store.delete(key) or removed
            except Exception as e:
                logger.warning(f"[Cache] Failed to delete cache entry from disk: {e}")
        return removed

    async def invalidate(self, pattern: str) -> int:
        """
        Remove every key matching a regular expression from both tiers.

        Args:
            pattern: Regex searched within each key

        Returns:
            Number of distinct keys removed
        """
        regex = re.compile(pattern)

        removed = {key for key in self._memory if regex.search(key)}
        for key in removed:
            del self._memory[key]

        if self._durable_enabled:
            await self.flush()
            try:
                durable_keys = [k for k in await self._store.keys() if regex.search(k)]
                await self._store.delete_many(durable_keys)
                removed.update(durable_keys)
            except Exception as e:
                logger.warning(f"[Cache] Failed to invalidate durable entries: {e}")

        if removed:
            logger.info(f"[Cache] Invalidated {len(removed)} entries matching {pattern!r}")
        return len(removed)

    async def clear(self) -> None:
        """Empty both tiers and reset hit/miss counters."""
        self._memory.clear()
        self._hits = 0
        self._misses = 0

        if self._durable_enabled:
            await self.flush()
            try:
                await self._store.clear()
            except Exception as e:
                logger.warning(f"[Cache] Failed to clear durable tier: {e}")

    async def purge_expired(self) -> int:
        """Explicitly drop every expired entry from both tiers."""
        now = time.time()
        expired = [k for k, e in self._memory.items() if e.is_expired(self.ttl_seconds, now)]
        for key in expired:
            del self._memory[key]
        purged = len(expired)

        if self._durable_enabled:
            await self.flush()
            try:
                purged = max(purged, await self._store.purge_expired(now - self.ttl_seconds))
            except Exception as e:
                logger.warning(f"[Cache] Failed to purge durable tier: {e}")

        return purged

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        total = self._hits + self._misses
        return {
            "size": len(self._memory),
            "max_size": self.max_size,
            "ttl": self.ttl_seconds,
            "hit_rate": self._hits / total if total > 0 else 0.0,
            "hits": self._hits,
            "misses": self._misses,
            "enabled": self.enabled,
            "durable_enabled": self._durable_enabled,
        }

    async def get_durable_stats(self) -> dict[str, Any]:
        """Get durable tier statistics (empty when the tier is off)."""
        if not self._durable_enabled:
            return {}
        try:
            return (await self._store.get_stats()).to_dict()
        except Exception as e:
            logger.warning(f"[Cache] Failed to read durable tier stats: {e}")
            return {}

    def __len__(self) -> int:
        return len(self._memory)

    def __contains__(self, key: str) -> bool:
        return key in self._memory


async def _call(fn: ComputeFn) -> Any:
    result = fn()
    if inspect.isawaitable(result):
        result = await result
    return result
