"""
Cache warming for Sentinel Dispatch

Pre-populates the result cache so later lookups are warm hits:
- Source files matched by glob patterns
- Files changed relative to a git base ref
- Dependencies declared in package.json / requirements.txt

Warming never overwrites an existing entry and is only run on demand.
"""

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import aiofiles

from .cache import TieredCache
from .config import WarmerConfig
from .profiling import LatencyTracker

logger = logging.getLogger(__name__)

WARMUP_TAG = "warmup"
DEPENDENCY_TAG = "dependency"

_REQUIREMENT_PIN = re.compile(r"^\s*([A-Za-z0-9][A-Za-z0-9._\-\[\],]*)\s*==\s*([^\s;#]+)")


@dataclass
class WarmStats:
    """Outcome of a warming pass."""
    warmed: int = 0
    skipped: int = 0
    errors: int = 0

    def merge(self, other: "WarmStats") -> "WarmStats":
        return WarmStats(
            warmed=self.warmed + other.warmed,
            skipped=self.skipped + other.skipped,
            errors=self.errors + other.errors,
        )

    def to_dict(self) -> dict[str, Any]:
        return {"warmed": self.warmed, "skipped": self.skipped, "errors": self.errors}


def dependency_key(name: str, version: str) -> str:
    """Cache key used for dependency vulnerability lookups."""
    return f"dep:{name}@{version}"


class CacheWarmer:
    """
    Batch driver that inserts placeholder markers into the cache.

    Markers use the same keys analyzers compute (TieredCache.generate_key),
    so a warmed file is recognized regardless of who looks it up later.
    """

    def __init__(self, cache: TieredCache, config: WarmerConfig | None = None):
        self.cache = cache
        self.config = config or WarmerConfig()
        self.root = Path(self.config.root)

    def _is_ignored(self, path: Path) -> bool:
        try:
            parts = path.relative_to(self.root).parts
        except ValueError:
            parts = path.parts
        return any(part in self.config.ignored_directories for part in parts[:-1])

    def _relative(self, path: Path) -> str:
        try:
            return path.relative_to(self.root).as_posix()
        except ValueError:
            return path.as_posix()

    async def _insert_if_absent(self, key: str, marker: dict[str, Any], tag: str, source_path: str = "") -> bool:
        if await self.cache.get(key) is not None:
            return False
        self.cache.set(key, marker, tag, source_path)
        return True

    async def _warm_file(self, path: Path, stats: WarmStats) -> None:
        """Warm a single file, recording the outcome in stats."""
        try:
            size = path.stat().st_size
            if size > self.config.max_file_size:
                stats.skipped += 1
                return

            async with aiofiles.open(path, mode="r", encoding="utf-8", errors="replace") as f:
                content = await f.read()
        except OSError as e:
            logger.debug(f"[CacheWarmer] Failed to read {path}: {e}")
            stats.errors += 1
            return

        relative = self._relative(path)
        key = self.cache.generate_key(relative, content, WARMUP_TAG)
        marker = {"warmed": True, "file": relative, "timestamp": time.time()}

        if await self._insert_if_absent(key, marker, WARMUP_TAG, relative):
            stats.warmed += 1
        else:
            stats.skipped += 1

    async def warm_from_files(self, patterns: list[str] | None = None) -> WarmStats:
        """
        Warm the cache from files matching glob patterns.

        Args:
            patterns: Globs relative to the project root (default: config.patterns)

        Returns:
            WarmStats for this pass
        """
        stats = WarmStats()
        seen: set[Path] = set()

        logger.info("[CacheWarmer] Starting cache warming...")

        for pattern in patterns or self.config.patterns:
            try:
                matches = sorted(p for p in self.root.glob(pattern) if p.is_file())
            except (ValueError, NotImplementedError, OSError) as e:
                logger.warning(f"[CacheWarmer] Pattern error for {pattern!r}: {e}")
                continue

            for path in matches:
                if path in seen or self._is_ignored(path):
                    continue
                seen.add(path)
                await self._warm_file(path, stats)

        logger.info(
            f"[CacheWarmer] Warming complete: {stats.warmed} entries warmed, "
            f"{stats.skipped} skipped, {stats.errors} errors"
        )
        return stats

    async def _git_changed_files(self, base_ref: str) -> list[str]:
        # --relative: paths relative to root and limited to files under it
        process = await asyncio.create_subprocess_exec(
            "git", "diff", "--name-only", "--relative", base_ref, "--",
            cwd=str(self.root),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.config.git_timeout_seconds
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise

        if process.returncode != 0:
            raise RuntimeError(stderr.decode("utf-8", errors="replace").strip() or "git diff failed")

        return [line.strip() for line in stdout.decode("utf-8", errors="replace").splitlines() if line.strip()]

    async def warm_from_vcs_changes(self, base_ref: str | None = None) -> WarmStats:
        """
        Warm only the files that differ from a git base ref.

        Files deleted since the base ref count as skipped. A failing git
        invocation is logged and yields empty stats.
        """
        base_ref = base_ref or self.config.base_ref
        stats = WarmStats()

        logger.info(f"[CacheWarmer] Warming cache from git changes against {base_ref}...")

        try:
            changed = await self._git_changed_files(base_ref)
        except (OSError, RuntimeError, asyncio.TimeoutError) as e:
            logger.warning(f"[CacheWarmer] Git warming failed: {e}")
            return stats

        for name in changed:
            path = self.root / name
            if not path.is_file() or self._is_ignored(path):
                stats.skipped += 1
                continue
            await self._warm_file(path, stats)

        logger.info(f"[CacheWarmer] Git warming complete: {stats.warmed} entries")
        return stats

    async def _read_dependencies(self) -> list[tuple[str, str]]:
        dependencies: list[tuple[str, str]] = []

        package_json = self.root / "package.json"
        if package_json.is_file():
            async with aiofiles.open(package_json, mode="r", encoding="utf-8") as f:
                pkg = json.loads(await f.read())
            if not isinstance(pkg, dict):
                raise ValueError("package.json must contain a JSON object")
            for section in ("dependencies", "devDependencies"):
                declared = pkg.get(section) or {}
                if not isinstance(declared, dict):
                    logger.debug(f"[CacheWarmer] Ignoring malformed {section} in package.json")
                    continue
                for name, version in declared.items():
                    dependencies.append((name, str(version)))

        requirements = self.root / "requirements.txt"
        if requirements.is_file():
            async with aiofiles.open(requirements, mode="r", encoding="utf-8") as f:
                for line in (await f.read()).splitlines():
                    match = _REQUIREMENT_PIN.match(line)
                    if match:
                        dependencies.append((match.group(1), match.group(2)))

        return dependencies

    async def warm_from_manifest(self) -> WarmStats:
        """Insert one marker per declared dependency (name@version)."""
        stats = WarmStats()

        logger.info("[CacheWarmer] Checking package dependencies for known vulnerabilities...")

        try:
            dependencies = await self._read_dependencies()
        except (OSError, ValueError) as e:
            logger.warning(f"[CacheWarmer] Package warming failed: {e}")
            stats.errors += 1
            return stats

        for name, version in dependencies:
            marker = {"package": name, "version": version, "checked": time.time()}
            if await self._insert_if_absent(dependency_key(name, version), marker, DEPENDENCY_TAG):
                stats.warmed += 1
            else:
                stats.skipped += 1

        logger.info(f"[CacheWarmer] Package warming complete: {stats.warmed} entries")
        return stats

    async def warm_all(self) -> dict[str, Any]:
        """Run manifest, file and git warming; return combined statistics."""
        with LatencyTracker("cache_warm_all") as tracker:
            stats = await self.warm_from_manifest()
            stats = stats.merge(await self.warm_from_files())
            stats = stats.merge(await self.warm_from_vcs_changes())

        logger.info(f"[CacheWarmer] Full warming completed in {tracker.elapsed_ms:.0f}ms")
        return {**stats.to_dict(), "duration": tracker.elapsed_ms / 1000}
