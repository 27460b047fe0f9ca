"""
Cache Handlers for the Sentinel Dispatch MCP Server.

Provides handlers for explicit cache maintenance:
- cache_warm: Pre-populate entries from files, git changes or manifests
- cache_invalidate: Remove entries whose key matches a pattern
- cache_clear: Empty both cache tiers
"""

import json
import re
from typing import Any, TYPE_CHECKING

from mcp.types import TextContent

if TYPE_CHECKING:
    from ..runtime import DispatchRuntime


WARM_MODES = ("all", "files", "changes", "manifest")
MAX_PATTERNS = 50
MAX_PATTERN_LENGTH = 1024


def _error(message: str) -> list[TextContent]:
    return [TextContent(type="text", text=f"Error: {message}")]


async def handle_cache_warm(
    arguments: dict[str, Any],
    runtime: "DispatchRuntime",
) -> list[TextContent]:
    """
    Handle cache_warm tool call.

    Args:
        arguments: Tool arguments (mode, patterns, base_ref)
        runtime: The process runtime
    """
    mode = arguments.get("mode", "all")
    if mode not in WARM_MODES:
        return _error(f"mode must be one of {', '.join(WARM_MODES)}")

    patterns = arguments.get("patterns")
    if patterns is not None:
        if not isinstance(patterns, list) or not all(isinstance(p, str) for p in patterns):
            return _error("patterns must be a list of strings")
        if len(patterns) > MAX_PATTERNS:
            return _error(f"too many patterns ({len(patterns)} > {MAX_PATTERNS})")
        if any(len(p) > MAX_PATTERN_LENGTH or not p for p in patterns):
            return _error("patterns must be non-empty and shorter than 1024 characters")

    base_ref = arguments.get("base_ref")
    if base_ref is not None and (not isinstance(base_ref, str) or base_ref.startswith("-")):
        return _error("base_ref must be a git revision")

    warmer = runtime.warmer
    if mode == "all":
        result = await warmer.warm_all()
    elif mode == "files":
        result = (await warmer.warm_from_files(patterns)).to_dict()
    elif mode == "changes":
        result = (await warmer.warm_from_vcs_changes(base_ref)).to_dict()
    else:
        result = (await warmer.warm_from_manifest()).to_dict()

    output = {"mode": mode, **result, "cache": runtime.cache.get_stats()}
    return [TextContent(type="text", text=json.dumps(output, indent=2))]


async def handle_cache_invalidate(
    arguments: dict[str, Any],
    runtime: "DispatchRuntime",
) -> list[TextContent]:
    """Handle cache_invalidate tool call."""
    pattern = arguments.get("pattern", "")
    if not pattern or not isinstance(pattern, str):
        return _error("pattern is required")

    try:
        re.compile(pattern)
    except re.error as e:
        return _error(f"invalid pattern: {e}")

    removed = await runtime.cache.invalidate(pattern)
    output = {"pattern": pattern, "removed": removed}
    return [TextContent(type="text", text=json.dumps(output, indent=2))]


async def handle_cache_clear(
    arguments: dict[str, Any],
    runtime: "DispatchRuntime",
) -> list[TextContent]:
    """Handle cache_clear tool call."""
    before = len(runtime.cache)
    await runtime.cache.clear()
    output = {"cleared": True, "memory_entries_removed": before}
    return [TextContent(type="text", text=json.dumps(output, indent=2))]
