"""
Status Handler for the Sentinel Dispatch MCP Server.

Reports provider queue/breaker state and cache statistics for the
status and benchmark commands.
"""

import json
from typing import Any, TYPE_CHECKING

from mcp.types import TextContent

if TYPE_CHECKING:
    from ..runtime import DispatchRuntime


async def handle_dispatch_status(
    arguments: dict[str, Any],
    runtime: "DispatchRuntime",
) -> list[TextContent]:
    """Handle dispatch_status tool call."""
    provider = arguments.get("provider") or None
    if provider is not None and not isinstance(provider, str):
        return [TextContent(type="text", text="Error: provider must be a string")]

    status = await runtime.get_status(provider)

    config = runtime.config
    status["configuration"] = {
        "default_rps": config.scheduler.default_rps,
        "cache_dir": str(config.cache.cache_dir),
        "cache_ttl_seconds": config.cache.ttl_seconds,
        "cache_max_size": config.cache.max_size,
        "llm_provider": config.llm.provider,
        "llm_model": config.llm.model,
        "api_key_set": bool(config.llm.api_key),
    }

    warnings = []
    for provider_id, stats in _iter_provider_stats(status["scheduler"], provider):
        if stats.get("circuit_state") == "open":
            warnings.append(f"Circuit breaker open for {provider_id}")
    if not status["cache"]["enabled"]:
        warnings.append("Result cache disabled")
    elif not status["cache"]["durable_enabled"]:
        warnings.append("Durable cache tier unavailable (memory-only)")
    if warnings:
        status["warnings"] = warnings

    errors = config.validate()
    if errors:
        status["errors"] = errors

    return [TextContent(type="text", text=json.dumps(status, indent=2))]


def _iter_provider_stats(scheduler_stats: dict[str, Any], provider: str | None):
    if provider is not None:
        if scheduler_stats:
            yield provider, scheduler_stats
        return
    yield from scheduler_stats.items()
