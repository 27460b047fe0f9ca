#!/usr/bin/env python3
"""
Sentinel Dispatch MCP Server

Exposes the provider scheduler and result cache of the code-review tool to
editors and the CLI over MCP stdio.

Tools provided:
- dispatch_status: Provider queue, circuit breaker and cache statistics
- cache_warm: Pre-populate the cache (all, files, changes, manifest)
- cache_invalidate: Remove cache entries whose key matches a pattern
- cache_clear: Empty both cache tiers
"""

import asyncio
import logging
import signal
import sys
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import Tool, TextContent

from .handlers import (
    handle_cache_clear,
    handle_cache_invalidate,
    handle_cache_warm,
    handle_dispatch_status,
)
from .handlers.cache import WARM_MODES
from .profiling import LatencyTracker, enable_profiling
from .runtime import DispatchRuntime

logger = logging.getLogger(__name__)

SERVER_NAME = "sentinel-dispatch"

TOOL_HANDLERS = {
    "dispatch_status": handle_dispatch_status,
    "cache_warm": handle_cache_warm,
    "cache_invalidate": handle_cache_invalidate,
    "cache_clear": handle_cache_clear,
}


def list_tool_definitions() -> list[Tool]:
    """Tool schemas advertised to MCP clients."""
    return [
        Tool(
            name="dispatch_status",
            description=(
                "Show per-provider queue size, pacing, circuit breaker state and "
                "result cache statistics (hits, misses, size, durable tier)."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "provider": {
                        "type": "string",
                        "description": "Limit scheduler stats to one provider id (e.g. 'openai').",
                    },
                },
            },
        ),
        Tool(
            name="cache_warm",
            description=(
                "Pre-populate the result cache. 'files' warms files matching glob patterns, "
                "'changes' warms files changed against a git base ref, 'manifest' seeds "
                "dependency markers from package.json/requirements.txt, 'all' runs every mode."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "mode": {
                        "type": "string",
                        "enum": list(WARM_MODES),
                        "default": "all",
                    },
                    "patterns": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Glob patterns relative to the project root (mode 'files').",
                    },
                    "base_ref": {
                        "type": "string",
                        "description": "Git revision to diff against (mode 'changes'). Default: main.",
                    },
                },
            },
        ),
        Tool(
            name="cache_invalidate",
            description="Remove every cache entry whose key matches a regular expression.",
            inputSchema={
                "type": "object",
                "properties": {
                    "pattern": {"type": "string", "description": "Regex searched within cache keys."},
                },
                "required": ["pattern"],
            },
        ),
        Tool(
            name="cache_clear",
            description="Empty both cache tiers and reset hit/miss counters.",
            inputSchema={"type": "object", "properties": {}},
        ),
    ]


async def dispatch_tool(
    name: str,
    arguments: dict[str, Any] | None,
    runtime: DispatchRuntime,
) -> list[TextContent]:
    """Route a tool call to its handler, reporting failures as text."""
    handler = TOOL_HANDLERS.get(name)
    if handler is None:
        return [TextContent(type="text", text=f"Unknown tool: {name}")]

    try:
        with LatencyTracker(f"tool:{name}"):
            await runtime.initialize()
            return await handler(arguments or {}, runtime)
    except Exception as e:
        logger.error(f"Tool {name} failed: {type(e).__name__}: {e}")
        return [TextContent(type="text", text=f"Error: {str(e)}")]


def create_server(runtime: DispatchRuntime) -> Server:
    """Create and configure the MCP server."""
    server = Server(SERVER_NAME)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """List available tools."""
        return list_tool_definitions()

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        """Handle tool calls."""
        return await dispatch_tool(name, arguments, runtime)

    return server


async def run_server(runtime: DispatchRuntime | None = None):
    """Run the MCP server with graceful shutdown."""
    runtime = runtime or DispatchRuntime.from_env()
    shutdown_event = asyncio.Event()

    server = create_server(runtime)

    loop = asyncio.get_running_loop()

    def handle_shutdown(sig):
        logger.info(f"Received {sig.name}, shutting down gracefully...")
        shutdown_event.set()

    # Register signal handlers (Unix only)
    if sys.platform != "win32":
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: handle_shutdown(s))

    await runtime.initialize()

    try:
        async with stdio_server() as (read_stream, write_stream):
            server_task = asyncio.create_task(
                server.run(
                    read_stream,
                    write_stream,
                    server.create_initialization_options(),
                )
            )

            # Wait for either server completion or shutdown signal
            done, pending = await asyncio.wait(
                [server_task, asyncio.create_task(shutdown_event.wait())],
                return_when=asyncio.FIRST_COMPLETED,
            )

            for task in pending:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    finally:
        await runtime.close()


def main():
    """Main entry point."""
    enable_profiling()
    try:
        asyncio.run(run_server())
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logger.error(f"Server error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
