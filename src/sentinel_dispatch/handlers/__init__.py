"""
Request Handlers for the Sentinel Dispatch MCP Server.

This package contains the tool handlers used by server.py:
- status: Scheduler and cache statistics (dispatch_status)
- cache: Cache warm-up and busting (cache_warm, cache_invalidate, cache_clear)
"""

from .cache import (
    handle_cache_warm,
    handle_cache_invalidate,
    handle_cache_clear,
)
from .status import handle_dispatch_status

__all__ = [
    # Status handlers
    "handle_dispatch_status",
    # Cache handlers
    "handle_cache_warm",
    "handle_cache_invalidate",
    "handle_cache_clear",
]
