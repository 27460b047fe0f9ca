"""
Profiling hooks for Sentinel Dispatch.

Provides a latency tracker for scheduler and cache operations and the
logging setup used by the server entry point.
"""

import logging
import sys
import time

logger = logging.getLogger(__name__)


class LatencyTracker:
    """
    Context manager to track latency for a code block.

    Usage:
        with LatencyTracker("tool:cache_warm") as tracker:
            # code to measure
            ...
        tracker.elapsed_ms
    """
    def __init__(self, phase_name: str = "operation"):
        self.phase_name = phase_name
        self.start_time: float | None = None
        self.elapsed_ms = 0.0

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.elapsed_ms = (time.perf_counter() - self.start_time) * 1000
        status = "failed" if exc_type else "ok"
        logger.info(f"[LATENCY] {self.phase_name}: {self.elapsed_ms:.1f}ms ({status})")


def enable_profiling(log_level=logging.INFO):
    """Enable log output on stderr (stdout belongs to the MCP transport)."""
    logging.basicConfig(
        level=log_level,
        stream=sys.stderr,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
