"""
Request Log Pipeline Utilities
Shared utilities for logging, request identifiers and latency tracking.
"""

import time
import uuid

import orjson
import structlog

# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.add_log_level,
        structlog.processors.JSONRenderer(serializer=orjson.dumps)
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.BytesLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


def generate_request_id() -> str:
    """Generate unique request ID."""
    return str(uuid.uuid4())


class LatencyTracker:
    """Track request latency."""

    def __init__(self):
        self.start_time = None

    def start(self):
        """Start timing."""
        self.start_time = time.perf_counter()

    def elapsed_seconds(self) -> float:
        """Get elapsed time in seconds."""
        if self.start_time is None:
            return 0.0
        return time.perf_counter() - self.start_time
