"""
Observability helpers: structured logging with automatic trace correlation.

Engine code calls ``set_trace_context`` at execution and node boundaries;
everything else just uses ``logging.getLogger(__name__)``.
"""

from flowcore.observability.logging import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)

__all__ = [
    "configure_logging",
    "get_trace_context",
    "set_trace_context",
    "clear_trace_context",
]
