"""
Observability module for trace correlation and structured logging.

- Execution context propagation via ContextVar
- Structured JSON logging for production
- Human-readable logging for development
"""

from blockflow.observability.logging import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
    trace_scope,
)

__all__ = [
    "configure_logging",
    "get_trace_context",
    "set_trace_context",
    "clear_trace_context",
    "trace_scope",
]
