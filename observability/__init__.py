"""Observability infrastructure for logging and tracing.

setup_logging:
    Console + rotating file logging, text or JSON, with batch context.

setup_tracing:
    Initialize optional Logfire tracing.

trace_operation:
    Context manager for custom span creation.

Example:
    >>> from observability import setup_tracing, trace_operation
    >>> setup_tracing(enabled=True, service_name="courier")
    >>> with trace_operation("compose_batch"):
    ...     pass
"""

from observability.logging import setup_logging, set_batch_context, clear_context
from observability.tracing import setup_tracing, trace_operation, TracingContext

__all__ = [
    "setup_logging",
    "set_batch_context",
    "clear_context",
    "setup_tracing",
    "trace_operation",
    "TracingContext",
]
