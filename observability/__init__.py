"""Logging and tracing infrastructure.

setup_logging:
    Console + rotating file handlers with a context id on every record.

setup_tracing / trace_operation:
    Optional Logfire spans around pipeline steps and webhook deliveries.
"""

from observability.logging import clear_context, mask_phone, set_run_context, setup_logging
from observability.tracing import TracingContext, setup_tracing, trace_operation

__all__ = [
    "setup_logging",
    "set_run_context",
    "clear_context",
    "mask_phone",
    "setup_tracing",
    "trace_operation",
    "TracingContext",
]
