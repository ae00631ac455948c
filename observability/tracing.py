"""Optional Logfire tracing.

When enabled, pipeline steps and webhook deliveries are wrapped in Logfire
spans and pydantic-ai draft generation is instrumented automatically. When
disabled, or when logfire is not installed, `trace_operation` is a no-op
that still logs the step duration at DEBUG.

Enable via configuration:
    ENABLE_LOGFIRE=true
    LOGFIRE_TOKEN=your-token  # optional, for the cloud dashboard
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator

logger = logging.getLogger(__name__)

SERVICE_NAME = "dorfkoenig"


@dataclass
class TracingContext:
    """Process-wide tracing state."""

    enabled: bool = False
    service_name: str = SERVICE_NAME
    configured: bool = False


_context = TracingContext()


def setup_tracing(enabled: bool = False, service_name: str = SERVICE_NAME, token: str = "") -> TracingContext:
    """Configure Logfire and instrument pydantic-ai.

    Returns:
        The tracing context; `configured` is False if setup was skipped
    """
    _context.enabled = enabled
    _context.service_name = service_name
    _context.configured = False

    if not enabled:
        logger.debug("Tracing disabled")
        return _context

    try:
        import logfire
    except ImportError:
        logger.warning("Logfire not installed (pip install '.[tracing]'); tracing disabled")
        _context.enabled = False
        return _context

    try:
        logfire.configure(service_name=service_name, token=token or None)
        logfire.instrument_pydantic_ai()
    except Exception as e:
        logger.error("Failed to configure Logfire | error=%s", e)
        _context.enabled = False
        return _context

    _context.configured = True
    logger.info("Logfire tracing enabled | service=%s", service_name)
    return _context


@contextmanager
def trace_operation(name: str, attributes: dict[str, Any] | None = None) -> Iterator[dict[str, Any]]:
    """Wrap a block in a span.

    Yields a dict; keys added to it inside the block are set on the span
    when the block exits.
    """
    start = time.monotonic()
    result_attrs: dict[str, Any] = {}
    try:
        if _context.enabled and _context.configured:
            import logfire

            with logfire.span(name, **(attributes or {})) as span:
                yield result_attrs
                for key, value in result_attrs.items():
                    span.set_attribute(key, value)
        else:
            yield result_attrs
    finally:
        logger.debug("Operation done | name=%s duration=%.2fs", name, time.monotonic() - start)
