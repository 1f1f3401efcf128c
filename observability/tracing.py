"""Optional Logfire spans around batch composition and delivery.

A composition is one span carrying its trigger, channel and outcome, so a
slow SMTP relay or a push endpoint returning 5xx shows up on a timeline
next to the aiohttp client calls it made.

Tracing is off unless ENABLE_LOGFIRE=true and the ``tracing`` extra is
installed (``pip install courier[tracing]``). When it is off,
``trace_operation`` still yields an attribute dict so callers never branch.

Usage:
    >>> setup_tracing(enabled=True, service_name="courier")
    >>> with trace_operation("compose_batch", {"trigger": "manual"}) as attrs:
    ...     attrs["sent_count"] = 6
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Generator

logger = logging.getLogger(__name__)


@dataclass
class TracingContext:
    """Process-wide tracing state."""
    enabled: bool = False
    service_name: str = "courier"
    configured: bool = False

    @property
    def active(self) -> bool:
        return self.enabled and self.configured


_context = TracingContext()


def setup_tracing(
    enabled: bool = False,
    service_name: str = "courier",
    token: str = "",
) -> TracingContext:
    """Configure Logfire and instrument outgoing aiohttp requests.

    Failure to configure is logged and leaves tracing off; it never stops
    the service from starting.
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
        logger.warning("ENABLE_LOGFIRE is set but logfire is not installed; tracing off")
        _context.enabled = False
        return _context

    try:
        logfire.configure(service_name=service_name, token=token or None)
        logfire.instrument_aiohttp_client()
    except Exception as e:
        logger.error("Logfire configuration failed: %s", e)
        _context.enabled = False
        return _context

    _context.configured = True
    logger.info("Logfire tracing enabled | service=%s", service_name)
    return _context


@contextmanager
def trace_operation(
    name: str,
    attributes: dict[str, Any] | None = None,
) -> Generator[dict[str, Any], None, None]:
    """Wrap a block in a span.

    Yields a dict; whatever the block puts in it is attached to the span
    when the block ends. An exception escaping the block is recorded as
    ``error`` and re-raised.
    """
    extra: dict[str, Any] = {}
    started = time.monotonic()
    outcome = "ok"

    try:
        if _context.active:
            import logfire

            with logfire.span(name, **(attributes or {})) as span:
                try:
                    yield extra
                except BaseException as e:
                    extra["error"] = type(e).__name__
                    raise
                finally:
                    for key, value in extra.items():
                        span.set_attribute(key, value)
        else:
            yield extra
    except BaseException as e:
        outcome = type(e).__name__
        raise
    finally:
        logger.debug(
            "Span %s finished in %.3fs | outcome=%s %s",
            name, time.monotonic() - started, outcome,
            " ".join(f"{k}={v}" for k, v in extra.items()),
        )
