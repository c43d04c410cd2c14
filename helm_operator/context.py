"""Utilities for context tracing."""

import contextvars
from contextlib import contextmanager
import logging
from time import perf_counter
from typing import Generator


_LOGGER = logging.getLogger(__name__)

# No public API
__all__: list[str] = []


trace: contextvars.ContextVar[list[str]] = contextvars.ContextVar("trace")


@contextmanager
def trace_context(name: str) -> Generator[list[float], None, None]:
    """Emit debug traces around a block of work, nesting by task context.

    Yields a list that receives the elapsed time in seconds when the block
    exits, so callers can also record it as a metric.
    """
    stack = trace.get([])
    token = trace.set(stack + [name])
    label = " > ".join(stack + [name])
    elapsed: list[float] = []
    t1 = perf_counter()
    _LOGGER.debug("[Trace] > %s", label)
    try:
        yield elapsed
    finally:
        t2 = perf_counter()
        elapsed.append(t2 - t1)
        trace.reset(token)
        _LOGGER.debug("[Trace] < %s (%0.2fs)", label, (t2 - t1))
