"""Bounded optimistic concurrency retry for store writes."""

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .exceptions import ConflictError

__all__ = [
    "with_conflict_retry",
    "DEFAULT_MAX_ATTEMPTS",
]

_LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5

T = TypeVar("T")


async def with_conflict_retry(
    read: Callable[[], Awaitable[T | None]],
    mutate: Callable[[T], None],
    write: Callable[[T], Awaitable[T]],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> T | None:
    """Apply `mutate` to the latest copy of an object and write it back.

    The object is re-read before every attempt so that the mutation is always
    applied on top of the current resource version. Only conflicts are
    retried; any other error is raised immediately. Returns None if the object
    no longer exists and raises the last ConflictError once `max_attempts` is
    exhausted.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
    last_err: ConflictError | None = None
    for attempt in range(1, max_attempts + 1):
        if (obj := await read()) is None:
            return None
        mutate(obj)
        try:
            return await write(obj)
        except ConflictError as err:
            _LOGGER.debug("Conflict on attempt %d/%d: %s", attempt, max_attempts, err)
            last_err = err
    assert last_err is not None
    raise last_err
