"""Shared pieces of the reconciler contract.

A reconciler is handed the identity of one object, converges it one step
toward its desired state and returns a `ReconcileResult` saying when it wants
to be called again.
"""

import datetime
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import ClassVar, TypeVar

from .backoff import ClassifiedError
from .manifest import NamedResource, ObjectManifest
from .retry import with_conflict_retry
from .store import Store

__all__ = [
    "ReconcileResult",
    "Reconciler",
    "failure_requeue",
]

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T", bound=ObjectManifest)


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of a single reconcile."""

    requeue_after: datetime.timedelta | None = None
    """Delay before the object is reconciled again, None for no requeue."""


class Reconciler(ABC):
    """Converges objects of one kind."""

    kind: ClassVar[str]

    @abstractmethod
    async def reconcile(self, resource_id: NamedResource) -> ReconcileResult:
        """Converge the object one step and return a requeue hint."""


def failure_requeue(
    classified: ClassifiedError, ceiling: datetime.timedelta
) -> datetime.timedelta:
    """Return the requeue delay after a failed operation.

    Retryable errors come back after their backoff delay, bounded by
    `ceiling`; all others wait the full `ceiling`.
    """
    if classified.retryable:
        return min(classified.retry_after, ceiling)
    return ceiling


class ObjectWriter:
    """Writes an object's metadata and status through the conflict retry loop."""

    def __init__(self, store: Store, cls: type[T], max_attempts: int) -> None:
        self._store = store
        self._cls = cls
        self._max_attempts = max_attempts

    async def update_status(
        self, resource_id: NamedResource, mutate: Callable[[T], None]
    ) -> T | None:
        """Apply `mutate` to the latest copy of the object and write its status."""

        async def read() -> T | None:
            return await self._store.get(resource_id, self._cls)

        return await with_conflict_retry(
            read, mutate, self._store.update_status, self._max_attempts
        )

    async def add_finalizer(self, resource_id: NamedResource, finalizer: str) -> None:
        """Add the finalizer to the object if missing."""

        def add(obj: T) -> None:
            if finalizer not in obj.finalizers:
                obj.finalizers.append(finalizer)

        async def read() -> T | None:
            return await self._store.get(resource_id, self._cls)

        await with_conflict_retry(read, add, self._store.update, self._max_attempts)
        _LOGGER.debug("Added finalizer %s to %s", finalizer, resource_id)

    async def remove_finalizer(
        self, resource_id: NamedResource, finalizer: str
    ) -> None:
        """Remove the finalizer from the object, letting deletion complete."""

        def remove(obj: T) -> None:
            if finalizer in obj.finalizers:
                obj.finalizers.remove(finalizer)

        async def read() -> T | None:
            return await self._store.get(resource_id, self._cls)

        await with_conflict_retry(read, remove, self._store.update, self._max_attempts)
        _LOGGER.debug("Removed finalizer %s from %s", finalizer, resource_id)
