"""Store module for holding desired and observed state of objects."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum
from typing import TypeVar

from helm_operator.manifest import NamedResource, ObjectManifest

T = TypeVar("T", bound=ObjectManifest)


class StoreEvent(str, Enum):
    """Enum for store events."""

    OBJECT_ADDED = "object_added"
    OBJECT_UPDATED = "object_updated"
    STATUS_UPDATED = "status_updated"
    OBJECT_DELETED = "object_deleted"


class Store(ABC):
    """Abstract base class for the declarative object store with listener support.

    Objects returned by the store are copies; changes are persisted only by
    writing them back with `update` or `update_status`.
    """

    @abstractmethod
    async def get(self, resource_id: NamedResource, cls: type[T]) -> T | None:
        """Retrieve an object by resource identity and type."""

    @abstractmethod
    async def list_objects(
        self,
        cls: type[T],
        namespace: str | None = None,
        labels: dict[str, str] | None = None,
    ) -> list[T]:
        """List objects of a type, optionally filtered by namespace and labels."""

    @abstractmethod
    async def create(self, obj: T) -> T:
        """Add a new object to the store.

        Raises ConflictError if an object with the same identity exists.
        """

    @abstractmethod
    async def update(self, obj: T) -> T:
        """Write the metadata and spec of an object.

        The status of the stored object is left untouched. Raises
        ObjectNotFoundError if the object does not exist and ConflictError if
        the object's resource version is stale.
        """

    @abstractmethod
    async def update_status(self, obj: T) -> T:
        """Write only the status of an object, with the same checks as `update`.

        Status writes notify STATUS_UPDATED listeners rather than OBJECT_UPDATED
        listeners, so a controller recording progress does not retrigger itself.
        """

    @abstractmethod
    async def delete(self, resource_id: NamedResource) -> None:
        """Request deletion of an object.

        An object with pending finalizers is marked with a deletion timestamp and
        removed once the last finalizer is removed. Deleting a missing object is
        a no-op.
        """

    @abstractmethod
    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[NamedResource, ObjectManifest], None],
        flush: bool = False,
    ) -> Callable[[], None]:
        """Register a callback for a specific event.

        When `flush` is set the callback is invoked for every existing object
        as if it had just been added. Returns a callable that removes the
        listener.
        """
