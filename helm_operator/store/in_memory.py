"""Module for in memory object store."""

import copy
import dataclasses
import datetime
from collections import defaultdict
from collections.abc import Callable
from typing import Any, DefaultDict, TypeVar

import logging

from helm_operator.manifest import NamedResource, ObjectManifest
from helm_operator.exceptions import ConflictError, ObjectNotFoundError

from .store import Store, StoreEvent


_LOGGER = logging.getLogger(__name__)

T = TypeVar("T", bound=ObjectManifest)

# Fields owned by the store rather than by the writer of an object
_METADATA_FIELDS = {
    "name",
    "namespace",
    "labels",
    "generation",
    "resource_version",
    "finalizers",
    "creation_timestamp",
    "deletion_timestamp",
    "owner",
    "status",
}


def _desired_state(obj: ObjectManifest) -> dict[str, Any]:
    """Return the fields of an object that describe desired state."""
    return {
        f.name: getattr(obj, f.name)
        for f in dataclasses.fields(obj)
        if f.name not in _METADATA_FIELDS
    }


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class InMemoryStore(Store):
    """In-memory implementation of the Store interface.

    Objects are keyed by NamedResource and copied on the way in and out, so
    callers can only change stored state through the write methods.
    """

    def __init__(self) -> None:
        """Initialize the InMemoryStore."""
        self._objects: dict[NamedResource, ObjectManifest] = {}
        self._resource_version = 0
        self._listeners: DefaultDict[
            StoreEvent, list[Callable[[NamedResource, ObjectManifest], None]]
        ] = defaultdict(list)

    def _next_version(self) -> int:
        self._resource_version += 1
        return self._resource_version

    def _get_current(self, obj: ObjectManifest) -> ObjectManifest:
        """Return the stored object, checking the resource version of the write."""
        resource_id = obj.resource_id
        if (current := self._objects.get(resource_id)) is None:
            raise ObjectNotFoundError(f"Object {resource_id} not found in store")
        if obj.resource_version != current.resource_version:
            raise ConflictError(
                str(resource_id), obj.resource_version, current.resource_version
            )
        return current

    async def get(self, resource_id: NamedResource, cls: type[T]) -> T | None:
        """Retrieve an object by resource identity and type."""
        obj = self._objects.get(resource_id)
        if obj is None:
            return None
        if not isinstance(obj, cls):
            raise ValueError(
                f"Object {resource_id.namespaced_name} is not of type {cls.__name__} (was {obj.__class__.__name__})"
            )
        return copy.deepcopy(obj)

    async def list_objects(
        self,
        cls: type[T],
        namespace: str | None = None,
        labels: dict[str, str] | None = None,
    ) -> list[T]:
        """List objects of a type, optionally filtered by namespace and labels."""
        results: list[T] = []
        for obj in self._objects.values():
            if not isinstance(obj, cls):
                continue
            if namespace is not None and obj.namespace != namespace:
                continue
            if labels and any(obj.labels.get(k) != v for k, v in labels.items()):
                continue
            results.append(copy.deepcopy(obj))
        return sorted(results, key=lambda o: o.resource_id)

    async def create(self, obj: T) -> T:
        """Add a new object to the store."""
        resource_id = obj.resource_id
        if (existing := self._objects.get(resource_id)) is not None:
            raise ConflictError(str(resource_id), 0, existing.resource_version)
        stored = copy.deepcopy(obj)
        stored.generation = 1
        stored.resource_version = self._next_version()
        stored.creation_timestamp = stored.creation_timestamp or _now()
        stored.deletion_timestamp = None
        self._objects[resource_id] = stored
        _LOGGER.debug("Added object %s to store", resource_id)
        self._fire_event(StoreEvent.OBJECT_ADDED, resource_id, stored)
        return copy.deepcopy(stored)

    async def update(self, obj: T) -> T:
        """Write the metadata and spec of an object."""
        current = self._get_current(obj)
        stored = copy.deepcopy(obj)
        if hasattr(current, "status"):
            stored.status = copy.deepcopy(current.status)  # type: ignore[attr-defined]
        stored.creation_timestamp = current.creation_timestamp
        stored.deletion_timestamp = current.deletion_timestamp
        stored.generation = current.generation
        if _desired_state(stored) != _desired_state(current):
            stored.generation += 1
        stored.resource_version = self._next_version()
        return self._store_or_remove(stored, StoreEvent.OBJECT_UPDATED)

    async def update_status(self, obj: T) -> T:
        """Write only the status of an object."""
        current = self._get_current(obj)
        if not hasattr(current, "status"):
            raise ValueError(f"Object {obj.resource_id} does not support status")
        stored = copy.deepcopy(current)
        stored.status = copy.deepcopy(obj.status)  # type: ignore[attr-defined]
        stored.resource_version = self._next_version()
        return self._store_or_remove(stored, StoreEvent.STATUS_UPDATED)

    def _store_or_remove(self, stored: T, event: StoreEvent) -> T:
        resource_id = stored.resource_id
        if stored.being_deleted and not stored.finalizers:
            self._remove(resource_id)
            return copy.deepcopy(stored)
        self._objects[resource_id] = stored
        self._fire_event(event, resource_id, stored)
        return copy.deepcopy(stored)

    async def delete(self, resource_id: NamedResource) -> None:
        """Request deletion of an object."""
        if (current := self._objects.get(resource_id)) is None:
            return
        if not current.finalizers:
            self._remove(resource_id)
            return
        if current.being_deleted:
            return
        stored = copy.deepcopy(current)
        stored.deletion_timestamp = _now()
        stored.resource_version = self._next_version()
        self._objects[resource_id] = stored
        _LOGGER.debug(
            "Object %s marked for deletion, waiting on finalizers %s",
            resource_id,
            stored.finalizers,
        )
        self._fire_event(StoreEvent.OBJECT_UPDATED, resource_id, stored)

    def _remove(self, resource_id: NamedResource) -> None:
        """Remove an object and garbage collect the objects it owns."""
        if (obj := self._objects.pop(resource_id, None)) is None:
            return
        _LOGGER.debug("Removed object %s from store", resource_id)
        self._fire_event(StoreEvent.OBJECT_DELETED, resource_id, obj)
        owned = [rid for rid, o in self._objects.items() if o.owner == resource_id]
        for owned_id in owned:
            _LOGGER.debug("Garbage collecting %s owned by %s", owned_id, resource_id)
            self._remove(owned_id)

    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[NamedResource, ObjectManifest], None],
        flush: bool = False,
    ) -> Callable[[], None]:
        """Register a callback for a specific event."""

        def remove() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        self._listeners[event].append(callback)

        if flush:
            _LOGGER.debug("Flushing objects for event type %s", event)
            for resource_id, obj in list(self._objects.items()):
                callback(resource_id, copy.deepcopy(obj))

        return remove

    def _fire_event(
        self, event: StoreEvent, resource_id: NamedResource, obj: ObjectManifest
    ) -> None:
        for cb in list(self._listeners[event]):  # Iterate over a copy for safe removal
            try:
                cb(resource_id, copy.deepcopy(obj))
            except Exception:
                _LOGGER.exception("Store listener callback failed for event %s", event)
