"""
The store module provides the declarative store the controllers converge
against: desired state, observed status and finalizers for every object, keyed
by NamedResource.

- Every write bumps the object's resource version; a write based on a stale
  resource version raises ConflictError.
- A change to an object's spec bumps its generation.
- Deleting an object with pending finalizers only marks it for deletion.

This abstract interface allows for various implementations (in-memory, cluster backed, etc.).
"""

from .store import Store, StoreEvent
from .in_memory import InMemoryStore

__all__ = [
    "Store",
    "StoreEvent",
    "InMemoryStore",
]
