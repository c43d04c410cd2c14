"""Notification of noteworthy transitions on objects."""

import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from enum import StrEnum

from .manifest import NamedResource

__all__ = [
    "EventType",
    "Event",
    "EventRecorder",
    "LoggingEventRecorder",
]

_LOGGER = logging.getLogger(__name__)

DEFAULT_HISTORY = 256


class EventType(StrEnum):
    """Severity of an event."""

    NORMAL = "Normal"
    WARNING = "Warning"


@dataclass(frozen=True)
class Event:
    """A single notification about an object."""

    resource_id: NamedResource
    type: EventType
    reason: str
    message: str


class EventRecorder(ABC):
    """Sink for events emitted by the controllers."""

    @abstractmethod
    def record(
        self,
        resource_id: NamedResource,
        event_type: EventType,
        reason: str,
        message: str,
    ) -> None:
        """Record an event for the object."""


class LoggingEventRecorder(EventRecorder):
    """Logs events and keeps a bounded history of the most recent ones."""

    def __init__(self, max_events: int = DEFAULT_HISTORY) -> None:
        self._events: deque[Event] = deque(maxlen=max_events)

    def record(
        self,
        resource_id: NamedResource,
        event_type: EventType,
        reason: str,
        message: str,
    ) -> None:
        """Record an event for the object."""
        level = logging.WARNING if event_type == EventType.WARNING else logging.INFO
        _LOGGER.log(level, "%s %s: %s", resource_id, reason, message)
        self._events.append(Event(resource_id, event_type, reason, message))

    @property
    def events(self) -> list[Event]:
        """Return the recorded events, oldest first."""
        return list(self._events)

    def reasons(self, resource_id: NamedResource) -> list[str]:
        """Return the reasons of the events recorded for an object."""
        return [e.reason for e in self._events if e.resource_id == resource_id]
