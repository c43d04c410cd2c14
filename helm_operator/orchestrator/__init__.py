"""Orchestrator that wires controllers to the store and a pool of workers."""

from .orchestrator import Orchestrator
from .queue import WorkQueue

__all__ = ["Orchestrator", "WorkQueue"]
