"""The source controller module.

This module provides a controller for managing HelmRepository resources and
the chart values snapshots derived from them.
"""

from .cache import ChartValuesCache, artifact_name
from .controller import HelmRepositoryController
from .secret import resolve_repository_entry

__all__ = [
    "HelmRepositoryController",
    "ChartValuesCache",
    "artifact_name",
    "resolve_repository_entry",
]
