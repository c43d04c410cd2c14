"""Task tracking for helm-operator.

The orchestrator starts its queue workers through a shared task service so
that shutdown can cancel them together.
"""

from .context import task_service_context, get_task_service
from .service import TaskService

__all__ = ["get_task_service", "task_service_context", "TaskService"]
