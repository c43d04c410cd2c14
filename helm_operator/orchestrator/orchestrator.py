"""Orchestrator for helm-operator.

This module provides the main orchestrator that connects the store to the
controllers. Store changes and requeue hints deliver resource keys to a work
queue, and a fixed pool of workers hands each key to the controller for its
kind.
"""

import logging
from pathlib import Path
import tempfile
from collections.abc import Callable

from helm_operator import metrics
from helm_operator.backoff import classify_error
from helm_operator.config import OrchestratorConfig
from helm_operator.context import trace_context
from helm_operator.events import EventRecorder, LoggingEventRecorder
from helm_operator.helm import Helm, PackageEngine
from helm_operator.helm_controller import HelmReleaseController
from helm_operator.manifest import NamedResource, ObjectManifest
from helm_operator.metrics import MetricsRegistry
from helm_operator.reconcile import Reconciler
from helm_operator.source_controller import HelmRepositoryController
from helm_operator.store import Store, StoreEvent
from helm_operator.task import TaskService, get_task_service

from .queue import WorkQueue

_LOGGER = logging.getLogger(__name__)

_WATCHED_EVENTS = (
    StoreEvent.OBJECT_ADDED,
    StoreEvent.OBJECT_UPDATED,
    StoreEvent.OBJECT_DELETED,
)


class Orchestrator:
    """Orchestrator for coordinating the execution of controllers.

    The orchestrator is responsible for:
    - Creating the repository and release controllers
    - Queueing resources when the store reports a change
    - Running a bounded number of reconciles concurrently
    - Requeueing resources on the controllers' hints or after failures
    """

    def __init__(
        self,
        store: Store,
        engine: PackageEngine | None = None,
        config: OrchestratorConfig | None = None,
        registry: MetricsRegistry | None = None,
        recorder: EventRecorder | None = None,
    ) -> None:
        """Initialize the orchestrator.

        A `Helm` engine with private temporary directories is created when no
        engine is supplied.
        """
        self.store = store
        self.config = config or OrchestratorConfig()
        self.metrics = registry or MetricsRegistry()
        self.recorder = recorder or LoggingEventRecorder()
        if engine is None:
            engine = Helm(
                tmp_dir=Path(tempfile.mkdtemp(prefix="helm-operator-tmp-")),
                cache_dir=Path(tempfile.mkdtemp(prefix="helm-operator-cache-")),
            )
        self.engine = engine
        repositories = HelmRepositoryController(
            store,
            engine,
            self.config.source_controller_config,
            self.metrics,
            self.recorder,
        )
        releases = HelmReleaseController(
            store,
            engine,
            self.config.helm_controller_config,
            self.metrics,
            self.recorder,
            values_cache=repositories.values_cache,
        )
        self.controllers: dict[str, Reconciler] = {
            repositories.kind: repositories,
            releases.kind: releases,
        }
        self._queue: WorkQueue | None = None
        self._task_service: TaskService | None = None
        self._listeners: list[Callable[[], None]] = []
        self._failures: dict[NamedResource, int] = {}

    @property
    def running(self) -> bool:
        return self._queue is not None

    def is_idle(self) -> bool:
        """Return true when no resource is queued or being reconciled."""
        return self._queue is None or self._queue.idle

    async def start(self) -> None:
        """Subscribe to the store and start the workers."""
        if self._queue is not None:
            return
        _LOGGER.info("Starting orchestrator with %d workers", self.config.workers)
        self._queue = WorkQueue()
        self._task_service = get_task_service()
        for event in _WATCHED_EVENTS:
            self._listeners.append(
                self.store.add_listener(
                    event, self._on_event, flush=event == StoreEvent.OBJECT_ADDED
                )
            )
        for i in range(self.config.workers):
            self._task_service.create_background_task(
                self._worker(self._queue), name=f"reconcile-worker-{i}"
            )

    async def stop(self) -> None:
        """Stop dispatching and cancel the workers and pending requeues."""
        if self._queue is None:
            return
        _LOGGER.info("Stopping orchestrator")
        self._queue.shutdown()
        for remove in self._listeners:
            remove()
        self._listeners.clear()
        if self._task_service is not None:
            await self._task_service.cancel_background_tasks()
        self._queue = None
        self._failures.clear()
        _LOGGER.info("Orchestrator stopped")

    def enqueue(self, resource_id: NamedResource) -> None:
        """Queue a resource for reconciliation."""
        if self._queue is not None and resource_id.kind in self.controllers:
            self._queue.add(resource_id)

    def _on_event(self, resource_id: NamedResource, obj: ObjectManifest) -> None:
        self.enqueue(resource_id)

    async def _worker(self, queue: WorkQueue) -> None:
        while (resource_id := await queue.get()) is not None:
            try:
                await self._process(queue, resource_id)
            finally:
                queue.done(resource_id)

    async def _process(self, queue: WorkQueue, resource_id: NamedResource) -> None:
        controller = self.controllers[resource_id.kind]
        labels = {"kind": resource_id.kind}
        with trace_context(f"Reconcile {resource_id}") as elapsed:
            try:
                result = await controller.reconcile(resource_id)
            except Exception as err:
                failures = self._failures.get(resource_id, 0) + 1
                self._failures[resource_id] = failures
                classified = classify_error(err, attempt=failures)
                _LOGGER.exception(
                    "Reconcile of %s failed (attempt %d), retrying in %s",
                    resource_id,
                    failures,
                    classified.retry_after,
                )
                result = None
                queue.add_after(resource_id, classified.retry_after)
        self.metrics.observe(metrics.RECONCILE_DURATION, elapsed[0], **labels)
        if result is None:
            self.metrics.inc(metrics.RECONCILE_TOTAL, status="failure", **labels)
            self.metrics.inc(metrics.RECONCILE_ERRORS, **labels)
            return
        self.metrics.inc(metrics.RECONCILE_TOTAL, status="success", **labels)
        self._failures.pop(resource_id, None)
        if result.requeue_after is not None:
            queue.add_after(resource_id, result.requeue_after)
