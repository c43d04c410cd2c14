"""HelmRepository Controller implementation.

This controller keeps the package engine's view of each HelmRepository in
sync with the declared repository and records what the repository offers.

Key Concepts:
    - HelmRepository: A source of installable charts, either a generic chart
      index served over http(s) or an OCI registry
    - Sync: Registering the repository with the engine, fetching its index and
      recording the discovered charts in the repository status
    - Values snapshots: Optional ConfigMaps holding the default values of chart
      versions, see `cache.py`
"""

import asyncio
import datetime
import logging
from urllib.parse import urlparse

from helm_operator import conditions, metrics
from helm_operator.backoff import ErrorCategory, classify_error
from helm_operator.conditions import remove_condition, set_condition
from helm_operator.config import SourceControllerConfig
from helm_operator.context import trace_context
from helm_operator.events import EventRecorder, EventType
from helm_operator.exceptions import SecretResolutionError
from helm_operator.helm import PackageVersion, RepositoryManager
from helm_operator.manifest import (
    HELM_REPOSITORY,
    ChartInfo,
    ChartVersion,
    ConditionStatus,
    HelmRepository,
    NamedResource,
    RepositoryStats,
)
from helm_operator.metrics import MetricsRegistry
from helm_operator.reconcile import (
    ObjectWriter,
    ReconcileResult,
    Reconciler,
    failure_requeue,
)
from helm_operator.store import Store

from .cache import ChartValuesCache
from .secret import resolve_repository_entry

_LOGGER = logging.getLogger(__name__)

FINALIZER = "helm-operator.ketches.cn/repository-finalizer"

_VALID_SCHEMES = {"http", "https", "oci"}


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def validate_repository(repo: HelmRepository) -> str | None:
    """Return a description of the problem with the spec, or None if valid."""
    if not repo.spec.url:
        return "spec.url is required"
    parsed = urlparse(repo.spec.url)
    if parsed.scheme not in _VALID_SCHEMES or not parsed.netloc:
        return f"spec.url '{repo.spec.url}' must be an http, https or oci URL"
    return None


def group_packages(packages: list[PackageVersion]) -> list[ChartInfo]:
    """Group a flat package listing into charts, keeping version order."""
    charts: dict[str, ChartInfo] = {}
    for package in packages:
        if (chart := charts.get(package.name)) is None:
            chart = ChartInfo(name=package.name, description=package.description)
            charts[package.name] = chart
        chart.versions.append(
            ChartVersion(
                version=package.version,
                app_version=package.app_version,
                created=package.created,
                digest=package.digest,
            )
        )
    return sorted(charts.values(), key=lambda c: c.name)


class RepositoryListCache:
    """Read-through cache of the repositories registered with the engine.

    Readers may observe a stale listing; a missing or invalidated listing is
    loaded once while concurrent readers wait on the lock.
    """

    def __init__(self, engine: RepositoryManager) -> None:
        self._engine = engine
        self._names: frozenset[str] | None = None
        self._lock = asyncio.Lock()

    async def contains(self, name: str, timeout: datetime.timedelta) -> bool:
        """Return true if the engine has a registration with this name."""
        if (names := self._names) is not None:
            return name in names
        async with self._lock:
            if self._names is None:
                _LOGGER.debug("Loading engine repository list")
                self._names = frozenset(await self._engine.list_repositories(timeout))
            return name in self._names

    def invalidate(self) -> None:
        """Force the next read to reload the listing."""
        self._names = None


class HelmRepositoryController(Reconciler):
    """Controller for reconciling HelmRepository resources."""

    kind = HELM_REPOSITORY

    def __init__(
        self,
        store: Store,
        engine: RepositoryManager,
        config: SourceControllerConfig,
        registry: MetricsRegistry,
        recorder: EventRecorder,
    ) -> None:
        """Initialize the controller.

        Args:
            store: The declarative store holding HelmRepository objects
            engine: The package engine repositories are registered with
            config: The configuration for the controller
            registry: Metrics sink
            recorder: Sink for events about repositories
        """
        self._store = store
        self._engine = engine
        self._config = config
        self._metrics = registry
        self._recorder = recorder
        self._writer = ObjectWriter(store, HelmRepository, config.conflict_retries)
        self._repositories = RepositoryListCache(engine)
        self.values_cache = ChartValuesCache(store, engine, registry)

    async def reconcile(self, resource_id: NamedResource) -> ReconcileResult:
        """Converge a HelmRepository one step."""
        repo = await self._store.get(resource_id, HelmRepository)
        if repo is None:
            _LOGGER.debug("HelmRepository %s no longer exists", resource_id)
            return ReconcileResult()
        if repo.being_deleted:
            return await self._reconcile_delete(repo)
        if FINALIZER not in repo.finalizers:
            await self._writer.add_finalizer(resource_id, FINALIZER)
            return ReconcileResult()
        return await self._reconcile_normal(repo)

    async def _reconcile_normal(self, repo: HelmRepository) -> ReconcileResult:
        resource_id = repo.resource_id
        if problem := validate_repository(repo):
            _LOGGER.warning("Invalid HelmRepository %s: %s", resource_id, problem)
            self._recorder.record(
                resource_id, EventType.WARNING, conditions.CONFIGURATION_ERROR, problem
            )
            await self._writer.update_status(
                resource_id,
                lambda r: set_condition(
                    r.status.conditions,
                    conditions.failed_condition(conditions.CONFIGURATION_ERROR, problem),
                ),
            )
            return ReconcileResult(self._config.failure_requeue)

        if repo.spec.suspend:
            _LOGGER.debug("HelmRepository %s is suspended", resource_id)
            await self._writer.update_status(
                resource_id,
                lambda r: set_condition(
                    r.status.conditions,
                    conditions.not_ready_condition(
                        conditions.SUSPENDED, "Repository is suspended"
                    ),
                ),
            )
            return ReconcileResult()

        now = _now()
        if not await self.should_sync(repo, now):
            return ReconcileResult(self.next_sync(repo, now))
        return await self._sync(repo)

    async def should_sync(self, repo: HelmRepository, now: datetime.datetime) -> bool:
        """Return true if the repository is due for a sync."""
        status = repo.status
        if status.last_sync_time is None:
            return True
        if status.observed_generation != repo.generation:
            _LOGGER.debug("HelmRepository %s spec changed", repo.resource_id)
            return True
        if not repo.is_oci:
            try:
                registered = await self._repositories.contains(
                    repo.repo_name, repo.timeout
                )
            except Exception as err:
                _LOGGER.warning(
                    "Unable to list engine repositories, syncing %s: %s",
                    repo.resource_id,
                    err,
                )
                return True
            if not registered:
                _LOGGER.info(
                    "HelmRepository %s is missing from the engine", repo.resource_id
                )
                return True
        return now >= status.last_sync_time + repo.interval

    def next_sync(
        self, repo: HelmRepository, now: datetime.datetime
    ) -> datetime.timedelta:
        """Return the delay until the repository is next due."""
        if (last_sync := repo.status.last_sync_time) is None:
            return datetime.timedelta(0)
        return max(datetime.timedelta(0), last_sync + repo.interval - now)

    async def _fail(
        self,
        repo: HelmRepository,
        reason: str,
        err: Exception,
        category: ErrorCategory | None = None,
    ) -> ReconcileResult:
        """Record a failed sync and return the retry hint."""
        resource_id = repo.resource_id
        classified = classify_error(
            err, attempt=repo.status.failure_count + 1, category=category
        )
        message = str(err)
        _LOGGER.warning(
            "Sync of HelmRepository %s failed (%s): %s",
            resource_id,
            classified.category,
            message,
        )
        self._recorder.record(resource_id, EventType.WARNING, reason, message)
        self._metrics.inc(
            metrics.REPOSITORY_SYNC_ERRORS,
            repository=repo.name,
            namespace=repo.namespace or "",
            category=str(classified.category),
        )

        def mutate(r: HelmRepository) -> None:
            r.status.failure_count += 1
            set_condition(
                r.status.conditions, conditions.failed_condition(reason, message)
            )
            set_condition(
                r.status.conditions,
                conditions.syncing_condition(
                    reason, message, status=ConditionStatus.FALSE
                ),
            )

        await self._writer.update_status(resource_id, mutate)
        return ReconcileResult(failure_requeue(classified, self._config.failure_requeue))

    async def _sync(self, repo: HelmRepository) -> ReconcileResult:
        resource_id = repo.resource_id
        labels = {"repository": repo.name, "namespace": repo.namespace or ""}
        with trace_context(f"Sync {resource_id}") as elapsed:
            result, success = await self._sync_steps(repo)
        self._metrics.observe(metrics.REPOSITORY_SYNC_DURATION, elapsed[0], **labels)
        self._metrics.inc(
            metrics.REPOSITORY_SYNC_TOTAL,
            status="success" if success else "failure",
            **labels,
        )
        return result

    async def _sync_steps(self, repo: HelmRepository) -> tuple[ReconcileResult, bool]:
        resource_id = repo.resource_id
        _LOGGER.info("Syncing HelmRepository %s", resource_id)
        self._recorder.record(
            resource_id,
            EventType.NORMAL,
            conditions.SYNC_STARTED,
            "Started synchronizing repository",
        )
        await self._writer.update_status(
            resource_id,
            lambda r: set_condition(
                r.status.conditions,
                conditions.syncing_condition(
                    conditions.SYNC_STARTED, "Synchronizing repository"
                ),
            ),
        )

        try:
            entry = await resolve_repository_entry(self._store, repo)
        except SecretResolutionError as err:
            result = await self._fail(
                repo, conditions.AUTHENTICATION_FAILED, err, ErrorCategory.AUTH
            )
            return result, False

        registered = False
        if (
            not repo.is_oci
            and repo.spec.auth is None
            and repo.status.observed_generation == repo.generation
        ):
            try:
                registered = await self._repositories.contains(
                    entry.name, entry.timeout
                )
            except Exception as err:
                _LOGGER.debug("Unable to list engine repositories: %s", err)
        try:
            if registered:
                await self._engine.sync_repository_index(entry.name, entry.timeout)
            else:
                await self._engine.add_repository(entry)
        except Exception as err:
            return await self._fail(repo, conditions.SYNC_FAILED, err), False
        finally:
            self._repositories.invalidate()

        now = _now()
        if repo.is_oci:

            def mark_oci_ready(r: HelmRepository) -> None:
                r.status.last_sync_time = now
                r.status.observed_generation = r.generation
                r.status.failure_count = 0
                self._set_synced(r, "OCI repository registered successfully")

            await self._writer.update_status(resource_id, mark_oci_ready)
            return ReconcileResult(repo.interval), True

        try:
            packages = await self._engine.list_packages(entry.name, entry.timeout)
        except Exception as err:
            return await self._fail(repo, conditions.SYNC_FAILED, err), False
        charts = group_packages(packages)

        await self.values_cache.materialize(repo, charts)
        await self.values_cache.sweep(repo, now)

        message = f"Repository synced successfully, found {len(charts)} charts"

        def mark_synced(r: HelmRepository) -> None:
            r.status.charts = charts
            r.status.stats = RepositoryStats(
                total_charts=len(charts),
                total_versions=sum(len(c.versions) for c in charts),
            )
            r.status.last_sync_time = now
            r.status.observed_generation = r.generation
            r.status.failure_count = 0
            self._set_synced(r, message)

        await self._writer.update_status(resource_id, mark_synced)
        self._metrics.set(
            metrics.REPOSITORY_CHARTS,
            float(len(charts)),
            repository=repo.name,
            namespace=repo.namespace or "",
        )
        self._recorder.record(
            resource_id, EventType.NORMAL, conditions.SYNC_COMPLETED, message
        )
        _LOGGER.info("HelmRepository %s: %s", resource_id, message)
        return ReconcileResult(repo.interval), True

    @staticmethod
    def _set_synced(repo: HelmRepository, message: str) -> None:
        set_condition(
            repo.status.conditions,
            conditions.ready_condition(conditions.SYNC_COMPLETED, message),
        )
        set_condition(
            repo.status.conditions,
            conditions.syncing_condition(
                conditions.SYNC_COMPLETED, message, status=ConditionStatus.FALSE
            ),
        )
        remove_condition(repo.status.conditions, conditions.FAILED)

    async def _reconcile_delete(self, repo: HelmRepository) -> ReconcileResult:
        resource_id = repo.resource_id
        if FINALIZER not in repo.finalizers:
            return ReconcileResult()
        _LOGGER.info("Removing HelmRepository %s from the engine", resource_id)
        try:
            await self._engine.remove_repository(repo.repo_name, repo.timeout)
        except Exception as err:
            _LOGGER.warning(
                "Failed to remove HelmRepository %s from the engine: %s",
                resource_id,
                err,
            )
        finally:
            self._repositories.invalidate()
        await self._writer.remove_finalizer(resource_id, FINALIZER)
        return ReconcileResult()
