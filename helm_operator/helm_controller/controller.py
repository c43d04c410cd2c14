"""HelmRelease Controller implementation.

This controller converges each HelmRelease toward its declared chart, version
and values by installing, upgrading or uninstalling releases in the package
engine.

Key Concepts:
    - HelmRelease: A resource that defines how to deploy a Helm chart
    - Dependencies: A release waits until the HelmRepository it installs from,
      and every HelmRelease it depends on, report Ready
    - Baseline: The spec that was last applied successfully, used to detect
      changes the engine cannot report on its own
"""

import copy
import datetime
import logging

from helm_operator import conditions, metrics
from helm_operator.backoff import classify_error, error_text
from helm_operator.conditions import (
    find_condition,
    is_condition_true,
    remove_condition,
    set_condition,
)
from helm_operator.config import HelmControllerConfig
from helm_operator.context import trace_context
from helm_operator.events import EventRecorder, EventType
from helm_operator.exceptions import (
    DependencyNotReadyError,
    HelmOperatorException,
    ReleaseNotFoundError,
)
from helm_operator.helm import (
    DEFAULT_TIMEOUT,
    InstallRequest,
    ReleaseInfo,
    ReleaseManager,
    RollbackRequest,
    UninstallRequest,
    UpgradeRequest,
)
from helm_operator.manifest import (
    HELM_RELEASE,
    CachePolicy,
    ConditionStatus,
    FailureRecord,
    HelmRelease,
    HelmRepository,
    NamedResource,
    parse_duration,
)
from helm_operator.metrics import MetricsRegistry
from helm_operator.reconcile import (
    ObjectWriter,
    ReconcileResult,
    Reconciler,
    failure_requeue,
)
from helm_operator.source_controller.cache import ChartValuesCache
from helm_operator.store import Store
from helm_operator.values import dump_values, values_equal

_LOGGER = logging.getLogger(__name__)

FINALIZER = "helm-operator.ketches.cn/release-finalizer"

_READY_MESSAGE = "Release is ready"
_RELEASED_MESSAGE = "Release is deployed"


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _duration(value: str, default: datetime.timedelta) -> datetime.timedelta:
    try:
        return parse_duration(value)
    except HelmOperatorException:
        _LOGGER.debug("Invalid timeout '%s', using %s", value, default)
        return default


def _is_not_found(err: Exception) -> bool:
    return (
        isinstance(err, ReleaseNotFoundError)
        or "not found" in error_text(err).lower()
    )


def validate_release(release: HelmRelease) -> str | None:
    """Return a description of the problem with the spec, or None if valid."""
    chart = release.spec.chart
    if not chart.name:
        return "spec.chart.name is required"
    if not (chart.repository or chart.repository_url or chart.oci_repository):
        return (
            "one of spec.chart.repository, spec.chart.repositoryURL or "
            "spec.chart.ociRepository is required"
        )
    return None


def needs_upgrade(release: HelmRelease, deployed: ReleaseInfo) -> str | None:
    """Return why the deployed release differs from the spec, or None."""
    spec = release.spec
    if (version := spec.chart.version) and not (
        deployed.chart or ""
    ).endswith(f"-{version}"):
        return f"chart version changed to {version}"
    if not values_equal(spec.values, deployed.values):
        return "values configuration changed"
    if (baseline := release.status.last_applied_configuration) is not None:
        if (
            baseline.chart.name != spec.chart.name
            or baseline.chart.version != spec.chart.version
            or not values_equal(baseline.values, spec.values)
        ):
            return "release configuration changed"
    return None


def chart_source(
    release: HelmRelease, repo: HelmRepository | None
) -> tuple[str, str | None]:
    """Return the chart reference and optional repository URL to install from."""
    chart = release.spec.chart
    if repo is not None:
        return repo.chart_ref(chart.name), None
    if chart.repository_url:
        return chart.name, chart.repository_url
    if chart.oci_repository:
        return f"{chart.oci_repository.rstrip('/')}/{chart.name}", None
    return chart.name, None


class HelmReleaseController(Reconciler):
    """
    Controller for reconciling HelmRelease resources.

    This controller gates each release on its dependencies, decides whether an
    install, upgrade or nothing is needed and records the outcome as
    conditions on the release.
    """

    kind = HELM_RELEASE

    def __init__(
        self,
        store: Store,
        engine: ReleaseManager,
        config: HelmControllerConfig,
        registry: MetricsRegistry,
        recorder: EventRecorder,
        values_cache: ChartValuesCache | None = None,
    ) -> None:
        """
        Initialize the controller.

        Args:
            store: The declarative store holding HelmRelease objects
            engine: The package engine releases are deployed with
            config: The configuration for the controller
            registry: Metrics sink
            recorder: Sink for events about releases
            values_cache: Snapshots chart values for on-demand repositories
        """
        self._store = store
        self._engine = engine
        self._config = config
        self._metrics = registry
        self._recorder = recorder
        self._values_cache = values_cache
        self._writer = ObjectWriter(store, HelmRelease, config.conflict_retries)

    async def reconcile(self, resource_id: NamedResource) -> ReconcileResult:
        """Converge a HelmRelease one step."""
        release = await self._store.get(resource_id, HelmRelease)
        if release is None:
            _LOGGER.debug("HelmRelease %s no longer exists", resource_id)
            return ReconcileResult()
        if release.being_deleted:
            return await self._reconcile_delete(release)
        if FINALIZER not in release.finalizers:
            await self._writer.add_finalizer(resource_id, FINALIZER)
            return ReconcileResult()
        return await self._reconcile_normal(release)

    async def _reconcile_normal(self, release: HelmRelease) -> ReconcileResult:
        resource_id = release.resource_id
        if problem := validate_release(release):
            _LOGGER.warning("Invalid HelmRelease %s: %s", resource_id, problem)
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

        if release.spec.suspend:
            _LOGGER.debug("HelmRelease %s is suspended", resource_id)
            await self._writer.update_status(
                resource_id,
                lambda r: set_condition(
                    r.status.conditions,
                    conditions.not_ready_condition(
                        conditions.RELEASE_SUSPENDED, "Release is suspended"
                    ),
                ),
            )
            return ReconcileResult()

        try:
            repo = await self.check_dependencies(release)
        except DependencyNotReadyError as err:
            _LOGGER.info("HelmRelease %s waiting: %s", resource_id, err)
            message = str(err)
            await self._writer.update_status(
                resource_id,
                lambda r: set_condition(
                    r.status.conditions,
                    conditions.failed_condition(
                        conditions.DEPENDENCY_NOT_READY, message
                    ),
                ),
            )
            return ReconcileResult(self._config.dependency_requeue)

        try:
            deployed: ReleaseInfo | None = await self._engine.get_release(
                release.release_name, release.release_namespace, DEFAULT_TIMEOUT
            )
        except Exception as err:
            if not _is_not_found(err):
                return await self._fail(release, conditions.INSTALL_FAILED, err)
            deployed = None

        if deployed is None:
            return await self._install(release, repo)
        if reason := needs_upgrade(release, deployed):
            return await self._upgrade(release, repo, reason)
        return await self._refresh(release, deployed)

    async def check_dependencies(self, release: HelmRelease) -> HelmRepository | None:
        """Return the repository the release installs from once all dependencies are Ready.

        Raises DependencyNotReadyError naming the first unmet dependency.
        """
        resource_id = str(release.resource_id)
        repo: HelmRepository | None = None
        if (repo_id := release.repository_id) is not None:
            repo = await self._store.get(repo_id, HelmRepository)
            if repo is None:
                raise DependencyNotReadyError(resource_id, str(repo_id), "not found")
            if not is_condition_true(repo.status.conditions, conditions.READY):
                raise DependencyNotReadyError(resource_id, str(repo_id), "is not ready")
        for dep in release.spec.depends_on:
            dep_id = NamedResource(HELM_RELEASE, dep.namespace or release.namespace, dep.name)
            if (dependency := await self._store.get(dep_id, HelmRelease)) is None:
                raise DependencyNotReadyError(resource_id, str(dep_id), "not found")
            if not is_condition_true(dependency.status.conditions, conditions.READY):
                raise DependencyNotReadyError(resource_id, str(dep_id), "is not ready")
        return repo

    async def _start(self, release: HelmRelease, reason: str, message: str) -> None:
        self._recorder.record(release.resource_id, EventType.NORMAL, reason, message)
        await self._writer.update_status(
            release.resource_id,
            lambda r: set_condition(
                r.status.conditions, conditions.progressing_condition(reason, message)
            ),
        )

    def _observe(self, operation: str, release: HelmRelease, seconds: float, ok: bool) -> None:
        labels = {
            "release": release.release_name,
            "namespace": release.release_namespace,
            "operation": operation,
        }
        self._metrics.observe(metrics.RELEASE_OPERATION_DURATION, seconds, **labels)
        self._metrics.inc(
            metrics.RELEASE_OPERATION_TOTAL,
            status="success" if ok else "failure",
            **labels,
        )
        if not ok:
            self._metrics.inc(metrics.RELEASE_OPERATION_ERRORS, **labels)

    async def _install(
        self, release: HelmRelease, repo: HelmRepository | None
    ) -> ReconcileResult:
        spec = release.spec
        chart, repo_url = chart_source(release, repo)
        _LOGGER.info("Installing HelmRelease %s from %s", release.resource_id, chart)
        await self._start(
            release, conditions.INSTALL_STARTED, f"Installing chart {chart}"
        )
        request = InstallRequest(
            name=release.release_name,
            namespace=release.release_namespace,
            chart=chart,
            version=spec.chart.version,
            repo_url=repo_url,
            values=spec.values,
            create_namespace=spec.release.create_namespace,
            wait=spec.install.wait,
            wait_for_jobs=spec.install.wait_for_jobs,
            timeout=_duration(spec.install.timeout, datetime.timedelta(minutes=10)),
            skip_crds=spec.install.skip_crds,
            replace=spec.install.replace,
            disable_hooks=spec.install.disable_hooks,
        )
        with trace_context(f"Install {release.resource_id}") as elapsed:
            try:
                info = await self._engine.install(request)
            except Exception as err:
                info = None
                error = err
        self._observe("install", release, elapsed[0], info is not None)
        if info is None:
            return await self._fail(release, conditions.INSTALL_FAILED, error)
        return await self._succeed(release, repo, info, conditions.INSTALL_COMPLETED)

    async def _upgrade(
        self, release: HelmRelease, repo: HelmRepository | None, reason: str
    ) -> ReconcileResult:
        spec = release.spec
        chart, repo_url = chart_source(release, repo)
        _LOGGER.info("Upgrading HelmRelease %s: %s", release.resource_id, reason)
        await self._start(
            release, conditions.UPGRADE_STARTED, f"Upgrading release: {reason}"
        )
        request = UpgradeRequest(
            name=release.release_name,
            namespace=release.release_namespace,
            chart=chart,
            version=spec.chart.version,
            repo_url=repo_url,
            values=spec.values,
            wait=spec.upgrade.wait,
            wait_for_jobs=spec.upgrade.wait_for_jobs,
            timeout=_duration(spec.upgrade.timeout, datetime.timedelta(minutes=10)),
            force=spec.upgrade.force,
            reset_values=spec.upgrade.reset_values,
            reuse_values=spec.upgrade.reuse_values,
            recreate=spec.upgrade.recreate,
            max_history=spec.upgrade.max_history,
            cleanup_on_fail=spec.upgrade.cleanup_on_fail,
            disable_hooks=spec.upgrade.disable_hooks,
        )
        with trace_context(f"Upgrade {release.resource_id}") as elapsed:
            try:
                info = await self._engine.upgrade(request)
            except Exception as err:
                info = None
                error = err
        self._observe("upgrade", release, elapsed[0], info is not None)
        if info is None:
            extra = []
            if spec.rollback.enabled:
                extra.append(await self._rollback(release))
            return await self._fail(release, conditions.UPGRADE_FAILED, error, extra)
        return await self._succeed(release, repo, info, conditions.UPGRADE_COMPLETED)

    async def _rollback(self, release: HelmRelease) -> FailureRecord:
        """Roll back after a failed upgrade, returning a record of the outcome."""
        options = release.spec.rollback
        request = RollbackRequest(
            name=release.release_name,
            namespace=release.release_namespace,
            revision=options.to_revision,
            timeout=_duration(options.timeout, datetime.timedelta(minutes=5)),
            wait=options.wait,
            cleanup_on_fail=options.cleanup_on_fail,
            force=options.force,
            disable_hooks=options.disable_hooks,
        )
        labels = {
            "release": release.release_name,
            "namespace": release.release_namespace,
        }
        try:
            await self._engine.rollback(request)
        except Exception as err:
            _LOGGER.error("Rollback of HelmRelease %s failed: %s", release.resource_id, err)
            self._metrics.inc(metrics.RELEASE_ROLLBACKS, status="failure", **labels)
            self._recorder.record(
                release.resource_id,
                EventType.WARNING,
                conditions.ROLLBACK_FAILED,
                str(err),
            )
            return FailureRecord(
                time=_now(), reason=conditions.ROLLBACK_FAILED, message=str(err)
            )
        revision = options.to_revision or "previous"
        message = f"Rolled back to {revision} revision after failed upgrade"
        _LOGGER.info("HelmRelease %s: %s", release.resource_id, message)
        self._metrics.inc(metrics.RELEASE_ROLLBACKS, status="success", **labels)
        self._recorder.record(
            release.resource_id, EventType.NORMAL, conditions.ROLLBACK_COMPLETED, message
        )
        return FailureRecord(
            time=_now(), reason=conditions.ROLLBACK_COMPLETED, message=message
        )

    async def _fail(
        self,
        release: HelmRelease,
        reason: str,
        err: Exception,
        extra: list[FailureRecord] | None = None,
    ) -> ReconcileResult:
        """Record a failed operation and return the retry hint."""
        resource_id = release.resource_id
        classified = classify_error(err, attempt=release.status.failure_count + 1)
        message = str(err)
        _LOGGER.warning(
            "HelmRelease %s failed (%s): %s", resource_id, classified.category, message
        )
        self._recorder.record(resource_id, EventType.WARNING, reason, message)
        records = [FailureRecord(time=_now(), reason=reason, message=message)]
        records.extend(extra or [])
        max_history = self._config.max_failure_history

        def mutate(r: HelmRelease) -> None:
            r.status.failure_count += 1
            r.status.failures.extend(records)
            del r.status.failures[:-max_history]
            set_condition(
                r.status.conditions, conditions.failed_condition(reason, message)
            )
            set_condition(
                r.status.conditions, conditions.not_ready_condition(reason, message)
            )
            set_condition(
                r.status.conditions,
                conditions.progressing_condition(
                    reason, message, status=ConditionStatus.FALSE
                ),
            )

        await self._writer.update_status(resource_id, mutate)
        return ReconcileResult(failure_requeue(classified, self._config.failure_requeue))

    def _mark_ready(
        self, r: HelmRelease, release: HelmRelease, info: ReleaseInfo, reason: str
    ) -> None:
        r.status.helm_release = info.to_status()
        r.status.last_applied_configuration = copy.deepcopy(release.spec)
        r.status.original_values = dump_values(info.default_values) or None
        r.status.failure_count = 0
        r.status.observed_generation = release.generation
        set_condition(
            r.status.conditions, conditions.ready_condition(reason, _READY_MESSAGE)
        )
        set_condition(
            r.status.conditions, conditions.released_condition(reason, _RELEASED_MESSAGE)
        )
        set_condition(
            r.status.conditions,
            conditions.progressing_condition(
                reason, _READY_MESSAGE, status=ConditionStatus.FALSE
            ),
        )
        remove_condition(r.status.conditions, conditions.FAILED)

    async def _succeed(
        self,
        release: HelmRelease,
        repo: HelmRepository | None,
        info: ReleaseInfo,
        reason: str,
    ) -> ReconcileResult:
        resource_id = release.resource_id
        await self._writer.update_status(
            resource_id, lambda r: self._mark_ready(r, release, info, reason)
        )
        self._recorder.record(
            resource_id,
            EventType.NORMAL,
            reason,
            f"Release {info.name} revision {info.revision} deployed {info.chart}",
        )
        _LOGGER.info(
            "HelmRelease %s deployed %s revision %d", resource_id, info.chart, info.revision
        )
        await self._snapshot_values(release, repo, info)
        return ReconcileResult(release.interval)

    async def _refresh(self, release: HelmRelease, deployed: ReleaseInfo) -> ReconcileResult:
        """Record the deployed state when no change is needed."""
        _LOGGER.debug("HelmRelease %s is up to date", release.resource_id)
        ready = find_condition(release.status.conditions, conditions.READY)
        reason = (
            ready.reason
            if ready is not None and ready.status == ConditionStatus.TRUE
            else conditions.INSTALL_COMPLETED
        )
        await self._writer.update_status(
            release.resource_id,
            lambda r: self._mark_ready(r, release, deployed, reason),
        )
        return ReconcileResult(release.interval)

    async def _snapshot_values(
        self, release: HelmRelease, repo: HelmRepository | None, info: ReleaseInfo
    ) -> None:
        """Materialize the values snapshot for repositories using the on-demand policy."""
        if (
            self._values_cache is None
            or repo is None
            or repo.spec.values_config_map_policy != CachePolicy.ON_DEMAND
        ):
            return
        version = info.chart_version or release.spec.chart.version
        if not version:
            return
        try:
            await self._values_cache.ensure(repo, release.spec.chart.name, version)
        except Exception as err:
            _LOGGER.warning(
                "Failed to snapshot values of %s %s for %s: %s",
                release.spec.chart.name,
                version,
                release.resource_id,
                err,
            )

    async def _reconcile_delete(self, release: HelmRelease) -> ReconcileResult:
        resource_id = release.resource_id
        if FINALIZER not in release.finalizers:
            return ReconcileResult()
        options = release.spec.uninstall
        request = UninstallRequest(
            name=release.release_name,
            namespace=release.release_namespace,
            timeout=_duration(options.timeout, datetime.timedelta(minutes=5)),
            disable_hooks=options.disable_hooks,
            keep_history=options.keep_history,
        )
        _LOGGER.info("Uninstalling HelmRelease %s", resource_id)
        self._recorder.record(
            resource_id,
            EventType.NORMAL,
            conditions.UNINSTALL_STARTED,
            f"Uninstalling release {request.name}",
        )
        with trace_context(f"Uninstall {resource_id}") as elapsed:
            try:
                await self._engine.uninstall(request)
            except Exception as err:
                ok = _is_not_found(err)
                if ok:
                    _LOGGER.debug("Release %s already uninstalled", request.name)
                else:
                    _LOGGER.warning(
                        "Failed to uninstall HelmRelease %s: %s", resource_id, err
                    )
                    self._recorder.record(
                        resource_id,
                        EventType.WARNING,
                        conditions.UNINSTALL_FAILED,
                        str(err),
                    )
            else:
                ok = True
                self._recorder.record(
                    resource_id,
                    EventType.NORMAL,
                    conditions.UNINSTALL_COMPLETED,
                    f"Uninstalled release {request.name}",
                )
        self._observe("uninstall", release, elapsed[0], ok)
        await self._writer.remove_finalizer(resource_id, FINALIZER)
        return ReconcileResult()
