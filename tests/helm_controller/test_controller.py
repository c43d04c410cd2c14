"""Tests for the helm controller."""

import copy
import datetime

import pytest

from helm_operator import conditions, metrics
from helm_operator.conditions import find_condition, set_condition
from helm_operator.config import HelmControllerConfig
from helm_operator.events import LoggingEventRecorder
from helm_operator.exceptions import HelmException
from helm_operator.helm import InstallRequest, ReleaseInfo, UpgradeRequest
from helm_operator.helm_controller import (
    HelmReleaseController,
    needs_upgrade,
    validate_release,
)
from helm_operator.helm_controller.controller import FINALIZER
from helm_operator.manifest import (
    CachePolicy,
    ChartSpec,
    ConditionStatus,
    ConfigMap,
    DependencyReference,
    HelmRelease,
    HelmReleaseSpec,
    HelmRepository,
    HelmRepositorySpec,
    NamedResource,
    RepositoryReference,
    RollbackSpec,
)
from helm_operator.metrics import MetricsRegistry
from helm_operator.reconcile import ReconcileResult
from helm_operator.source_controller import ChartValuesCache, artifact_name
from helm_operator.store import InMemoryStore

from ..conftest import FakeEngine

RELEASE_ID = NamedResource("HelmRelease", "apps", "web")
REPO_ID = NamedResource("HelmRepository", "infra", "bitnami")
LABELS = {"release": "web", "namespace": "apps"}


@pytest.fixture(name="config")
def config_fixture() -> HelmControllerConfig:
    return HelmControllerConfig()


@pytest.fixture(name="controller")
def controller_fixture(
    store: InMemoryStore,
    engine: FakeEngine,
    config: HelmControllerConfig,
    registry: MetricsRegistry,
    recorder: LoggingEventRecorder,
) -> HelmReleaseController:
    """Create a release controller backed by the fake engine."""
    engine.default_values["nginx"] = "replicaCount: 1\n"
    return HelmReleaseController(
        store,
        engine,
        config,
        registry,
        recorder,
        values_cache=ChartValuesCache(store, engine, registry),
    )


async def create_repo(
    store: InMemoryStore,
    ready: bool = True,
    policy: CachePolicy = CachePolicy.DISABLED,
) -> None:
    """Create the repository the release installs from."""
    repo = await store.create(
        HelmRepository(
            name="bitnami",
            namespace="infra",
            spec=HelmRepositorySpec(
                url="https://charts.bitnami.com/bitnami",
                values_config_map_policy=policy,
            ),
        )
    )
    if ready:
        set_condition(
            repo.status.conditions,
            conditions.ready_condition(conditions.SYNC_COMPLETED, "synced"),
        )
        await store.update_status(repo)


def release_spec(**kwargs) -> HelmReleaseSpec:
    chart = ChartSpec(
        name="nginx",
        version="15.1.0",
        repository=RepositoryReference(name="bitnami", namespace="infra"),
    )
    return HelmReleaseSpec(
        **{"chart": chart, "values": "replicaCount: 2\n", "interval": "10m", **kwargs}
    )


async def create_release(
    store: InMemoryStore, name: str = "web", **kwargs
) -> HelmRelease:
    return await store.create(
        HelmRelease(name=name, namespace="apps", spec=release_spec(**kwargs))
    )


async def get_release(store: InMemoryStore, resource_id: NamedResource = RELEASE_ID) -> HelmRelease:
    release = await store.get(resource_id, HelmRelease)
    assert release is not None
    return release


async def update_spec(store: InMemoryStore, **kwargs) -> None:
    release = await get_release(store)
    for key, value in kwargs.items():
        setattr(release.spec, key, value)
    await store.update(release)


async def reconcile(controller: HelmReleaseController) -> ReconcileResult:
    """Reconcile twice, once to add the finalizer and once to do the work."""
    await controller.reconcile(RELEASE_ID)
    return await controller.reconcile(RELEASE_ID)


def condition_reason(release: HelmRelease, condition_type: str) -> str | None:
    if (condition := find_condition(release.status.conditions, condition_type)) is None:
        return None
    return condition.reason


@pytest.mark.parametrize(
    ("chart", "valid"),
    [
        (ChartSpec(name="nginx", repository=RepositoryReference(name="bitnami")), True),
        (ChartSpec(name="nginx", repository_url="https://charts.bitnami.com/bitnami"), True),
        (ChartSpec(name="podinfo", oci_repository="oci://ghcr.io/stefanprodan/charts"), True),
        (ChartSpec(name="nginx"), False),
        (ChartSpec(repository=RepositoryReference(name="bitnami")), False),
    ],
)
def test_validate_release(chart: ChartSpec, valid: bool) -> None:
    """Test a release needs a chart name and a source."""
    release = HelmRelease(name="web", spec=HelmReleaseSpec(chart=chart))
    assert (validate_release(release) is None) == valid


def test_needs_upgrade() -> None:
    """Test the reasons an upgrade is needed."""
    release = HelmRelease(name="web", namespace="apps", spec=release_spec())
    deployed = ReleaseInfo(
        name="web",
        namespace="apps",
        chart_name="nginx",
        chart_version="15.1.0",
        values={"replicaCount": 2},
    )
    assert needs_upgrade(release, deployed) is None

    release.spec.chart.version = "15.2.0"
    assert needs_upgrade(release, deployed) == "chart version changed to 15.2.0"

    release.spec.chart.version = None
    assert needs_upgrade(release, deployed) is None

    release.spec.values = "replicaCount: 2.0\n"
    assert needs_upgrade(release, deployed) == "values configuration changed"

    release.spec.values = "replicaCount:   2"
    release.status.last_applied_configuration = copy.deepcopy(release.spec)
    assert needs_upgrade(release, deployed) is None

    release.spec.chart.name = "apache"
    assert needs_upgrade(release, deployed) == "release configuration changed"


async def test_missing_release(controller: HelmReleaseController) -> None:
    """Test reconciling a missing object does nothing."""
    assert await controller.reconcile(RELEASE_ID) == ReconcileResult()


async def test_adds_finalizer(
    controller: HelmReleaseController, store: InMemoryStore, engine: FakeEngine
) -> None:
    """Test the first reconcile only adds the finalizer."""
    await create_repo(store)
    await create_release(store)
    assert await controller.reconcile(RELEASE_ID) == ReconcileResult()
    assert (await get_release(store)).finalizers == [FINALIZER]
    assert engine.calls == []


async def test_install(
    controller: HelmReleaseController,
    store: InMemoryStore,
    engine: FakeEngine,
    registry: MetricsRegistry,
    recorder: LoggingEventRecorder,
) -> None:
    """Test a new release is installed from its repository."""
    await create_repo(store)
    await create_release(store)
    result = await reconcile(controller)
    assert result == ReconcileResult(datetime.timedelta(minutes=10))
    assert engine.calls == ["get_release", "install"]

    request = engine.requests[0]
    assert isinstance(request, InstallRequest)
    assert request.chart == "infra-bitnami/nginx"
    assert request.version == "15.1.0"
    assert request.repo_url is None
    assert request.values == "replicaCount: 2\n"
    assert request.timeout == datetime.timedelta(minutes=10)

    release = await get_release(store)
    ready = find_condition(release.status.conditions, conditions.READY)
    assert ready is not None
    assert ready.status == ConditionStatus.TRUE
    assert ready.reason == conditions.INSTALL_COMPLETED
    assert condition_reason(release, conditions.RELEASED) == conditions.INSTALL_COMPLETED
    progressing = find_condition(release.status.conditions, conditions.PROGRESSING)
    assert progressing is not None
    assert progressing.status == ConditionStatus.FALSE
    assert find_condition(release.status.conditions, conditions.FAILED) is None

    assert release.status.helm_release is not None
    assert release.status.helm_release.revision == 1
    assert release.status.helm_release.chart == "nginx-15.1.0"
    assert release.status.last_applied_configuration == release.spec
    assert release.status.original_values == "replicaCount: 1\n"
    assert release.status.observed_generation == 1
    assert release.status.failure_count == 0

    assert (
        registry.counter(
            metrics.RELEASE_OPERATION_TOTAL, operation="install", status="success", **LABELS
        )
        == 1
    )
    assert (
        registry.histogram(
            metrics.RELEASE_OPERATION_DURATION, operation="install", **LABELS
        ).count
        == 1
    )
    assert recorder.reasons(RELEASE_ID) == [
        conditions.INSTALL_STARTED,
        conditions.INSTALL_COMPLETED,
    ]


async def test_up_to_date(
    controller: HelmReleaseController, store: InMemoryStore, engine: FakeEngine
) -> None:
    """Test nothing is changed when the deployed release matches."""
    await create_repo(store)
    await create_release(store)
    await reconcile(controller)
    engine.calls.clear()

    result = await controller.reconcile(RELEASE_ID)
    assert result == ReconcileResult(datetime.timedelta(minutes=10))
    assert engine.calls == ["get_release"]
    release = await get_release(store)
    assert condition_reason(release, conditions.READY) == conditions.INSTALL_COMPLETED
    assert release.status.helm_release is not None
    assert release.status.helm_release.revision == 1


async def test_no_interval(
    controller: HelmReleaseController, store: InMemoryStore
) -> None:
    """Test releases without a valid interval are not requeued."""
    await create_repo(store)
    await create_release(store, interval="often")
    assert await reconcile(controller) == ReconcileResult()


@pytest.mark.parametrize("interval", ["0s", "-5m"])
async def test_non_positive_interval(
    controller: HelmReleaseController, store: InMemoryStore, interval: str
) -> None:
    """Test releases with a zero or negative interval are not requeued."""
    await create_repo(store)
    await create_release(store, interval=interval)
    assert await reconcile(controller) == ReconcileResult()
    release = await get_release(store)
    assert condition_reason(release, conditions.READY) == conditions.INSTALL_COMPLETED


async def test_upgrade_on_values_change(
    controller: HelmReleaseController,
    store: InMemoryStore,
    engine: FakeEngine,
    recorder: LoggingEventRecorder,
) -> None:
    """Test changed values upgrade the release."""
    await create_repo(store)
    await create_release(store)
    await reconcile(controller)
    await update_spec(store, values="replicaCount: 3\n")
    engine.calls.clear()

    await controller.reconcile(RELEASE_ID)
    assert engine.calls == ["get_release", "upgrade"]
    request = engine.requests[-1]
    assert isinstance(request, UpgradeRequest)
    assert request.values == "replicaCount: 3\n"
    assert request.max_history == 10

    release = await get_release(store)
    assert condition_reason(release, conditions.READY) == conditions.UPGRADE_COMPLETED
    assert release.status.helm_release is not None
    assert release.status.helm_release.revision == 2
    assert release.status.observed_generation == 2
    assert release.status.last_applied_configuration is not None
    assert release.status.last_applied_configuration.values == "replicaCount: 3\n"
    started = [e for e in recorder.events if e.reason == conditions.UPGRADE_STARTED]
    assert started[0].message == "Upgrading release: values configuration changed"


async def test_values_formatting_does_not_upgrade(
    controller: HelmReleaseController, store: InMemoryStore, engine: FakeEngine
) -> None:
    """Test reformatted but equal values do not upgrade the release."""
    await create_repo(store)
    await create_release(store, values="replicaCount: 2\nimage:\n  tag: v1\n")
    await reconcile(controller)
    await update_spec(store, values="image: {tag: 'v1'}\nreplicaCount:   2\n")
    engine.calls.clear()

    await controller.reconcile(RELEASE_ID)
    assert engine.calls == ["get_release"]


async def test_upgrade_on_version_change(
    controller: HelmReleaseController,
    store: InMemoryStore,
    engine: FakeEngine,
    recorder: LoggingEventRecorder,
) -> None:
    """Test a new chart version upgrades the release."""
    await create_repo(store)
    await create_release(store)
    await reconcile(controller)
    release = await get_release(store)
    release.spec.chart.version = "15.2.0"
    await store.update(release)

    await controller.reconcile(RELEASE_ID)
    assert engine.calls[-1] == "upgrade"
    release = await get_release(store)
    assert release.status.helm_release is not None
    assert release.status.helm_release.chart == "nginx-15.2.0"
    started = [e for e in recorder.events if e.reason == conditions.UPGRADE_STARTED]
    assert started[0].message == "Upgrading release: chart version changed to 15.2.0"


async def test_upgrade_failure_rolls_back(
    controller: HelmReleaseController,
    store: InMemoryStore,
    engine: FakeEngine,
    registry: MetricsRegistry,
) -> None:
    """Test a failed upgrade is rolled back when enabled."""
    await create_repo(store)
    await create_release(store, rollback=RollbackSpec(enabled=True))
    await reconcile(controller)
    await update_spec(store, values="replicaCount: 3\n")
    engine.errors["upgrade"] = HelmException("context deadline exceeded")

    result = await controller.reconcile(RELEASE_ID)
    assert result.requeue_after is not None
    assert 4.5 <= result.requeue_after.total_seconds() <= 5.5
    assert engine.calls[-2:] == ["upgrade", "rollback"]

    release = await get_release(store)
    failed = find_condition(release.status.conditions, conditions.FAILED)
    assert failed is not None
    assert failed.status == ConditionStatus.TRUE
    assert failed.reason == conditions.UPGRADE_FAILED
    ready = find_condition(release.status.conditions, conditions.READY)
    assert ready is not None
    assert ready.status == ConditionStatus.FALSE
    assert [f.reason for f in release.status.failures] == [
        conditions.UPGRADE_FAILED,
        conditions.ROLLBACK_COMPLETED,
    ]
    assert release.status.failure_count == 1
    assert release.status.observed_generation == 1
    assert registry.counter(metrics.RELEASE_ROLLBACKS, status="success", **LABELS) == 1
    assert (
        registry.counter(
            metrics.RELEASE_OPERATION_ERRORS, operation="upgrade", **LABELS
        )
        == 1
    )


async def test_rollback_failure(
    controller: HelmReleaseController,
    store: InMemoryStore,
    engine: FakeEngine,
    registry: MetricsRegistry,
) -> None:
    """Test a failed rollback is recorded alongside the upgrade failure."""
    await create_repo(store)
    await create_release(store, rollback=RollbackSpec(enabled=True, to_revision=1))
    await reconcile(controller)
    await update_spec(store, values="replicaCount: 3\n")
    engine.errors["upgrade"] = HelmException("context deadline exceeded")
    engine.errors["rollback"] = HelmException("rollback: release has no 1 version")

    await controller.reconcile(RELEASE_ID)
    release = await get_release(store)
    assert [f.reason for f in release.status.failures] == [
        conditions.UPGRADE_FAILED,
        conditions.ROLLBACK_FAILED,
    ]
    assert registry.counter(metrics.RELEASE_ROLLBACKS, status="failure", **LABELS) == 1


async def test_upgrade_failure_without_rollback(
    controller: HelmReleaseController, store: InMemoryStore, engine: FakeEngine
) -> None:
    """Test rollback is not attempted unless enabled."""
    await create_repo(store)
    await create_release(store)
    await reconcile(controller)
    await update_spec(store, values="replicaCount: 3\n")
    engine.errors["upgrade"] = HelmException("context deadline exceeded")

    await controller.reconcile(RELEASE_ID)
    assert "rollback" not in engine.calls
    release = await get_release(store)
    assert [f.reason for f in release.status.failures] == [conditions.UPGRADE_FAILED]


async def test_install_failure_not_retryable(
    controller: HelmReleaseController, store: InMemoryStore, engine: FakeEngine
) -> None:
    """Test failures that will not heal on their own wait the full requeue."""
    await create_repo(store)
    await create_release(store)
    engine.errors["install"] = HelmException(
        'chart "nginx" matching 15.1.0 not found in infra-bitnami index'
    )
    result = await reconcile(controller)
    assert result == ReconcileResult(datetime.timedelta(minutes=5))

    release = await get_release(store)
    assert condition_reason(release, conditions.FAILED) == conditions.INSTALL_FAILED
    assert release.status.failure_count == 1
    assert release.status.observed_generation == 0
    progressing = find_condition(release.status.conditions, conditions.PROGRESSING)
    assert progressing is not None
    assert progressing.status == ConditionStatus.FALSE


async def test_failure_recovery(
    controller: HelmReleaseController, store: InMemoryStore, engine: FakeEngine
) -> None:
    """Test consecutive failures back off and a success clears them."""
    await create_repo(store)
    await create_release(store)
    engine.errors["install"] = HelmException("dial tcp: connection refused")
    first = await reconcile(controller)
    second = await controller.reconcile(RELEASE_ID)
    assert first.requeue_after is not None
    assert second.requeue_after is not None
    assert second.requeue_after > first.requeue_after
    assert (await get_release(store)).status.failure_count == 2

    del engine.errors["install"]
    await controller.reconcile(RELEASE_ID)
    release = await get_release(store)
    assert release.status.failure_count == 0
    assert find_condition(release.status.conditions, conditions.FAILED) is None
    assert len(release.status.failures) == 2


async def test_failure_history_bounded(
    controller: HelmReleaseController,
    store: InMemoryStore,
    engine: FakeEngine,
    config: HelmControllerConfig,
) -> None:
    """Test only the most recent failures are kept."""
    config.max_failure_history = 3
    await create_repo(store)
    await create_release(store)
    await controller.reconcile(RELEASE_ID)
    for i in range(5):
        engine.errors["install"] = HelmException(f"failure {i}")
        await controller.reconcile(RELEASE_ID)

    release = await get_release(store)
    assert release.status.failure_count == 5
    assert [f.message for f in release.status.failures] == [
        "failure 2",
        "failure 3",
        "failure 4",
    ]


async def test_get_release_failure(
    controller: HelmReleaseController, store: InMemoryStore, engine: FakeEngine
) -> None:
    """Test an engine error while reading the release is reported."""
    await create_repo(store)
    await create_release(store)
    engine.errors["get_release"] = HelmException(
        "Kubernetes cluster unreachable: connection refused"
    )
    await reconcile(controller)
    assert "install" not in engine.calls
    release = await get_release(store)
    assert condition_reason(release, conditions.FAILED) == conditions.INSTALL_FAILED


async def test_install_connection_error(
    controller: HelmReleaseController, store: InMemoryStore, engine: FakeEngine
) -> None:
    """Test errors raised outside the helm adapter are reported as failures."""
    await create_repo(store)
    await create_release(store)
    engine.errors["install"] = ConnectionResetError("connection reset by peer")
    result = await reconcile(controller)
    assert result.requeue_after is not None
    assert (
        datetime.timedelta(seconds=4.5)
        <= result.requeue_after
        <= datetime.timedelta(seconds=5.5)
    )

    release = await get_release(store)
    assert condition_reason(release, conditions.FAILED) == conditions.INSTALL_FAILED
    assert release.status.failure_count == 1
    progressing = find_condition(release.status.conditions, conditions.PROGRESSING)
    assert progressing is not None
    assert progressing.status == ConditionStatus.FALSE


async def test_get_release_connection_error(
    controller: HelmReleaseController, store: InMemoryStore, engine: FakeEngine
) -> None:
    """Test a connection error while reading the release does not install."""
    await create_repo(store)
    await create_release(store)
    engine.errors["get_release"] = ConnectionRefusedError("connection refused")
    await reconcile(controller)
    assert "install" not in engine.calls
    release = await get_release(store)
    assert condition_reason(release, conditions.FAILED) == conditions.INSTALL_FAILED


async def test_repository_not_ready(
    controller: HelmReleaseController, store: InMemoryStore, engine: FakeEngine
) -> None:
    """Test a release waits for its repository."""
    await create_repo(store, ready=False)
    await create_release(store)
    result = await reconcile(controller)
    assert result == ReconcileResult(datetime.timedelta(minutes=1))
    assert engine.calls == []

    release = await get_release(store)
    failed = find_condition(release.status.conditions, conditions.FAILED)
    assert failed is not None
    assert failed.reason == conditions.DEPENDENCY_NOT_READY
    assert "HelmRepository/infra/bitnami is not ready" in failed.message


async def test_repository_missing(
    controller: HelmReleaseController, store: InMemoryStore, engine: FakeEngine
) -> None:
    """Test a release referencing a missing repository waits."""
    await create_release(store)
    assert await reconcile(controller) == ReconcileResult(datetime.timedelta(minutes=1))
    release = await get_release(store)
    failed = find_condition(release.status.conditions, conditions.FAILED)
    assert failed is not None
    assert "HelmRepository/infra/bitnami not found" in failed.message


async def test_depends_on(
    controller: HelmReleaseController, store: InMemoryStore, engine: FakeEngine
) -> None:
    """Test a release waits for the releases it depends on."""
    await create_repo(store)
    await create_release(store, depends_on=[DependencyReference(name="database")])
    await reconcile(controller)
    assert engine.calls == []
    release = await get_release(store)
    failed = find_condition(release.status.conditions, conditions.FAILED)
    assert failed is not None
    assert "HelmRelease/apps/database not found" in failed.message

    database = await create_release(store, name="database")
    set_condition(
        database.status.conditions,
        conditions.ready_condition(conditions.INSTALL_COMPLETED, "ready"),
    )
    await store.update_status(database)

    await controller.reconcile(RELEASE_ID)
    assert engine.calls == ["get_release", "install"]
    release = await get_release(store)
    assert condition_reason(release, conditions.READY) == conditions.INSTALL_COMPLETED
    assert find_condition(release.status.conditions, conditions.FAILED) is None


async def test_invalid_release(
    controller: HelmReleaseController, store: InMemoryStore, engine: FakeEngine
) -> None:
    """Test a release without a chart source is a configuration error."""
    await create_release(store, chart=ChartSpec(name="nginx"))
    assert await reconcile(controller) == ReconcileResult(datetime.timedelta(minutes=5))
    assert engine.calls == []
    release = await get_release(store)
    assert condition_reason(release, conditions.FAILED) == conditions.CONFIGURATION_ERROR


async def test_suspended(
    controller: HelmReleaseController, store: InMemoryStore, engine: FakeEngine
) -> None:
    """Test a suspended release is left alone."""
    await create_repo(store)
    await create_release(store, suspend=True)
    assert await reconcile(controller) == ReconcileResult()
    assert engine.calls == []
    release = await get_release(store)
    ready = find_condition(release.status.conditions, conditions.READY)
    assert ready is not None
    assert ready.status == ConditionStatus.FALSE
    assert ready.reason == conditions.RELEASE_SUSPENDED


async def test_direct_repository_url(
    controller: HelmReleaseController, store: InMemoryStore, engine: FakeEngine
) -> None:
    """Test charts installed by URL need no repository object."""
    await create_release(
        store,
        chart=ChartSpec(name="nginx", repository_url="https://charts.bitnami.com/bitnami"),
    )
    await reconcile(controller)
    request = engine.requests[0]
    assert isinstance(request, InstallRequest)
    assert request.chart == "nginx"
    assert request.repo_url == "https://charts.bitnami.com/bitnami"
    assert request.version is None


async def test_oci_chart(
    controller: HelmReleaseController, store: InMemoryStore, engine: FakeEngine
) -> None:
    """Test charts installed from an OCI registry."""
    await create_release(
        store,
        chart=ChartSpec(
            name="podinfo",
            version="6.5.0",
            oci_repository="oci://ghcr.io/stefanprodan/charts/",
        ),
    )
    await reconcile(controller)
    request = engine.requests[0]
    assert isinstance(request, InstallRequest)
    assert request.chart == "oci://ghcr.io/stefanprodan/charts/podinfo"
    assert request.version == "6.5.0"


async def test_on_demand_values_snapshot(
    controller: HelmReleaseController, store: InMemoryStore
) -> None:
    """Test deploying from an on-demand repository snapshots the chart values."""
    await create_repo(store, policy=CachePolicy.ON_DEMAND)
    await create_release(store)
    await reconcile(controller)

    snapshot = await store.get(
        NamedResource("ConfigMap", "infra", artifact_name("bitnami", "nginx", "15.1.0")),
        ConfigMap,
    )
    assert snapshot is not None
    assert snapshot.data == {"values.yaml": "replicaCount: 1\n"}
    assert snapshot.owner == REPO_ID


async def test_no_snapshot_when_disabled(
    controller: HelmReleaseController, store: InMemoryStore
) -> None:
    """Test no snapshot is created for repositories with the cache disabled."""
    await create_repo(store)
    await create_release(store)
    await reconcile(controller)
    assert await store.list_objects(ConfigMap) == []


async def test_delete(
    controller: HelmReleaseController,
    store: InMemoryStore,
    engine: FakeEngine,
    recorder: LoggingEventRecorder,
) -> None:
    """Test deleting the object uninstalls the release."""
    await create_repo(store)
    await create_release(store)
    await reconcile(controller)

    await store.delete(RELEASE_ID)
    assert (await get_release(store)).being_deleted
    assert await controller.reconcile(RELEASE_ID) == ReconcileResult()
    assert engine.calls[-1] == "uninstall"
    assert engine.releases == {}
    assert await store.get(RELEASE_ID, HelmRelease) is None
    assert recorder.reasons(RELEASE_ID)[-2:] == [
        conditions.UNINSTALL_STARTED,
        conditions.UNINSTALL_COMPLETED,
    ]


async def test_delete_already_uninstalled(
    controller: HelmReleaseController, store: InMemoryStore, engine: FakeEngine
) -> None:
    """Test a release missing from the engine does not block deletion."""
    await create_repo(store)
    await create_release(store)
    await reconcile(controller)
    engine.releases.clear()

    await store.delete(RELEASE_ID)
    await controller.reconcile(RELEASE_ID)
    assert await store.get(RELEASE_ID, HelmRelease) is None


async def test_delete_engine_failure(
    controller: HelmReleaseController,
    store: InMemoryStore,
    engine: FakeEngine,
    recorder: LoggingEventRecorder,
    registry: MetricsRegistry,
) -> None:
    """Test uninstall errors are logged and deletion still completes."""
    await create_repo(store)
    await create_release(store)
    await reconcile(controller)
    engine.errors["uninstall"] = HelmException("Kubernetes cluster unreachable")

    await store.delete(RELEASE_ID)
    await controller.reconcile(RELEASE_ID)
    assert await store.get(RELEASE_ID, HelmRelease) is None
    assert conditions.UNINSTALL_FAILED in recorder.reasons(RELEASE_ID)
    assert (
        registry.counter(
            metrics.RELEASE_OPERATION_ERRORS, operation="uninstall", **LABELS
        )
        == 1
    )


async def test_delete_connection_error(
    controller: HelmReleaseController,
    store: InMemoryStore,
    engine: FakeEngine,
    recorder: LoggingEventRecorder,
) -> None:
    """Test deletion completes when uninstall raises a connection error."""
    await create_repo(store)
    await create_release(store)
    await reconcile(controller)
    engine.errors["uninstall"] = ConnectionRefusedError("connection refused")

    await store.delete(RELEASE_ID)
    assert await controller.reconcile(RELEASE_ID) == ReconcileResult()
    assert await store.get(RELEASE_ID, HelmRelease) is None
    assert conditions.UNINSTALL_FAILED in recorder.reasons(RELEASE_ID)
