"""Shared fixtures for helm-operator tests."""

import datetime
from collections.abc import Generator

import pytest

from helm_operator.events import LoggingEventRecorder
from helm_operator.exceptions import HelmException, ReleaseNotFoundError
from helm_operator.helm import (
    DEFAULT_TIMEOUT,
    InstallRequest,
    PackageEngine,
    PackageVersion,
    ReleaseInfo,
    RepositoryEntry,
    RollbackRequest,
    UninstallRequest,
    UpgradeRequest,
)
from helm_operator.metrics import MetricsRegistry
from helm_operator.store import InMemoryStore
from helm_operator.task import TaskService, task_service_context
from helm_operator.values import parse_values


def _chart_name(chart: str) -> str:
    return chart.rstrip("/").rsplit("/", 1)[-1]


class FakeEngine(PackageEngine):
    """Package engine that keeps repositories and releases in memory.

    Errors placed in `errors` are raised by the method of the same name until
    removed.
    """

    def __init__(self) -> None:
        self.repositories: dict[str, RepositoryEntry] = {}
        self.packages: dict[str, list[PackageVersion]] = {}
        self.default_values: dict[str, str] = {}
        self.releases: dict[tuple[str, str], ReleaseInfo] = {}
        self.errors: dict[str, Exception] = {}
        self.calls: list[str] = []
        self.requests: list[object] = []

    def _call(self, method: str) -> None:
        self.calls.append(method)
        if (err := self.errors.get(method)) is not None:
            raise err

    async def add_repository(self, entry: RepositoryEntry) -> None:
        self._call("add_repository")
        self.requests.append(entry)
        self.repositories[entry.name] = entry

    async def sync_repository_index(
        self, name: str, timeout: datetime.timedelta = DEFAULT_TIMEOUT
    ) -> None:
        self._call("sync_repository_index")
        if name not in self.repositories:
            raise HelmException(f'no repo named "{name}" found')

    async def remove_repository(
        self, name: str, timeout: datetime.timedelta = DEFAULT_TIMEOUT
    ) -> None:
        self._call("remove_repository")
        if self.repositories.pop(name, None) is None:
            raise HelmException(f'no repo named "{name}" found')

    async def list_repositories(
        self, timeout: datetime.timedelta = DEFAULT_TIMEOUT
    ) -> list[str]:
        self._call("list_repositories")
        return list(self.repositories)

    async def list_packages(
        self, name: str, timeout: datetime.timedelta = DEFAULT_TIMEOUT
    ) -> list[PackageVersion]:
        self._call("list_packages")
        return list(self.packages.get(name, []))

    async def get_package_default_values(
        self,
        chart: str,
        version: str | None,
        timeout: datetime.timedelta = DEFAULT_TIMEOUT,
    ) -> str:
        self._call("get_package_default_values")
        return self.default_values.get(_chart_name(chart), "")

    async def get_release(
        self,
        name: str,
        namespace: str,
        timeout: datetime.timedelta = DEFAULT_TIMEOUT,
    ) -> ReleaseInfo:
        self._call("get_release")
        if (info := self.releases.get((name, namespace))) is None:
            raise ReleaseNotFoundError(name, namespace)
        return info

    def _deploy(
        self,
        name: str,
        namespace: str,
        chart: str,
        version: str | None,
        values: str | None,
        revision: int,
    ) -> ReleaseInfo:
        chart_name = _chart_name(chart)
        info = ReleaseInfo(
            name=name,
            namespace=namespace,
            revision=revision,
            status="deployed",
            chart_name=chart_name,
            chart_version=version or "1.0.0",
            values=parse_values(values),
            default_values=parse_values(self.default_values.get(chart_name)),
        )
        self.releases[(name, namespace)] = info
        return info

    async def install(self, request: InstallRequest) -> ReleaseInfo:
        self._call("install")
        self.requests.append(request)
        return self._deploy(
            request.name,
            request.namespace,
            request.chart,
            request.version,
            request.values,
            revision=1,
        )

    async def upgrade(self, request: UpgradeRequest) -> ReleaseInfo:
        self._call("upgrade")
        self.requests.append(request)
        current = self.releases[(request.name, request.namespace)]
        return self._deploy(
            request.name,
            request.namespace,
            request.chart,
            request.version,
            request.values,
            revision=current.revision + 1,
        )

    async def uninstall(self, request: UninstallRequest) -> None:
        self._call("uninstall")
        self.requests.append(request)
        if self.releases.pop((request.name, request.namespace), None) is None:
            raise ReleaseNotFoundError(request.name, request.namespace)

    async def rollback(self, request: RollbackRequest) -> None:
        self._call("rollback")
        self.requests.append(request)


@pytest.fixture(name="task_service", autouse=True)
def task_service_fixture() -> Generator[TaskService, None, None]:
    """Create a task service for testing."""
    with task_service_context() as service:
        yield service


@pytest.fixture(name="store")
def store_fixture() -> InMemoryStore:
    """Create an empty store."""
    return InMemoryStore()


@pytest.fixture(name="engine")
def engine_fixture() -> FakeEngine:
    """Create a fake package engine."""
    return FakeEngine()


@pytest.fixture(name="registry")
def registry_fixture() -> MetricsRegistry:
    """Create a metrics registry."""
    return MetricsRegistry()


@pytest.fixture(name="recorder")
def recorder_fixture() -> LoggingEventRecorder:
    """Create an event recorder."""
    return LoggingEventRecorder()
