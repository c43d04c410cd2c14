"""Library for driving the package engine (the `helm` binary).

The controllers only depend on the two capability interfaces defined here:
`RepositoryManager` for chart sources and `ReleaseManager` for deployed
releases. The `Helm` class implements both by shelling out to the helm CLI
with its own repository config and cache directories:

```python
from helm_operator.helm import Helm, RepositoryEntry

helm = Helm(Path("/tmp/path/helm"), Path("/tmp/path/cache"))
await helm.add_repository(RepositoryEntry(name="default-podinfo", url=url))
for package in await helm.list_packages("default-podinfo"):
    print(f"Found chart {package.name} {package.version}")
```

Every call accepts a timeout and may be cancelled, which kills the running
helm process.
"""

from abc import ABC, abstractmethod
import datetime
from dataclasses import dataclass, field
import json
import logging
import os
import re
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import aiofiles
from aiofiles.ospath import exists
import yaml

from . import command
from .exceptions import HelmException, ReleaseNotFoundError
from .manifest import HelmReleaseInfo

__all__ = [
    "Helm",
    "RepositoryManager",
    "ReleaseManager",
    "PackageEngine",
    "RepositoryEntry",
    "PackageVersion",
    "InstallRequest",
    "UpgradeRequest",
    "UninstallRequest",
    "RollbackRequest",
    "ReleaseInfo",
]

_LOGGER = logging.getLogger(__name__)


HELM_BIN = "helm"

DEFAULT_TIMEOUT = datetime.timedelta(minutes=5)

# Extra time given to the helm process beyond its own --timeout
_GRACE_PERIOD = 30.0

_NO_REPOSITORIES = "no repositories"

# Helm reports nanoseconds, datetime accepts at most microseconds
_FRACTION = re.compile(r"(\.\d{6})\d+")


def _timeout_flag(timeout: datetime.timedelta) -> str:
    return f"{int(timeout.total_seconds())}s"


def _load_json(out: str) -> Any:
    try:
        return json.loads(out)
    except ValueError as err:
        raise HelmException(
            f"Unable to parse helm output: {err}", output=str(err)
        ) from err


def _parse_release(out: str) -> "ReleaseInfo":
    return ReleaseInfo.parse_doc(_load_json(out))


def _parse_time(value: Any) -> datetime.datetime | None:
    """Parse a timestamp reported by helm or found in an index."""
    if isinstance(value, datetime.datetime):
        parsed = value
    elif value and isinstance(value, str):
        try:
            parsed = datetime.datetime.fromisoformat(_FRACTION.sub(r"\1", value))
        except ValueError:
            _LOGGER.debug("Ignoring unparseable timestamp '%s'", value)
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


@dataclass
class RepositoryEntry:
    """A repository registration with inline credentials."""

    name: str
    """The local name used to refer to the repository."""

    url: str
    """The index URL or oci:// registry reference."""

    oci: bool = False
    """Whether charts are served from an OCI registry."""

    username: str | None = None
    password: str | None = None
    insecure_skip_tls_verify: bool = False
    ca_file: str | None = None
    cert_file: str | None = None
    key_file: str | None = None

    ca_data: str | None = None
    """PEM material resolved from a secret, written to a private file."""

    cert_data: str | None = None
    key_data: str | None = None

    timeout: datetime.timedelta = DEFAULT_TIMEOUT

    def __repr__(self) -> str:
        return f"RepositoryEntry(name={self.name!r}, url={self.url!r}, oci={self.oci})"


@dataclass
class PackageVersion:
    """A version of a chart listed in a repository index."""

    name: str
    version: str
    app_version: str | None = None
    description: str | None = None
    created: datetime.datetime | None = None
    digest: str | None = None


@dataclass
class InstallRequest:
    """Arguments for installing a release."""

    name: str
    namespace: str
    chart: str
    """Chart reference, e.g. `repo/chart` or an oci:// reference."""

    version: str | None = None
    repo_url: str | None = None
    """Repository URL used when the chart is not from a registered repository."""

    values: str | None = None
    create_namespace: bool = False
    wait: bool = True
    wait_for_jobs: bool = True
    timeout: datetime.timedelta = datetime.timedelta(minutes=10)
    skip_crds: bool = False
    replace: bool = False
    disable_hooks: bool = False


@dataclass
class UpgradeRequest:
    """Arguments for upgrading a release."""

    name: str
    namespace: str
    chart: str
    version: str | None = None
    repo_url: str | None = None
    values: str | None = None
    wait: bool = True
    wait_for_jobs: bool = True
    timeout: datetime.timedelta = datetime.timedelta(minutes=10)
    force: bool = False
    reset_values: bool = False
    reuse_values: bool = False
    recreate: bool = False
    max_history: int = 10
    cleanup_on_fail: bool = True
    disable_hooks: bool = False


@dataclass
class UninstallRequest:
    """Arguments for uninstalling a release."""

    name: str
    namespace: str
    timeout: datetime.timedelta = datetime.timedelta(minutes=5)
    disable_hooks: bool = False
    keep_history: bool = False


@dataclass
class RollbackRequest:
    """Arguments for rolling back a release."""

    name: str
    namespace: str
    revision: int = 0
    """Target revision, 0 meaning the previous one."""

    timeout: datetime.timedelta = datetime.timedelta(minutes=5)
    wait: bool = True
    cleanup_on_fail: bool = True
    force: bool = False
    disable_hooks: bool = False


@dataclass
class ReleaseInfo:
    """A release as reported by the engine."""

    name: str
    namespace: str
    revision: int = 0
    status: str | None = None
    first_deployed: datetime.datetime | None = None
    last_deployed: datetime.datetime | None = None
    description: str | None = None
    chart_name: str | None = None
    chart_version: str | None = None
    app_version: str | None = None
    values: dict[str, Any] = field(default_factory=dict)
    """User supplied values of the deployed revision."""

    default_values: dict[str, Any] = field(default_factory=dict)
    """Default values of the deployed chart."""

    @property
    def chart(self) -> str | None:
        """The deployed chart as `name-version`."""
        if not self.chart_name:
            return None
        if not self.chart_version:
            return self.chart_name
        return f"{self.chart_name}-{self.chart_version}"

    def to_status(self) -> HelmReleaseInfo:
        """Return the release info recorded in the object status."""
        return HelmReleaseInfo(
            name=self.name,
            namespace=self.namespace,
            revision=self.revision,
            status=self.status,
            first_deployed=self.first_deployed,
            last_deployed=self.last_deployed,
            description=self.description,
            chart=self.chart,
            app_version=self.app_version,
        )

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "ReleaseInfo":
        """Parse the JSON release object printed by helm."""
        info = doc.get("info") or {}
        chart = doc.get("chart") or {}
        metadata = chart.get("metadata") or {}
        return cls(
            name=doc["name"],
            namespace=doc.get("namespace", ""),
            revision=int(doc.get("version", 0)),
            status=info.get("status"),
            first_deployed=_parse_time(info.get("first_deployed")),
            last_deployed=_parse_time(info.get("last_deployed")),
            description=info.get("description"),
            chart_name=metadata.get("name"),
            chart_version=metadata.get("version"),
            app_version=metadata.get("appVersion"),
            values=doc.get("config") or {},
            default_values=chart.get("values") or {},
        )


class RepositoryManager(ABC):
    """Engine capability for managing chart repositories."""

    @abstractmethod
    async def add_repository(self, entry: RepositoryEntry) -> None:
        """Register or re-register a repository and fetch its index."""

    @abstractmethod
    async def sync_repository_index(
        self, name: str, timeout: datetime.timedelta = DEFAULT_TIMEOUT
    ) -> None:
        """Refresh the index of a registered repository."""

    @abstractmethod
    async def remove_repository(
        self, name: str, timeout: datetime.timedelta = DEFAULT_TIMEOUT
    ) -> None:
        """Remove a repository registration."""

    @abstractmethod
    async def list_repositories(
        self, timeout: datetime.timedelta = DEFAULT_TIMEOUT
    ) -> list[str]:
        """Return the names of all registered repositories."""

    @abstractmethod
    async def list_packages(
        self, name: str, timeout: datetime.timedelta = DEFAULT_TIMEOUT
    ) -> list[PackageVersion]:
        """Return every version of every chart in a repository index.

        Versions of a chart are returned newest first.
        """

    @abstractmethod
    async def get_package_default_values(
        self,
        chart: str,
        version: str | None,
        timeout: datetime.timedelta = DEFAULT_TIMEOUT,
    ) -> str:
        """Return the default values of a chart version as YAML text."""


class ReleaseManager(ABC):
    """Engine capability for managing releases."""

    @abstractmethod
    async def get_release(
        self,
        name: str,
        namespace: str,
        timeout: datetime.timedelta = DEFAULT_TIMEOUT,
    ) -> ReleaseInfo:
        """Return the deployed release, raising ReleaseNotFoundError if absent."""

    @abstractmethod
    async def install(self, request: InstallRequest) -> ReleaseInfo:
        """Install a new release."""

    @abstractmethod
    async def upgrade(self, request: UpgradeRequest) -> ReleaseInfo:
        """Upgrade an existing release."""

    @abstractmethod
    async def uninstall(self, request: UninstallRequest) -> None:
        """Uninstall a release, raising ReleaseNotFoundError if absent."""

    @abstractmethod
    async def rollback(self, request: RollbackRequest) -> None:
        """Roll a release back to an earlier revision."""


class PackageEngine(RepositoryManager, ReleaseManager):
    """An engine that provides both capabilities."""


class Helm(PackageEngine):
    """Manages repositories and releases with the helm CLI."""

    def __init__(self, tmp_dir: Path, cache_dir: Path) -> None:
        """Initialize Helm."""
        self._tmp_dir = tmp_dir
        self._cache_dir = cache_dir
        self._flags = [
            "--repository-cache",
            str(cache_dir),
            "--repository-config",
            str(self._tmp_dir / "repository-config.yaml"),
            "--registry-config",
            str(self._tmp_dir / "registry-config.json"),
        ]

    async def _run(
        self,
        args: list[str],
        timeout: datetime.timedelta,
        redact: tuple[str, ...] = (),
    ) -> str:
        cmd = command.Command(
            [HELM_BIN, *args, *self._flags],
            exc=HelmException,
            timeout=timeout.total_seconds() + _GRACE_PERIOD,
            redact=redact,
        )
        return await command.run(cmd)

    async def _write_private(self, path: Path, content: str) -> str:
        path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(str(path), mode="w") as out:
            await out.write(content)
        os.chmod(path, 0o600)
        return str(path)

    async def _tls_args(self, entry: RepositoryEntry) -> list[str]:
        tls_dir = self._tmp_dir / "tls" / entry.name
        ca_file = entry.ca_file
        cert_file = entry.cert_file
        key_file = entry.key_file
        if entry.ca_data:
            ca_file = await self._write_private(tls_dir / "ca.crt", entry.ca_data)
        if entry.cert_data:
            cert_file = await self._write_private(tls_dir / "tls.crt", entry.cert_data)
        if entry.key_data:
            key_file = await self._write_private(tls_dir / "tls.key", entry.key_data)
        args = []
        if ca_file:
            args.extend(["--ca-file", ca_file])
        if cert_file:
            args.extend(["--cert-file", cert_file])
        if key_file:
            args.extend(["--key-file", key_file])
        if entry.insecure_skip_tls_verify:
            args.append("--insecure-skip-tls-verify")
        return args

    async def add_repository(self, entry: RepositoryEntry) -> None:
        """Register or re-register a repository and fetch its index."""
        tls_args = await self._tls_args(entry)
        redact: tuple[str, ...] = (entry.password,) if entry.password else ()
        if entry.oci:
            # OCI registries need no registration, only credentials
            if not entry.username:
                _LOGGER.debug("No credentials for OCI repository %s", entry.name)
                return
            host = urlparse(entry.url).netloc
            args = ["registry", "login", host, "--username", entry.username]
            args.extend(["--password", entry.password or ""])
            args.extend(arg for arg in tls_args if arg != "--insecure-skip-tls-verify")
            if entry.insecure_skip_tls_verify:
                args.append("--insecure")
            await self._run(args, entry.timeout, redact)
            return
        args = ["repo", "add", entry.name, entry.url, "--force-update"]
        if entry.username:
            args.extend(["--username", entry.username])
            args.extend(["--password", entry.password or ""])
        args.extend(tls_args)
        await self._run(args, entry.timeout, redact)

    async def sync_repository_index(
        self, name: str, timeout: datetime.timedelta = DEFAULT_TIMEOUT
    ) -> None:
        """Refresh the index of a registered repository."""
        await self._run(["repo", "update", name], timeout)

    async def remove_repository(
        self, name: str, timeout: datetime.timedelta = DEFAULT_TIMEOUT
    ) -> None:
        """Remove a repository registration."""
        await self._run(["repo", "remove", name], timeout)

    async def list_repositories(
        self, timeout: datetime.timedelta = DEFAULT_TIMEOUT
    ) -> list[str]:
        """Return the names of all registered repositories."""
        try:
            out = await self._run(["repo", "list", "--output", "json"], timeout)
        except HelmException as err:
            if _NO_REPOSITORIES in (err.output or ""):
                return []
            raise
        return [repo["name"] for repo in _load_json(out or "[]")]

    async def list_packages(
        self, name: str, timeout: datetime.timedelta = DEFAULT_TIMEOUT
    ) -> list[PackageVersion]:
        """Return every version of every chart in the cached repository index."""
        index_file = self._cache_dir / f"{name}-index.yaml"
        if not await exists(index_file):
            raise HelmException(f"Index for repository {name} not found: {index_file}")
        async with aiofiles.open(str(index_file)) as index:
            content = await index.read()
        try:
            doc = yaml.safe_load(content) or {}
        except yaml.YAMLError as err:
            raise HelmException(f"Unable to parse index for repository {name}: {err}") from err
        packages: list[PackageVersion] = []
        for chart_name, entries in (doc.get("entries") or {}).items():
            versions = [
                PackageVersion(
                    name=chart_name,
                    version=str(entry.get("version", "")),
                    app_version=(
                        str(entry["appVersion"]) if entry.get("appVersion") else None
                    ),
                    description=entry.get("description"),
                    created=_parse_time(entry.get("created")),
                    digest=entry.get("digest"),
                )
                for entry in entries or []
            ]
            versions.sort(
                key=lambda v: (
                    v.created or datetime.datetime.min.replace(tzinfo=datetime.timezone.utc)
                ),
                reverse=True,
            )
            packages.extend(versions)
        return packages

    async def get_package_default_values(
        self,
        chart: str,
        version: str | None,
        timeout: datetime.timedelta = DEFAULT_TIMEOUT,
    ) -> str:
        """Return the default values of a chart version as YAML text."""
        args = ["show", "values", chart]
        if version:
            args.extend(["--version", version])
        return await self._run(args, timeout)

    async def get_release(
        self,
        name: str,
        namespace: str,
        timeout: datetime.timedelta = DEFAULT_TIMEOUT,
    ) -> ReleaseInfo:
        """Return the deployed release, raising ReleaseNotFoundError if absent."""
        args = ["status", name, "--namespace", namespace, "--output", "json"]
        try:
            out = await self._run(args, timeout)
        except HelmException as err:
            if "not found" in (err.output or ""):
                raise ReleaseNotFoundError(
                    name, namespace, str(err), err.output
                ) from err
            raise
        return _parse_release(out)

    async def _values_args(self, name: str, values: str | None) -> list[str]:
        if not values:
            return []
        path = self._tmp_dir / "values" / f"{name}.yaml"
        return ["--values", await self._write_private(path, values)]

    async def install(self, request: InstallRequest) -> ReleaseInfo:
        """Install a new release."""
        args = ["install", request.name, request.chart]
        args.extend(["--namespace", request.namespace, "--output", "json"])
        if request.version:
            args.extend(["--version", request.version])
        if request.repo_url:
            args.extend(["--repo", request.repo_url])
        args.extend(await self._values_args(request.name, request.values))
        args.extend(["--timeout", _timeout_flag(request.timeout)])
        if request.create_namespace:
            args.append("--create-namespace")
        if request.wait:
            args.append("--wait")
        if request.wait_for_jobs:
            args.append("--wait-for-jobs")
        if request.skip_crds:
            args.append("--skip-crds")
        if request.replace:
            args.append("--replace")
        if request.disable_hooks:
            args.append("--no-hooks")
        out = await self._run(args, request.timeout)
        return _parse_release(out)

    async def upgrade(self, request: UpgradeRequest) -> ReleaseInfo:
        """Upgrade an existing release."""
        args = ["upgrade", request.name, request.chart]
        args.extend(["--namespace", request.namespace, "--output", "json"])
        if request.version:
            args.extend(["--version", request.version])
        if request.repo_url:
            args.extend(["--repo", request.repo_url])
        args.extend(await self._values_args(request.name, request.values))
        args.extend(["--timeout", _timeout_flag(request.timeout)])
        args.extend(["--history-max", str(request.max_history)])
        if request.wait:
            args.append("--wait")
        if request.wait_for_jobs:
            args.append("--wait-for-jobs")
        if request.force:
            args.append("--force")
        if request.reset_values:
            args.append("--reset-values")
        if request.reuse_values:
            args.append("--reuse-values")
        if request.cleanup_on_fail:
            args.append("--cleanup-on-fail")
        if request.disable_hooks:
            args.append("--no-hooks")
        if request.recreate:
            _LOGGER.debug("Pod recreation is not supported by helm 3, ignoring")
        out = await self._run(args, request.timeout)
        return _parse_release(out)

    async def uninstall(self, request: UninstallRequest) -> None:
        """Uninstall a release, raising ReleaseNotFoundError if absent."""
        args = ["uninstall", request.name, "--namespace", request.namespace]
        args.extend(["--timeout", _timeout_flag(request.timeout)])
        if request.disable_hooks:
            args.append("--no-hooks")
        if request.keep_history:
            args.append("--keep-history")
        try:
            await self._run(args, request.timeout)
        except HelmException as err:
            if "not found" in (err.output or ""):
                raise ReleaseNotFoundError(
                    request.name, request.namespace, str(err), err.output
                ) from err
            raise

    async def rollback(self, request: RollbackRequest) -> None:
        """Roll a release back to an earlier revision."""
        args = ["rollback", request.name]
        if request.revision:
            args.append(str(request.revision))
        args.extend(["--namespace", request.namespace])
        args.extend(["--timeout", _timeout_flag(request.timeout)])
        if request.wait:
            args.append("--wait")
        if request.cleanup_on_fail:
            args.append("--cleanup-on-fail")
        if request.force:
            args.append("--force")
        if request.disable_hooks:
            args.append("--no-hooks")
        await self._run(args, request.timeout)
