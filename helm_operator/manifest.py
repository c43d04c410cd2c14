"""Representation of the objects held in the declarative store.

Each stored object carries kubernetes style metadata (name, namespace,
generation, resource version, finalizers) plus a `spec` describing desired
state and a `status` recording what the controllers last observed. Objects
can be parsed from raw kubernetes style documents with `parse_raw_obj`.
"""

import base64
import datetime
import logging
import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, ClassVar

import yaml
from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig

from .exceptions import InputException

__all__ = [
    "parse_raw_obj",
    "read_objects",
    "parse_duration",
    "NamedResource",
    "HelmRepository",
    "HelmRelease",
    "ConfigMap",
    "Secret",
    "Condition",
    "ConditionStatus",
    "CachePolicy",
    "RepositoryType",
]

_LOGGER = logging.getLogger(__name__)


# Match a prefix of apiVersion to ensure we have the right type of object.
API_GROUP = "helm-operator.ketches.cn"
HELM_REPOSITORY = "HelmRepository"
HELM_RELEASE = "HelmRelease"
CONFIG_MAP_KIND = "ConfigMap"
SECRET_KIND = "Secret"
DEFAULT_NAMESPACE = "default"

DEFAULT_REPOSITORY_INTERVAL = "30m"
DEFAULT_REPOSITORY_TIMEOUT = "5m"
DEFAULT_CACHE_RETENTION = "168h"

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(value: str) -> datetime.timedelta:
    """Parse a duration string such as `30m`, `1h30m` or `1.5h`.

    Raises an InputException for anything that is not a well formed duration.
    """
    text = value.strip()
    sign = 1.0
    if text[:1] in ("-", "+"):
        if text[0] == "-":
            sign = -1.0
        text = text[1:]
    if text == "0":
        return datetime.timedelta(0)
    if not text:
        raise InputException(f"Invalid duration '{value}'")
    seconds = 0.0
    pos = 0
    while pos < len(text):
        if not (match := _DURATION_PART.match(text, pos)):
            raise InputException(f"Invalid duration '{value}'")
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    return datetime.timedelta(seconds=sign * seconds)


def _parse_optional_duration(value: str | None) -> datetime.timedelta | None:
    """Parse a duration, returning None when absent or invalid."""
    if not value:
        return None
    try:
        return parse_duration(value)
    except InputException:
        _LOGGER.debug("Ignoring invalid duration '%s'", value)
        return None


def _parse_interval(value: str | None) -> datetime.timedelta | None:
    """Parse a requeue interval, returning None unless it is positive."""
    if (interval := _parse_optional_duration(value)) is None:
        return None
    if interval <= datetime.timedelta(0):
        _LOGGER.debug("Ignoring non-positive interval '%s'", value)
        return None
    return interval


def _check_version(doc: dict[str, Any], version: str) -> None:
    """Assert that the resource has the specified version."""
    if not (api_version := doc.get("apiVersion")):
        raise InputException(f"Invalid object missing apiVersion: {doc}")
    if not api_version.startswith(version):
        raise InputException(f"Invalid object expected '{version}': {doc}")


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all manifest objects."""

    class Config(BaseConfig):
        omit_none = True
        serialize_by_alias = True


@dataclass(frozen=True, order=True)
class NamedResource:
    """Identifier for an object in the store."""

    kind: str
    namespace: str | None
    name: str

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


class ConditionStatus(StrEnum):
    """The value of a condition."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


@dataclass
class Condition(BaseManifest):
    """A typed fact about the observed state of an object."""

    type: str
    """The condition type e.g. Ready."""

    status: ConditionStatus
    """Whether the condition currently holds."""

    reason: str
    """A machine readable reason for the last transition."""

    message: str = ""
    """A human readable message with details."""

    last_transition_time: datetime.datetime | None = field(
        metadata=field_options(alias="lastTransitionTime"), default=None
    )
    """When the status value last changed."""


@dataclass(kw_only=True)
class ObjectManifest(BaseManifest):
    """Common metadata for objects held in the store."""

    kind: ClassVar[str]

    name: str
    """The name of the object."""

    namespace: str | None = None
    """The namespace of the object."""

    labels: dict[str, str] = field(default_factory=dict)
    """Labels used to select the object."""

    generation: int = 1
    """Incremented by the store whenever the spec changes."""

    resource_version: int = field(
        metadata=field_options(alias="resourceVersion"), default=0
    )
    """Incremented by the store on every write, used to detect conflicts."""

    finalizers: list[str] = field(default_factory=list)
    """Cleanup steps that must complete before the object is removed."""

    creation_timestamp: datetime.datetime | None = field(
        metadata=field_options(alias="creationTimestamp"), default=None
    )
    """When the object was first written to the store."""

    deletion_timestamp: datetime.datetime | None = field(
        metadata=field_options(alias="deletionTimestamp"), default=None
    )
    """When deletion was requested, set while finalizers are pending."""

    owner: NamedResource | None = None
    """The object that owns this one, removed along with it."""

    @property
    def resource_id(self) -> NamedResource:
        """Return the identifier of the object in the store."""
        return NamedResource(self.kind, self.namespace, self.name)

    @property
    def being_deleted(self) -> bool:
        """Return true when deletion of the object has been requested."""
        return self.deletion_timestamp is not None

    @classmethod
    def _parse_metadata(cls, doc: dict[str, Any]) -> dict[str, Any]:
        """Parse the common metadata fields of a raw object."""
        if not (metadata := doc.get("metadata")):
            raise InputException(f"Invalid {cls.__name__} missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise InputException(
                f"Invalid {cls.__name__} missing metadata.name: {doc}"
            )
        return {
            "name": name,
            "namespace": metadata.get("namespace", DEFAULT_NAMESPACE),
            "labels": dict(metadata.get("labels") or {}),
            "generation": int(metadata.get("generation", 1)),
            "resource_version": int(metadata.get("resourceVersion", 0)),
            "finalizers": list(metadata.get("finalizers") or []),
        }


class RepositoryType(StrEnum):
    """How the repository serves charts."""

    HELM = "helm"
    OCI = "oci"


class CachePolicy(StrEnum):
    """When chart default values snapshots are materialized."""

    DISABLED = "disabled"
    ON_DEMAND = "on-demand"
    LAZY = "lazy"


@dataclass
class SecretReference(BaseManifest):
    """Reference to a Secret holding credentials."""

    name: str
    namespace: str | None = None


@dataclass
class BasicAuth(BaseManifest):
    """Username and password credentials for a repository."""

    username: str | None = None
    password: str | None = None
    secret_ref: SecretReference | None = field(
        metadata=field_options(alias="secretRef"), default=None
    )


@dataclass
class TLSConfig(BaseManifest):
    """TLS settings for a repository."""

    insecure_skip_verify: bool = field(
        metadata=field_options(alias="insecureSkipVerify"), default=False
    )
    ca_file: str | None = field(metadata=field_options(alias="caFile"), default=None)
    cert_file: str | None = field(
        metadata=field_options(alias="certFile"), default=None
    )
    key_file: str | None = field(metadata=field_options(alias="keyFile"), default=None)
    secret_ref: SecretReference | None = field(
        metadata=field_options(alias="secretRef"), default=None
    )


@dataclass
class RepositoryAuth(BaseManifest):
    """Authentication settings for a repository."""

    basic: BasicAuth | None = None
    tls: TLSConfig | None = None


@dataclass
class HelmRepositorySpec(BaseManifest):
    """Desired state of a HelmRepository."""

    url: str = ""
    """The index URL, or an oci:// registry reference."""

    type: RepositoryType = RepositoryType.HELM
    """Either a generic chart index or an OCI registry."""

    interval: str = DEFAULT_REPOSITORY_INTERVAL
    """How often the index is re-synced."""

    timeout: str = DEFAULT_REPOSITORY_TIMEOUT
    """Deadline for each engine operation."""

    auth: RepositoryAuth | None = None
    """Optional credentials and TLS material."""

    suspend: bool = False
    """Stop reconciling the repository while set."""

    values_config_map_policy: CachePolicy = field(
        metadata=field_options(alias="valuesConfigMapPolicy"),
        default=CachePolicy.DISABLED,
    )
    """When default values snapshots are materialized."""

    values_config_map_retention: str = field(
        metadata=field_options(alias="valuesConfigMapRetention"),
        default=DEFAULT_CACHE_RETENTION,
    )
    """How long a default values snapshot is kept."""


@dataclass
class ChartVersion(BaseManifest):
    """A single published version of a chart."""

    version: str
    app_version: str | None = field(
        metadata=field_options(alias="appVersion"), default=None
    )
    created: datetime.datetime | None = None
    digest: str | None = None


@dataclass
class ChartInfo(BaseManifest):
    """A chart discovered in a repository index, newest version first."""

    name: str
    description: str | None = None
    versions: list[ChartVersion] = field(default_factory=list)


@dataclass
class RepositoryStats(BaseManifest):
    """Summary counts of a repository index."""

    total_charts: int = field(metadata=field_options(alias="totalCharts"), default=0)
    total_versions: int = field(
        metadata=field_options(alias="totalVersions"), default=0
    )


@dataclass
class HelmRepositoryStatus(BaseManifest):
    """Observed state of a HelmRepository."""

    conditions: list[Condition] = field(default_factory=list)
    last_sync_time: datetime.datetime | None = field(
        metadata=field_options(alias="lastSyncTime"), default=None
    )
    charts: list[ChartInfo] = field(default_factory=list)
    stats: RepositoryStats | None = None
    observed_generation: int = field(
        metadata=field_options(alias="observedGeneration"), default=0
    )
    failure_count: int = field(
        metadata=field_options(alias="failureCount"), default=0
    )


@dataclass(kw_only=True)
class HelmRepository(ObjectManifest):
    """A source of installable charts."""

    kind: ClassVar[str] = HELM_REPOSITORY

    spec: HelmRepositorySpec = field(default_factory=HelmRepositorySpec)
    status: HelmRepositoryStatus = field(default_factory=HelmRepositoryStatus)

    @property
    def repo_name(self) -> str:
        """Name of the repository when registered with the engine."""
        return f"{self.namespace}-{self.name}"

    @property
    def is_oci(self) -> bool:
        """Return true if charts are served from an OCI registry."""
        return self.spec.type == RepositoryType.OCI or self.spec.url.startswith(
            "oci://"
        )

    def chart_ref(self, chart: str) -> str:
        """Return the reference the engine uses for a chart in this repository."""
        if self.is_oci:
            return f"{self.spec.url.rstrip('/')}/{chart}"
        return f"{self.repo_name}/{chart}"

    @property
    def interval(self) -> datetime.timedelta:
        """The sync interval, with invalid or non-positive values falling back to the default."""
        if (interval := _parse_interval(self.spec.interval)) is None:
            return parse_duration(DEFAULT_REPOSITORY_INTERVAL)
        return interval

    @property
    def timeout(self) -> datetime.timedelta:
        """The engine call deadline, with invalid values falling back to the default."""
        if (timeout := _parse_optional_duration(self.spec.timeout)) is None:
            return parse_duration(DEFAULT_REPOSITORY_TIMEOUT)
        return timeout

    @property
    def cache_retention(self) -> datetime.timedelta:
        """The default values snapshot retention."""
        if (
            retention := _parse_optional_duration(self.spec.values_config_map_retention)
        ) is None:
            return parse_duration(DEFAULT_CACHE_RETENTION)
        return retention

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "HelmRepository":
        """Parse a HelmRepository from a raw object."""
        _check_version(doc, API_GROUP)
        if not (spec := doc.get("spec")):
            raise InputException(f"Invalid {cls.__name__} missing spec: {doc}")
        status = doc.get("status")
        return cls(
            **cls._parse_metadata(doc),
            spec=HelmRepositorySpec.from_dict(spec),
            status=(
                HelmRepositoryStatus.from_dict(status)
                if status
                else HelmRepositoryStatus()
            ),
        )


@dataclass
class RepositoryReference(BaseManifest):
    """Reference to a HelmRepository."""

    name: str
    namespace: str | None = None


@dataclass
class DependencyReference(BaseManifest):
    """Reference to a HelmRelease that must be ready first."""

    name: str
    namespace: str | None = None


@dataclass
class ChartSpec(BaseManifest):
    """The chart a release is installed from."""

    name: str = ""
    version: str | None = None
    repository: RepositoryReference | None = None
    repository_url: str | None = field(
        metadata=field_options(alias="repositoryURL"), default=None
    )
    oci_repository: str | None = field(
        metadata=field_options(alias="ociRepository"), default=None
    )


@dataclass
class ReleaseTarget(BaseManifest):
    """Where the release is installed, defaulting to the object's own name."""

    name: str | None = None
    namespace: str | None = None
    create_namespace: bool = field(
        metadata=field_options(alias="createNamespace"), default=False
    )


@dataclass
class InstallSpec(BaseManifest):
    """Options for installing a release."""

    timeout: str = "10m"
    wait: bool = True
    wait_for_jobs: bool = field(
        metadata=field_options(alias="waitForJobs"), default=True
    )
    skip_crds: bool = field(metadata=field_options(alias="skipCRDs"), default=False)
    replace: bool = False
    disable_hooks: bool = field(
        metadata=field_options(alias="disableHooks"), default=False
    )


@dataclass
class UpgradeSpec(BaseManifest):
    """Options for upgrading a release."""

    timeout: str = "10m"
    wait: bool = True
    wait_for_jobs: bool = field(
        metadata=field_options(alias="waitForJobs"), default=True
    )
    force: bool = False
    reset_values: bool = field(
        metadata=field_options(alias="resetValues"), default=False
    )
    reuse_values: bool = field(
        metadata=field_options(alias="reuseValues"), default=False
    )
    recreate: bool = False
    max_history: int = field(metadata=field_options(alias="maxHistory"), default=10)
    cleanup_on_fail: bool = field(
        metadata=field_options(alias="cleanupOnFail"), default=True
    )
    disable_hooks: bool = field(
        metadata=field_options(alias="disableHooks"), default=False
    )


@dataclass
class UninstallSpec(BaseManifest):
    """Options for uninstalling a release."""

    timeout: str = "5m"
    disable_hooks: bool = field(
        metadata=field_options(alias="disableHooks"), default=False
    )
    keep_history: bool = field(
        metadata=field_options(alias="keepHistory"), default=False
    )


@dataclass
class RollbackSpec(BaseManifest):
    """Options for rolling back a release after a failed upgrade."""

    enabled: bool = False
    to_revision: int = field(metadata=field_options(alias="toRevision"), default=0)
    timeout: str = "5m"
    wait: bool = True
    cleanup_on_fail: bool = field(
        metadata=field_options(alias="cleanupOnFail"), default=True
    )
    force: bool = False
    disable_hooks: bool = field(
        metadata=field_options(alias="disableHooks"), default=False
    )


@dataclass
class HelmReleaseSpec(BaseManifest):
    """Desired state of a HelmRelease."""

    chart: ChartSpec = field(default_factory=ChartSpec)
    release: ReleaseTarget = field(default_factory=ReleaseTarget)
    values: str | None = None
    """Values overlay as YAML text."""

    install: InstallSpec = field(default_factory=InstallSpec)
    upgrade: UpgradeSpec = field(default_factory=UpgradeSpec)
    uninstall: UninstallSpec = field(default_factory=UninstallSpec)
    rollback: RollbackSpec = field(default_factory=RollbackSpec)
    interval: str | None = None
    suspend: bool = False
    depends_on: list[DependencyReference] = field(
        metadata=field_options(alias="dependsOn"), default_factory=list
    )


@dataclass
class HelmReleaseInfo(BaseManifest):
    """The deployed release as last reported by the engine."""

    name: str
    namespace: str
    revision: int = 0
    status: str | None = None
    first_deployed: datetime.datetime | None = field(
        metadata=field_options(alias="firstDeployed"), default=None
    )
    last_deployed: datetime.datetime | None = field(
        metadata=field_options(alias="lastDeployed"), default=None
    )
    description: str | None = None
    chart: str | None = None
    """The deployed chart as `name-version`."""

    app_version: str | None = field(
        metadata=field_options(alias="appVersion"), default=None
    )


@dataclass
class FailureRecord(BaseManifest):
    """A single failed operation."""

    time: datetime.datetime
    reason: str
    message: str


@dataclass
class HelmReleaseStatus(BaseManifest):
    """Observed state of a HelmRelease."""

    conditions: list[Condition] = field(default_factory=list)
    helm_release: HelmReleaseInfo | None = field(
        metadata=field_options(alias="helmRelease"), default=None
    )
    last_applied_configuration: HelmReleaseSpec | None = field(
        metadata=field_options(alias="lastAppliedConfiguration"), default=None
    )
    original_values: str | None = field(
        metadata=field_options(alias="originalValues"), default=None
    )
    failures: list[FailureRecord] = field(default_factory=list)
    failure_count: int = field(
        metadata=field_options(alias="failureCount"), default=0
    )
    observed_generation: int = field(
        metadata=field_options(alias="observedGeneration"), default=0
    )


@dataclass(kw_only=True)
class HelmRelease(ObjectManifest):
    """A deployed instance of a chart."""

    kind: ClassVar[str] = HELM_RELEASE

    spec: HelmReleaseSpec = field(default_factory=HelmReleaseSpec)
    status: HelmReleaseStatus = field(default_factory=HelmReleaseStatus)

    @property
    def release_name(self) -> str:
        """Name of the release in the engine."""
        return self.spec.release.name or self.name

    @property
    def release_namespace(self) -> str:
        """Namespace the release is installed into."""
        return self.spec.release.namespace or self.namespace or DEFAULT_NAMESPACE

    @property
    def repository_id(self) -> NamedResource | None:
        """The referenced HelmRepository, if any."""
        if not (ref := self.spec.chart.repository):
            return None
        return NamedResource(HELM_REPOSITORY, ref.namespace or self.namespace, ref.name)

    @property
    def interval(self) -> datetime.timedelta | None:
        """The re-check interval, or None when absent, invalid or not positive."""
        return _parse_interval(self.spec.interval)

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "HelmRelease":
        """Parse a HelmRelease from a raw object."""
        _check_version(doc, API_GROUP)
        if not (spec := doc.get("spec")):
            raise InputException(f"Invalid {cls.__name__} missing spec: {doc}")
        status = doc.get("status")
        return cls(
            **cls._parse_metadata(doc),
            spec=HelmReleaseSpec.from_dict(spec),
            status=(
                HelmReleaseStatus.from_dict(status) if status else HelmReleaseStatus()
            ),
        )


@dataclass(kw_only=True)
class ConfigMap(ObjectManifest):
    """A ConfigMap holds non-sensitive key-value data."""

    kind: ClassVar[str] = CONFIG_MAP_KIND

    data: dict[str, str] = field(default_factory=dict)

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "ConfigMap":
        """Parse a config map object from a kubernetes resource."""
        _check_version(doc, "v1")
        return cls(**cls._parse_metadata(doc), data=dict(doc.get("data") or {}))


@dataclass(kw_only=True)
class Secret(ObjectManifest):
    """A Secret contains a small amount of sensitive data."""

    kind: ClassVar[str] = SECRET_KIND

    data: dict[str, str] = field(default_factory=dict)
    """Base64 encoded values."""

    string_data: dict[str, str] = field(
        metadata=field_options(alias="stringData"), default_factory=dict
    )
    """Plain text values, taking precedence over `data`."""

    def get_value(self, key: str) -> str | None:
        """Return the decoded value for the key, if present."""
        if (value := self.string_data.get(key)) is not None:
            return value
        if (encoded := self.data.get(key)) is None:
            return None
        try:
            return base64.b64decode(encoded).decode("utf-8")
        except ValueError as err:
            raise InputException(
                f"Secret {self.namespace}/{self.name} key '{key}' is not valid base64"
            ) from err

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Secret":
        """Parse a secret object from a kubernetes resource."""
        _check_version(doc, "v1")
        return cls(
            **cls._parse_metadata(doc),
            data=dict(doc.get("data") or {}),
            string_data=dict(doc.get("stringData") or {}),
        )


_PARSERS: dict[str, Any] = {
    HELM_REPOSITORY: HelmRepository.parse_doc,
    HELM_RELEASE: HelmRelease.parse_doc,
    CONFIG_MAP_KIND: ConfigMap.parse_doc,
    SECRET_KIND: Secret.parse_doc,
}


def parse_raw_obj(doc: dict[str, Any]) -> ObjectManifest:
    """Parse a raw kubernetes style document into a typed object."""
    if not (kind := doc.get("kind")):
        raise InputException(f"Invalid object missing kind: {doc}")
    if not (parser := _PARSERS.get(kind)):
        raise InputException(f"Unsupported object kind '{kind}'")
    obj: ObjectManifest = parser(doc)
    return obj


def read_objects(content: str) -> list[ObjectManifest]:
    """Parse all objects from a multi-document YAML string."""
    try:
        docs = list(yaml.safe_load_all(content))
    except yaml.YAMLError as err:
        raise InputException(f"Unable to parse objects: {err}") from err
    return [parse_raw_obj(doc) for doc in docs if doc]
