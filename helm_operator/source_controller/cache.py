"""Cache of chart default values snapshots.

A snapshot holds the default values of one chart version as a ConfigMap
owned by the repository the chart came from. Snapshots are created when a
repository is synced with the `lazy` policy, or when a release is deployed
from a repository with the `on-demand` policy, and removed by a retention
sweep once they are older than the repository's retention.
"""

import datetime
import hashlib
import logging

from slugify import slugify

from helm_operator import metrics
from helm_operator.exceptions import ConflictError, HelmOperatorException
from helm_operator.helm import RepositoryManager
from helm_operator.manifest import (
    CONFIG_MAP_KIND,
    CachePolicy,
    ChartInfo,
    ConfigMap,
    HelmRepository,
    NamedResource,
)
from helm_operator.metrics import MetricsRegistry
from helm_operator.retry import with_conflict_retry
from helm_operator.store import Store

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "artifact_name",
    "ChartValuesCache",
]

VALUES_KEY = "values.yaml"
LABEL_PREFIX = "helm-operator.ketches.cn"
REPOSITORY_LABEL = f"{LABEL_PREFIX}/repository"
CHART_LABEL = f"{LABEL_PREFIX}/chart"
VERSION_LABEL = f"{LABEL_PREFIX}/version"
MANAGED_LABEL = f"{LABEL_PREFIX}/managed"

NAME_PREFIX = "helm-values"
MAX_NAME_LENGTH = 253
TRUNCATED_NAME_LENGTH = 240
HASH_LENGTH = 8
_DISALLOWED_NAME_CHARS = r"[^a-z0-9-]+"


def artifact_name(repository: str, chart: str, version: str) -> str:
    """Return the deterministic ConfigMap name for a chart version snapshot.

    The name is lowercased and every run of characters outside `[a-z0-9-]`
    becomes a single dash, so non-ASCII letters are replaced rather than
    transliterated. Text is NFKC normalized first and commas between digits
    are dropped. Names too long for the store are truncated and suffixed with
    a hash of the full name so they stay unique.
    """
    name = slugify(
        f"{NAME_PREFIX}-{repository}-{chart}-{version}",
        entities=False,
        decimal=False,
        hexadecimal=False,
        regex_pattern=_DISALLOWED_NAME_CHARS,
        lowercase=True,
        allow_unicode=True,
    )
    if len(name) <= MAX_NAME_LENGTH:
        return name
    digest = hashlib.sha256(name.encode("utf-8")).hexdigest()[:HASH_LENGTH]
    return f"{name[:TRUNCATED_NAME_LENGTH].rstrip('-')}-{digest}"


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class ChartValuesCache:
    """Creates, refreshes and retires chart default values snapshots."""

    def __init__(
        self, store: Store, engine: RepositoryManager, registry: MetricsRegistry
    ) -> None:
        self._store = store
        self._engine = engine
        self._metrics = registry

    async def ensure(
        self, repo: HelmRepository, chart: str, version: str
    ) -> ConfigMap:
        """Create the snapshot for a chart version, or refresh it if the values changed."""
        values = await self._engine.get_package_default_values(
            repo.chart_ref(chart), version, repo.timeout
        )
        name = artifact_name(repo.name, chart, version)
        resource_id = NamedResource(CONFIG_MAP_KIND, repo.namespace, name)
        if (existing := await self._store.get(resource_id, ConfigMap)) is None:
            artifact = ConfigMap(
                name=name,
                namespace=repo.namespace,
                labels={
                    REPOSITORY_LABEL: repo.name,
                    CHART_LABEL: chart,
                    VERSION_LABEL: version,
                    MANAGED_LABEL: "true",
                },
                data={VALUES_KEY: values},
                owner=repo.resource_id,
            )
            try:
                created = await self._store.create(artifact)
            except ConflictError:
                _LOGGER.debug("Snapshot %s created concurrently", resource_id)
            else:
                _LOGGER.info("Created values snapshot %s", resource_id)
                self._metrics.inc(
                    metrics.CACHE_ARTIFACTS_GENERATED,
                    repository=repo.name,
                    namespace=repo.namespace or "",
                )
                return created
        elif existing.data.get(VALUES_KEY) == values:
            return existing

        def set_values(obj: ConfigMap) -> None:
            obj.data[VALUES_KEY] = values

        async def read() -> ConfigMap | None:
            return await self._store.get(resource_id, ConfigMap)

        updated = await with_conflict_retry(read, set_values, self._store.update)
        if updated is None:
            raise HelmOperatorException(f"Snapshot {resource_id} disappeared")
        _LOGGER.info("Updated values snapshot %s", resource_id)
        return updated

    async def materialize(self, repo: HelmRepository, charts: list[ChartInfo]) -> int:
        """Create snapshots for a synced repository according to its policy.

        Only the `lazy` policy materializes at sync time, and only the newest
        version of each chart. Failures are logged and skipped. Returns the
        number of snapshots written.
        """
        if repo.spec.values_config_map_policy != CachePolicy.LAZY:
            return 0
        count = 0
        for chart in charts:
            if not chart.versions:
                continue
            version = chart.versions[0].version
            try:
                await self.ensure(repo, chart.name, version)
            except Exception as err:
                _LOGGER.warning(
                    "Failed to create values snapshot for %s %s from %s: %s",
                    chart.name,
                    version,
                    repo.resource_id,
                    err,
                )
                continue
            count += 1
        return count

    async def sweep(
        self, repo: HelmRepository, now: datetime.datetime | None = None
    ) -> int:
        """Delete this repository's snapshots older than its retention.

        Returns the number of snapshots deleted.
        """
        cutoff = (now or _now()) - repo.cache_retention
        artifacts = await self._store.list_objects(
            ConfigMap,
            namespace=repo.namespace,
            labels={REPOSITORY_LABEL: repo.name, MANAGED_LABEL: "true"},
        )
        deleted = 0
        for artifact in artifacts:
            if artifact.creation_timestamp is None or artifact.creation_timestamp >= cutoff:
                continue
            try:
                await self._store.delete(artifact.resource_id)
            except Exception as err:
                _LOGGER.warning(
                    "Failed to delete expired snapshot %s: %s", artifact.resource_id, err
                )
                continue
            _LOGGER.info("Deleted expired values snapshot %s", artifact.resource_id)
            deleted += 1
        if deleted:
            self._metrics.inc(
                metrics.CACHE_ARTIFACTS_CLEANED,
                float(deleted),
                repository=repo.name,
                namespace=repo.namespace or "",
            )
        return deleted
