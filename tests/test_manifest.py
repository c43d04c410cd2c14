"""Tests for manifest library."""

import datetime

import pytest

from helm_operator.exceptions import InputException
from helm_operator.manifest import (
    CachePolicy,
    ConfigMap,
    HelmRelease,
    HelmRepository,
    NamedResource,
    RepositoryType,
    Secret,
    parse_duration,
    parse_raw_obj,
    read_objects,
)

OBJECTS = """\
---
apiVersion: helm-operator.ketches.cn/v1alpha1
kind: HelmRepository
metadata:
  name: bitnami
  namespace: infra
spec:
  url: https://charts.bitnami.com/bitnami
  interval: 10m
  valuesConfigMapPolicy: lazy
  auth:
    basic:
      secretRef:
        name: bitnami-auth
---
apiVersion: helm-operator.ketches.cn/v1alpha1
kind: HelmRelease
metadata:
  name: web
  namespace: apps
spec:
  chart:
    name: nginx
    version: 15.0.0
    repository:
      name: bitnami
      namespace: infra
  release:
    createNamespace: true
  values: |
    replicaCount: 2
  upgrade:
    maxHistory: 3
  rollback:
    enabled: true
    toRevision: 2
  dependsOn:
  - name: database
---
apiVersion: v1
kind: Secret
metadata:
  name: bitnami-auth
  namespace: infra
data:
  username: YWRtaW4=
stringData:
  password: s3cr3t
"""


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("30m", datetime.timedelta(minutes=30)),
        ("1h30m", datetime.timedelta(hours=1, minutes=30)),
        ("1.5h", datetime.timedelta(hours=1, minutes=30)),
        ("100ms", datetime.timedelta(milliseconds=100)),
        ("168h", datetime.timedelta(days=7)),
        ("0", datetime.timedelta(0)),
    ],
)
def test_parse_duration(value: str, expected: datetime.timedelta) -> None:
    """Test parsing duration strings."""
    assert parse_duration(value) == expected


@pytest.mark.parametrize("value", ["", "10", "5 minutes", "1d", "m"])
def test_parse_duration_invalid(value: str) -> None:
    """Test malformed durations are rejected."""
    with pytest.raises(InputException):
        parse_duration(value)


def test_read_objects() -> None:
    """Test parsing a multi-document stream of objects."""
    repo, release, secret = read_objects(OBJECTS)

    assert isinstance(repo, HelmRepository)
    assert repo.resource_id == NamedResource("HelmRepository", "infra", "bitnami")
    assert repo.spec.type == RepositoryType.HELM
    assert repo.spec.values_config_map_policy == CachePolicy.LAZY
    assert repo.interval == datetime.timedelta(minutes=10)
    assert repo.timeout == datetime.timedelta(minutes=5)
    assert repo.cache_retention == datetime.timedelta(hours=168)
    assert repo.repo_name == "infra-bitnami"
    assert repo.chart_ref("redis") == "infra-bitnami/redis"
    assert repo.spec.auth is not None
    assert repo.spec.auth.basic is not None
    assert repo.spec.auth.basic.secret_ref is not None
    assert repo.spec.auth.basic.secret_ref.name == "bitnami-auth"

    assert isinstance(release, HelmRelease)
    assert release.release_name == "web"
    assert release.release_namespace == "apps"
    assert release.repository_id == NamedResource("HelmRepository", "infra", "bitnami")
    assert release.spec.release.create_namespace
    assert release.spec.values == "replicaCount: 2\n"
    assert release.spec.upgrade.max_history == 3
    assert release.spec.upgrade.timeout == "10m"
    assert release.spec.rollback.enabled
    assert release.spec.rollback.to_revision == 2
    assert [d.name for d in release.spec.depends_on] == ["database"]
    assert release.interval is None

    assert isinstance(secret, Secret)
    assert secret.get_value("username") == "admin"
    assert secret.get_value("password") == "s3cr3t"
    assert secret.get_value("missing") is None


def test_oci_repository() -> None:
    """Test OCI repositories reference charts by URL."""
    repo = parse_raw_obj(
        {
            "apiVersion": "helm-operator.ketches.cn/v1alpha1",
            "kind": "HelmRepository",
            "metadata": {"name": "ghcr"},
            "spec": {"url": "oci://ghcr.io/stefanprodan/charts/", "interval": "bogus"},
        }
    )
    assert isinstance(repo, HelmRepository)
    assert repo.namespace == "default"
    assert repo.is_oci
    assert repo.chart_ref("podinfo") == "oci://ghcr.io/stefanprodan/charts/podinfo"
    assert repo.interval == datetime.timedelta(minutes=30)


def test_release_defaults() -> None:
    """Test release names fall back to the object metadata."""
    release = parse_raw_obj(
        {
            "apiVersion": "helm-operator.ketches.cn/v1alpha1",
            "kind": "HelmRelease",
            "metadata": {"name": "podinfo", "namespace": "demo"},
            "spec": {
                "chart": {
                    "name": "podinfo",
                    "repositoryURL": "https://stefanprodan.github.io/podinfo",
                },
                "interval": "5m",
            },
        }
    )
    assert isinstance(release, HelmRelease)
    assert release.release_name == "podinfo"
    assert release.release_namespace == "demo"
    assert release.repository_id is None
    assert release.spec.chart.repository_url == "https://stefanprodan.github.io/podinfo"
    assert release.interval == datetime.timedelta(minutes=5)
    assert release.spec.install.wait
    assert release.spec.uninstall.timeout == "5m"


@pytest.mark.parametrize("interval", ["0s", "0m", "-5m"])
def test_non_positive_interval(interval: str) -> None:
    """Test zero or negative intervals never schedule an immediate requeue."""
    repo = parse_raw_obj(
        {
            "apiVersion": "helm-operator.ketches.cn/v1alpha1",
            "kind": "HelmRepository",
            "metadata": {"name": "bitnami"},
            "spec": {"url": "https://charts.bitnami.com/bitnami", "interval": interval},
        }
    )
    assert isinstance(repo, HelmRepository)
    assert repo.interval == datetime.timedelta(minutes=30)

    release = parse_raw_obj(
        {
            "apiVersion": "helm-operator.ketches.cn/v1alpha1",
            "kind": "HelmRelease",
            "metadata": {"name": "podinfo"},
            "spec": {
                "chart": {
                    "name": "podinfo",
                    "repositoryURL": "https://stefanprodan.github.io/podinfo",
                },
                "interval": interval,
            },
        }
    )
    assert isinstance(release, HelmRelease)
    assert release.interval is None


def test_config_map() -> None:
    """Test parsing a ConfigMap."""
    obj = parse_raw_obj(
        {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": "values", "namespace": "apps", "labels": {"a": "b"}},
            "data": {"values.yaml": "x: 1"},
        }
    )
    assert isinstance(obj, ConfigMap)
    assert obj.labels == {"a": "b"}
    assert obj.data == {"values.yaml": "x: 1"}


@pytest.mark.parametrize(
    "doc",
    [
        {"apiVersion": "v1", "metadata": {"name": "x"}},
        {"apiVersion": "v1", "kind": "Pod", "metadata": {"name": "x"}},
        {"apiVersion": "v1", "kind": "ConfigMap"},
        {"kind": "ConfigMap", "metadata": {"name": "x"}},
        {
            "apiVersion": "helm-operator.ketches.cn/v1alpha1",
            "kind": "HelmRelease",
            "metadata": {"name": "x"},
        },
    ],
)
def test_parse_invalid_objects(doc: dict) -> None:
    """Test malformed documents are rejected."""
    with pytest.raises(InputException):
        parse_raw_obj(doc)


def test_invalid_secret_value() -> None:
    """Test undecodable secret values are reported."""
    secret = Secret(name="creds", namespace="infra", data={"password": "/w=="})
    with pytest.raises(InputException, match="base64"):
        secret.get_value("password")


def test_status_serialization() -> None:
    """Test status fields serialize with camelCase names."""
    release = HelmRelease(name="web", namespace="apps")
    release.status.failure_count = 2
    release.status.observed_generation = 3
    data = release.status.to_dict()
    assert data["failureCount"] == 2
    assert data["observedGeneration"] == 3
    assert "helmRelease" not in data
