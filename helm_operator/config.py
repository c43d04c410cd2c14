"""Configuration objects for helm-operator."""

import datetime
from dataclasses import dataclass, field

from .retry import DEFAULT_MAX_ATTEMPTS

# Requeue used for configuration errors and non-retryable failures
FAILURE_REQUEUE = datetime.timedelta(minutes=5)

# Requeue used while a release waits on its dependencies
DEPENDENCY_REQUEUE = datetime.timedelta(minutes=1)


@dataclass
class SourceControllerConfig:
    """Configuration for the HelmRepositoryController."""

    failure_requeue: datetime.timedelta = FAILURE_REQUEUE
    conflict_retries: int = DEFAULT_MAX_ATTEMPTS


@dataclass
class HelmControllerConfig:
    """Configuration for the HelmReleaseController."""

    failure_requeue: datetime.timedelta = FAILURE_REQUEUE
    dependency_requeue: datetime.timedelta = DEPENDENCY_REQUEUE
    conflict_retries: int = DEFAULT_MAX_ATTEMPTS
    max_failure_history: int = 10
    """Number of failure records kept in the release status."""


@dataclass
class OrchestratorConfig:
    """Configuration for the orchestrator.

    Attributes:
        workers: Number of resources reconciled concurrently.
    """

    workers: int = 4
    helm_controller_config: HelmControllerConfig = field(
        default_factory=HelmControllerConfig
    )
    source_controller_config: SourceControllerConfig = field(
        default_factory=SourceControllerConfig
    )
