"""Condition model shared by the repository and release controllers.

A resource carries at most one condition of each type. Writing a condition
replaces the reason and message of the existing one, but the transition time
only moves when the status value actually changes.
"""

import datetime
from collections.abc import Iterable

from .manifest import Condition, ConditionStatus

__all__ = [
    "set_condition",
    "remove_condition",
    "find_condition",
    "is_condition_true",
    "ready_condition",
    "not_ready_condition",
    "syncing_condition",
    "failed_condition",
    "released_condition",
    "progressing_condition",
]


READY = "Ready"
SYNCING = "Syncing"
FAILED = "Failed"
RELEASED = "Released"
PROGRESSING = "Progressing"

# Repository reasons
SYNC_STARTED = "SyncStarted"
SYNC_COMPLETED = "SyncCompleted"
SYNC_FAILED = "SyncFailed"
AUTHENTICATION_FAILED = "AuthenticationFailed"
SUSPENDED = "Suspended"

# Release reasons
INSTALL_STARTED = "InstallStarted"
INSTALL_COMPLETED = "InstallCompleted"
INSTALL_FAILED = "InstallFailed"
UPGRADE_STARTED = "UpgradeStarted"
UPGRADE_COMPLETED = "UpgradeCompleted"
UPGRADE_FAILED = "UpgradeFailed"
UNINSTALL_STARTED = "UninstallStarted"
UNINSTALL_COMPLETED = "UninstallCompleted"
UNINSTALL_FAILED = "UninstallFailed"
ROLLBACK_COMPLETED = "RollbackCompleted"
ROLLBACK_FAILED = "RollbackFailed"
DEPENDENCY_NOT_READY = "DependencyNotReady"
CONFIGURATION_ERROR = "ConfigurationError"
RELEASE_SUSPENDED = "ReleaseSuspended"


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _condition(
    condition_type: str, status: ConditionStatus, reason: str, message: str
) -> Condition:
    return Condition(
        type=condition_type,
        status=status,
        reason=reason,
        message=message,
        last_transition_time=_now(),
    )


def ready_condition(reason: str, message: str) -> Condition:
    return _condition(READY, ConditionStatus.TRUE, reason, message)


def not_ready_condition(reason: str, message: str) -> Condition:
    return _condition(READY, ConditionStatus.FALSE, reason, message)


def syncing_condition(
    reason: str, message: str, status: ConditionStatus = ConditionStatus.TRUE
) -> Condition:
    return _condition(SYNCING, status, reason, message)


def failed_condition(reason: str, message: str) -> Condition:
    """Return a Failed condition, which is always recorded as True."""
    return _condition(FAILED, ConditionStatus.TRUE, reason, message)


def released_condition(reason: str, message: str) -> Condition:
    return _condition(RELEASED, ConditionStatus.TRUE, reason, message)


def progressing_condition(
    reason: str, message: str, status: ConditionStatus = ConditionStatus.TRUE
) -> Condition:
    return _condition(PROGRESSING, status, reason, message)


def find_condition(
    conditions: Iterable[Condition], condition_type: str
) -> Condition | None:
    """Return the condition of the given type, if present."""
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def is_condition_true(conditions: Iterable[Condition], condition_type: str) -> bool:
    """Return true if the condition of the given type is present and True."""
    condition = find_condition(conditions, condition_type)
    return condition is not None and condition.status == ConditionStatus.TRUE


def remove_condition(conditions: list[Condition], condition_type: str) -> None:
    """Remove the condition of the given type in place, if present."""
    conditions[:] = [c for c in conditions if c.type != condition_type]


def set_condition(conditions: list[Condition], new: Condition) -> None:
    """Insert or replace the condition of the same type in place.

    The previous transition time is kept when the status is unchanged.
    """
    for i, existing in enumerate(conditions):
        if existing.type != new.type:
            continue
        transition_time = new.last_transition_time
        if existing.status == new.status and existing.last_transition_time:
            transition_time = existing.last_transition_time
        conditions[i] = Condition(
            type=new.type,
            status=new.status,
            reason=new.reason,
            message=new.message,
            last_transition_time=transition_time,
        )
        return
    conditions.append(new)
