"""Exceptions related to helm-operator."""

__all__ = [
    "HelmOperatorException",
    "InputException",
    "CommandException",
    "HelmException",
    "ReleaseNotFoundError",
    "ObjectNotFoundError",
    "ConflictError",
    "SecretResolutionError",
    "DependencyNotReadyError",
]


class HelmOperatorException(Exception):
    """Generic base exception used for this library."""


class InputException(HelmOperatorException):
    """Raised when the input objects or values are not formatted as expected."""


class CommandException(HelmOperatorException):
    """Raised when there is a failure running a subcommand.

    `output` holds what the command printed, without the command line, so
    callers can inspect the error reported by the tool itself.
    """

    def __init__(self, message: str, output: str | None = None) -> None:
        super().__init__(message)
        self.output = output


class HelmException(CommandException):
    """Raised when there is a failure running a helm command."""


class ReleaseNotFoundError(HelmException):
    """Raised when the engine has no release with the requested name."""

    def __init__(
        self,
        name: str,
        namespace: str,
        message: str | None = None,
        output: str | None = None,
    ) -> None:
        super().__init__(message or f"release {namespace}/{name}: not found", output)
        self.name = name
        self.namespace = namespace


class ObjectNotFoundError(HelmOperatorException):
    """Raised when an object is not found in the store."""


class ConflictError(HelmOperatorException):
    """Raised when a write is based on a stale resource version."""

    def __init__(self, resource_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Conflict writing {resource_id}: resource version {expected} is stale "
            f"(current {actual})"
        )
        self.resource_id = resource_id
        self.expected = expected
        self.actual = actual


class SecretResolutionError(HelmOperatorException):
    """Raised when a referenced credential secret cannot be resolved."""

    def __init__(self, secret_id: str, message: str) -> None:
        super().__init__(f"Failed to resolve secret {secret_id}: {message}")
        self.secret_id = secret_id


class DependencyNotReadyError(HelmOperatorException):
    """Raised when a release dependency is missing or not ready."""

    def __init__(self, resource_id: str, dependency_id: str, reason: str) -> None:
        super().__init__(f"{resource_id} dependency {dependency_id} {reason}")
        self.resource_id = resource_id
        self.dependency_id = dependency_id
        self.reason = reason
