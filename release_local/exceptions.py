"""Exceptions related to release-local."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .manifest import ApplyResult

__all__ = [
    "ReleaseException",
    "InputException",
    "ChartException",
    "InvalidConstraintError",
    "UnsatisfiableConstraintError",
    "DependencyCycleError",
    "RenderException",
    "RequiredValueError",
    "HookFailedError",
    "ClusterException",
    "TransientClusterError",
    "ApplyFailedError",
    "ReleaseConflictError",
    "ReleaseNotFoundError",
    "ReleaseExistsError",
    "RevisionNotFoundError",
    "StoreException",
    "OperationTimeoutError",
]


class ReleaseException(Exception):
    """Generic base exception used for this library."""


class InputException(ReleaseException):
    """Raised when the input files or values are not formatted as expected."""


class ChartException(InputException):
    """Raised when a chart package or its metadata is invalid."""


class InvalidConstraintError(ChartException):
    """Raised when a version constraint cannot be parsed."""


class UnsatisfiableConstraintError(ChartException):
    """Raised when no available chart version satisfies a dependency constraint."""

    def __init__(
        self,
        parent: str,
        child: str,
        constraint: str,
        available: list[str],
    ) -> None:
        self.parent = parent
        self.child = child
        self.constraint = constraint
        self.available = available
        super().__init__(
            f"Chart {parent} dependency {child} constraint '{constraint}' is not "
            f"satisfied by available versions: {', '.join(available) or 'none'}"
        )


class DependencyCycleError(ChartException):
    """Raised when the chart dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Chart dependency cycle detected: {' -> '.join(cycle)}")


class RenderException(ReleaseException):
    """Raised when a template fails to render."""


class RequiredValueError(RenderException):
    """Raised when a value marked as required by a template is missing."""

    def __init__(self, path: str, template: str | None, message: str | None) -> None:
        self.path = path
        self.template = template
        detail = f": {message}" if message else ""
        location = f" in template {template}" if template else ""
        super().__init__(f"Required value {path} is missing{location}{detail}")


class HookFailedError(ReleaseException):
    """Raised when a lifecycle hook fails and the operation must abort."""

    def __init__(self, hook: str, phase: str, message: str | None) -> None:
        self.hook = hook
        self.phase = phase
        super().__init__(
            f"Hook {hook} failed during {phase}: {message or 'Unknown error'}"
        )


class ClusterException(ReleaseException):
    """Raised when the cluster API reports an error."""


class TransientClusterError(ClusterException):
    """Raised for cluster errors that may succeed when retried."""


class ApplyFailedError(ClusterException):
    """Raised when one or more documents could not be applied to the cluster."""

    def __init__(self, message: str, results: list["ApplyResult"]) -> None:
        super().__init__(message)
        self.results = results


class ReleaseConflictError(ReleaseException):
    """Raised when another operation is already in progress for the release."""


class ReleaseNotFoundError(ReleaseException):
    """Raised when a release has no recorded history."""


class ReleaseExistsError(ReleaseException):
    """Raised when installing a release name that is already in use."""


class RevisionNotFoundError(ReleaseNotFoundError):
    """Raised when a specific revision of a release does not exist."""


class StoreException(ReleaseException):
    """Raised when the release store cannot read or write a record."""


class OperationTimeoutError(ReleaseException):
    """Raised when an operation exceeds its deadline."""
