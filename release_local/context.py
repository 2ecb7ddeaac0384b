"""Release context threaded through rendering and lifecycle operations."""

import contextvars
from contextlib import contextmanager
from dataclasses import dataclass
import logging
from time import perf_counter
from typing import Any, Generator

from .manifest import ChartRef, ReleaseKey

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "ReleaseContext",
    "trace_context",
]

SERVICE_NAME = "release-local"

_operations: contextvars.ContextVar[tuple[str, ...]] = contextvars.ContextVar(
    "release_operations", default=()
)


@dataclass(frozen=True, kw_only=True)
class ReleaseContext:
    """Immutable description of the release an operation acts on."""

    name: str
    """The release name."""

    namespace: str
    """The namespace the release is installed into."""

    revision: int
    """The revision being produced by the operation."""

    chart: ChartRef
    """The identity of the root chart."""

    is_install: bool = False
    """The revision is produced by an install."""

    is_upgrade: bool = False
    """The revision is produced by an upgrade."""

    @property
    def key(self) -> ReleaseKey:
        return ReleaseKey(namespace=self.namespace, name=self.name)

    def template_scope(self) -> dict[str, Any]:
        """Return the `Release` object visible to templates."""
        return {
            "Name": self.name,
            "Namespace": self.namespace,
            "Revision": self.revision,
            "IsInstall": self.is_install,
            "IsUpgrade": self.is_upgrade,
            "Service": SERVICE_NAME,
        }


@contextmanager
def trace_context(name: str) -> Generator[None, None, None]:
    """Label log output of a nested operation and log how long it took."""
    operations = _operations.get() + (name,)
    token = _operations.set(operations)
    label = " > ".join(operations)
    start = perf_counter()
    _LOGGER.debug("[Trace] > %s", label)
    try:
        yield
    finally:
        _operations.reset(token)
        _LOGGER.debug("[Trace] < %s (%0.2fs)", label, perf_counter() - start)
