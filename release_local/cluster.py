"""Interface to the cluster that rendered documents are applied to.

The `ClusterClient` is the only boundary between the release manager and the
outside world. An `InMemoryCluster` is provided for local use and testing, and
supports injecting failures:

```python
cluster = InMemoryCluster()
cluster.fail_apply(NamedResource("Job", "default", "migrate"), "image pull failed")
cluster.fail_apply(NamedResource("Service", "default", "web"), transient=2)
```

Transient failures are retried with exponential backoff by wrapping a client
in a `RetryingClusterClient`.
"""

from abc import ABC, abstractmethod
import asyncio
import copy
import logging
from typing import Any

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
import yaml

from .exceptions import ClusterException, TransientClusterError
from .manifest import ApplyResult, NamedResource, RenderedDocument

__all__ = [
    "ClusterClient",
    "InMemoryCluster",
    "RetryingClusterClient",
]

_LOGGER = logging.getLogger(__name__)


class ClusterClient(ABC):
    """Abstract client that applies and removes resources."""

    @abstractmethod
    async def apply(self, document: RenderedDocument) -> ApplyResult:
        """Create or update the resource described by the document.

        Raises `ClusterException` when the resource is rejected.
        """

    @abstractmethod
    async def get(
        self, kind: str, name: str, namespace: str | None
    ) -> dict[str, Any] | None:
        """Return the current object or None when it does not exist."""

    @abstractmethod
    async def delete(self, kind: str, name: str, namespace: str | None) -> bool:
        """Delete a resource, returning False when it did not exist."""

    @abstractmethod
    async def wait_ready(
        self, kind: str, name: str, namespace: str | None, timeout: float
    ) -> None:
        """Wait until a resource is ready, or for a hook until it completed.

        Raises `ClusterException` when the resource failed or did not become
        ready within the timeout.
        """


class InMemoryCluster(ClusterClient):
    """A cluster that keeps applied objects in memory."""

    def __init__(self, latency: float = 0.0) -> None:
        """Initialize InMemoryCluster."""
        self.objects: dict[NamedResource, dict[str, Any]] = {}
        self.operations: list[tuple[str, str]] = []
        self._latency = latency
        self._apply_errors: dict[NamedResource, str] = {}
        self._transient_errors: dict[NamedResource, int] = {}
        self._ready_errors: dict[NamedResource, str] = {}
        self._ready_delays: dict[NamedResource, float] = {}

    def fail_apply(
        self,
        resource: NamedResource,
        message: str | None = None,
        transient: int = 0,
    ) -> None:
        """Make applying a resource fail.

        With `transient` the next attempts fail with a retryable error, then
        succeed. Otherwise every attempt fails with the message.
        """
        if transient:
            self._transient_errors[resource] = transient
        else:
            self._apply_errors[resource] = message or "rejected"

    def fail_ready(self, resource: NamedResource, message: str) -> None:
        """Make waiting for a resource report a failure, e.g. a failed Job."""
        self._ready_errors[resource] = message

    def delay_ready(self, resource: NamedResource, seconds: float) -> None:
        """Make a resource take some time before it is ready."""
        self._ready_delays[resource] = seconds

    def clear_failures(self) -> None:
        self._apply_errors.clear()
        self._transient_errors.clear()
        self._ready_errors.clear()
        self._ready_delays.clear()

    def exists(self, resource: NamedResource) -> bool:
        return resource in self.objects

    async def apply(self, document: RenderedDocument) -> ApplyResult:
        resource = document.resource_id
        await asyncio.sleep(self._latency)
        self.operations.append(("apply", str(resource)))
        if (remaining := self._transient_errors.get(resource, 0)) > 0:
            self._transient_errors[resource] = remaining - 1
            raise TransientClusterError(f"{resource} temporarily unavailable")
        if (message := self._apply_errors.get(resource)) is not None:
            raise ClusterException(f"{resource} apply failed: {message}")
        try:
            obj = yaml.load(document.content, Loader=yaml.SafeLoader)
        except yaml.YAMLError as err:
            raise ClusterException(f"{resource} is not valid yaml: {err}") from err
        operation = "configure" if resource in self.objects else "create"
        self.objects[resource] = obj
        _LOGGER.debug("Applied %s (%s)", resource, operation)
        return ApplyResult(resource=str(resource), succeeded=True)

    async def get(
        self, kind: str, name: str, namespace: str | None
    ) -> dict[str, Any] | None:
        await asyncio.sleep(self._latency)
        obj = self.objects.get(NamedResource(kind=kind, namespace=namespace, name=name))
        return copy.deepcopy(obj) if obj is not None else None

    async def delete(self, kind: str, name: str, namespace: str | None) -> bool:
        resource = NamedResource(kind=kind, namespace=namespace, name=name)
        await asyncio.sleep(self._latency)
        self.operations.append(("delete", str(resource)))
        if self.objects.pop(resource, None) is None:
            _LOGGER.debug("Delete of %s ignored, not found", resource)
            return False
        return True

    async def wait_ready(
        self, kind: str, name: str, namespace: str | None, timeout: float
    ) -> None:
        resource = NamedResource(kind=kind, namespace=namespace, name=name)
        self.operations.append(("wait", str(resource)))
        if resource not in self.objects:
            raise ClusterException(f"{resource} does not exist")
        if (delay := self._ready_delays.get(resource)) is not None:
            if delay > timeout:
                await asyncio.sleep(timeout)
                raise ClusterException(f"{resource} not ready after {timeout:0.1f}s")
            await asyncio.sleep(delay)
        if (message := self._ready_errors.get(resource)) is not None:
            raise ClusterException(f"{resource} failed: {message}")


def _log_retry(state: RetryCallState) -> None:
    error = state.outcome.exception() if state.outcome else None
    _LOGGER.warning(
        "Cluster call failed (attempt %d), retrying: %s", state.attempt_number, error
    )


class RetryingClusterClient(ClusterClient):
    """Retries calls that fail with a `TransientClusterError`."""

    def __init__(
        self,
        client: ClusterClient,
        attempts: int = 3,
        backoff: float = 0.5,
        max_backoff: float = 10.0,
    ) -> None:
        """Initialize RetryingClusterClient."""
        self._client = client
        self._attempts = max(attempts, 1)
        self._backoff = backoff
        self._max_backoff = max_backoff

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._attempts),
            wait=wait_exponential(multiplier=self._backoff, max=self._max_backoff),
            retry=retry_if_exception_type(TransientClusterError),
            before_sleep=_log_retry,
            reraise=True,
        )

    async def apply(self, document: RenderedDocument) -> ApplyResult:
        return await self._retrying()(self._client.apply, document)

    async def get(
        self, kind: str, name: str, namespace: str | None
    ) -> dict[str, Any] | None:
        return await self._retrying()(self._client.get, kind, name, namespace)

    async def delete(self, kind: str, name: str, namespace: str | None) -> bool:
        return await self._retrying()(self._client.delete, kind, name, namespace)

    async def wait_ready(
        self, kind: str, name: str, namespace: str | None, timeout: float
    ) -> None:
        await self._client.wait_ready(kind, name, namespace, timeout)
