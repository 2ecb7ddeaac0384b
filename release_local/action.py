"""The release manager orchestrates the lifecycle of releases.

Every mutating operation follows the same steps while holding a per-release
lock:

1. Read the revision history from the store.
2. Resolve dependencies, merge values, and render. Configuration and rendering
   errors are raised here, before any revision is written.
3. Record the new revision with a pending status.
4. Run the pre-phase hooks, apply the documents in install order, delete
   resources removed since the previous revision, and run the post-phase hooks.
5. Commit the revision as `deployed`, superseding the previous deployed
   revision, or as `failed` with the causal message in its description.

A second mutating call for a release that is locked is rejected with
`ReleaseConflictError` rather than queued. Reads do not take the lock.

Example:
```python
manager = ReleaseManager(FileReleaseStore(Path("releases")), InMemoryCluster())
chart = await load_chart(Path("charts/webapp"))
release = await manager.install(
    "web", "default", chart, ValueSources(set_values=["replicaCount=3"])
)
await manager.upgrade("web", "default", chart, {"replicaCount": 5})
await manager.rollback("web", "default")
```
"""

import asyncio
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from dataclasses import dataclass, field
import datetime
import logging
from typing import Any

from .chart import ChartRepository
from .cluster import ClusterClient, RetryingClusterClient
from .config import ManagerConfig
from .context import ReleaseContext, trace_context
from .dependency import resolve_dependencies
from .exceptions import (
    ApplyFailedError,
    ClusterException,
    HookFailedError,
    OperationTimeoutError,
    ReleaseConflictError,
    ReleaseExistsError,
    ReleaseNotFoundError,
    RevisionNotFoundError,
)
from .hooks import HookScheduler
from .manifest import (
    ApplyResult,
    Chart,
    HookPhase,
    NamedResource,
    Release,
    ReleaseKey,
    ReleaseStatus,
    RenderedDocument,
)
from .resource_diff import changed_resources, perform_document_diff, removed_resources
from .store import ReleaseStore
from .template import Renderer, RenderResult, sort_for_uninstall
from .values import ValueSources, ValueTree, merge_values

__all__ = [
    "ReleaseManager",
    "ReleaseDiff",
]

_LOGGER = logging.getLogger(__name__)

SKIPPED = "skipped after an earlier failure"

Values = ValueSources | ValueTree | None


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


async def _user_values(values: Values) -> ValueTree:
    if values is None:
        return {}
    if isinstance(values, ValueSources):
        return await values.resolve()
    return merge_values(values)


class ReleaseLocks:
    """Tracks releases with a mutating operation in progress."""

    def __init__(self) -> None:
        self._held: set[ReleaseKey] = set()

    @contextmanager
    def hold(self, key: ReleaseKey) -> Generator[None, None, None]:
        """Hold the lock for a release, failing if it is already held."""
        if key in self._held:
            raise ReleaseConflictError(f"Release {key} has another operation in progress")
        self._held.add(key)
        try:
            yield
        finally:
            self._held.discard(key)

    def is_locked(self, key: ReleaseKey) -> bool:
        return key in self._held


@dataclass
class ReleaseDiff:
    """Changes an upgrade would make to the deployed revision."""

    diff: str
    """Unified diff of the rendered documents."""

    changed: list[NamedResource] = field(default_factory=list)
    """Resources that are added, changed, or removed."""

    removed: list[NamedResource] = field(default_factory=list)
    """Resources that would be deleted."""


class ReleaseManager:
    """Installs, upgrades, rolls back, and uninstalls releases."""

    def __init__(
        self,
        store: ReleaseStore,
        cluster: ClusterClient,
        repository: ChartRepository | None = None,
        config: ManagerConfig | None = None,
        renderer: Renderer | None = None,
    ) -> None:
        """Initialize ReleaseManager."""
        self._store = store
        self._config = config or ManagerConfig()
        self._cluster: ClusterClient = cluster
        if self._config.apply_retries > 1:
            self._cluster = RetryingClusterClient(
                cluster,
                attempts=self._config.apply_retries,
                backoff=self._config.retry_backoff,
            )
        self._repository = repository
        self._renderer = renderer or Renderer()
        self._locks = ReleaseLocks()

    def _deadline(self, timeout: float | None) -> float:
        if timeout is None:
            timeout = self._config.default_timeout
        return asyncio.get_running_loop().time() + timeout

    def _remaining(self, deadline: float) -> float:
        return max(deadline - asyncio.get_running_loop().time(), 0.0)

    def _render(
        self,
        chart: Chart,
        values: ValueTree,
        context: ReleaseContext,
    ) -> RenderResult:
        resolution = resolve_dependencies(chart, values, self._repository)
        return self._renderer.render(resolution, context)

    async def template(
        self,
        name: str,
        namespace: str,
        chart: Chart,
        values: Values = None,
        *,
        revision: int = 1,
        is_upgrade: bool = False,
    ) -> RenderResult:
        """Render a chart for a release without touching the store or cluster."""
        context = ReleaseContext(
            name=name,
            namespace=namespace,
            revision=revision,
            chart=chart.ref,
            is_install=not is_upgrade,
            is_upgrade=is_upgrade,
        )
        return self._render(chart, await _user_values(values), context)

    async def install(
        self,
        name: str,
        namespace: str,
        chart: Chart,
        values: Values = None,
        *,
        dry_run: bool = False,
        wait: bool | None = None,
        timeout: float | None = None,
        description: str | None = None,
        replace: bool = False,
    ) -> Release:
        """Install a chart as a new release.

        Raises `ReleaseExistsError` when the release is in use, unless
        `replace` allows reusing the name of a failed release.
        """
        key = ReleaseKey(namespace=namespace, name=name)
        deadline = self._deadline(timeout)
        with self._locks.hold(key), trace_context(f"Install {key}"):
            history = await self._store.history(key)
            if history:
                last = history[-1]
                if last.status.is_pending:
                    raise ReleaseConflictError(
                        f"Release {key} has an operation in progress ({last.status})"
                    )
                if last.status != ReleaseStatus.UNINSTALLED and not replace:
                    raise ReleaseExistsError(
                        f"Release {key} already exists (revision {last.revision}, {last.status})"
                    )
            return await self._install(
                key, chart, values, history, dry_run, wait, deadline, description
            )

    async def _install(
        self,
        key: ReleaseKey,
        chart: Chart,
        values: Values,
        history: list[Release],
        dry_run: bool,
        wait: bool | None,
        deadline: float,
        description: str | None,
    ) -> Release:
        revision = history[-1].revision + 1 if history else 1
        user_values = await _user_values(values)
        context = ReleaseContext(
            name=key.name,
            namespace=key.namespace,
            revision=revision,
            chart=chart.ref,
            is_install=True,
        )
        result = self._render(chart, user_values, context)
        release = self._new_revision(
            context, chart, user_values, result, ReleaseStatus.PENDING_INSTALL
        )
        if dry_run:
            return release.with_status(ReleaseStatus.PENDING_INSTALL, "Dry run complete")
        release = release.with_status(
            ReleaseStatus.PENDING_INSTALL, "Initial install underway"
        )
        await self._store.create(release)
        _LOGGER.info("Installing %s revision %d (%s)", key, revision, chart.ref)
        return await self._execute(
            release,
            "Install",
            HookPhase.PRE_INSTALL,
            HookPhase.POST_INSTALL,
            [],
            wait,
            deadline,
            description or "Install complete",
        )

    async def upgrade(
        self,
        name: str,
        namespace: str,
        chart: Chart,
        values: Values = None,
        *,
        install: bool = False,
        reuse_values: bool = False,
        reset_values: bool = False,
        dry_run: bool = False,
        wait: bool | None = None,
        timeout: float | None = None,
        description: str | None = None,
    ) -> Release:
        """Upgrade a release to a new chart version or new values.

        When no values are passed the values of the deployed revision are
        reused, `reuse_values` merges new values over them and `reset_values`
        uses only the chart defaults and the new values. A failed upgrade
        leaves the previously deployed revision deployed.
        """
        key = ReleaseKey(namespace=namespace, name=name)
        deadline = self._deadline(timeout)
        with self._locks.hold(key), trace_context(f"Upgrade {key}"):
            history = await self._store.history(key)
            if not history or history[-1].status == ReleaseStatus.UNINSTALLED:
                if install:
                    _LOGGER.info("Release %s not found, installing", key)
                    return await self._install(
                        key, chart, values, history, dry_run, wait, deadline, description
                    )
                raise ReleaseNotFoundError(f"Release {key} has no deployed revision")
            last = history[-1]
            if last.status.is_pending:
                raise ReleaseConflictError(
                    f"Release {key} has an operation in progress ({last.status})"
                )
            current = _deployed(history) or last

            new_values = await _user_values(values)
            if reset_values:
                user_values = new_values
            elif reuse_values or not new_values:
                user_values = merge_values(current.values, new_values)
            else:
                user_values = new_values

            context = ReleaseContext(
                name=name,
                namespace=namespace,
                revision=last.revision + 1,
                chart=chart.ref,
                is_upgrade=True,
            )
            result = self._render(chart, user_values, context)
            release = self._new_revision(
                context,
                chart,
                user_values,
                result,
                ReleaseStatus.PENDING_UPGRADE,
                first_deployed=current.first_deployed,
            )
            if dry_run:
                return release.with_status(ReleaseStatus.PENDING_UPGRADE, "Dry run complete")
            release = release.with_status(ReleaseStatus.PENDING_UPGRADE, "Preparing upgrade")
            await self._store.create(release)
            _LOGGER.info(
                "Upgrading %s revision %d to %d (%s)",
                key,
                current.revision,
                release.revision,
                chart.ref,
            )
            return await self._execute(
                release,
                "Upgrade",
                HookPhase.PRE_UPGRADE,
                HookPhase.POST_UPGRADE,
                removed_resources(current.documents, release.documents),
                wait,
                deadline,
                description or "Upgrade complete",
            )

    async def rollback(
        self,
        name: str,
        namespace: str,
        revision: int = 0,
        *,
        wait: bool | None = None,
        timeout: float | None = None,
        description: str | None = None,
    ) -> Release:
        """Re-apply the documents of an earlier revision as a new revision.

        A revision of 0 rolls back to the revision before the deployed one.
        The stored documents and hooks are applied unchanged.
        """
        key = ReleaseKey(namespace=namespace, name=name)
        deadline = self._deadline(timeout)
        with self._locks.hold(key), trace_context(f"Rollback {key}"):
            history = await self._store.history(key)
            if not history:
                raise ReleaseNotFoundError(f"Release {key} not found")
            last = history[-1]
            if last.status.is_pending:
                raise ReleaseConflictError(
                    f"Release {key} has an operation in progress ({last.status})"
                )
            current = _deployed(history) or last
            if revision == 0:
                revision = current.revision - 1
                if revision < 1:
                    raise RevisionNotFoundError(
                        f"Release {key} has no revision before {current.revision}"
                    )
            target = await self._store.get(key, revision)
            now = _now()
            release = Release(
                name=name,
                namespace=namespace,
                revision=last.revision + 1,
                chart=target.chart,
                status=ReleaseStatus.PENDING_ROLLBACK,
                app_version=target.app_version,
                values=target.values,
                config=target.config,
                documents=target.documents,
                hooks=target.hooks,
                description=f"Rollback to {target.revision}",
                notes=target.notes,
                first_deployed=current.first_deployed or now,
                last_deployed=now,
            )
            await self._store.create(release)
            _LOGGER.info(
                "Rolling back %s to revision %d as revision %d",
                key,
                target.revision,
                release.revision,
            )
            return await self._execute(
                release,
                "Rollback",
                HookPhase.PRE_ROLLBACK,
                HookPhase.POST_ROLLBACK,
                removed_resources(current.documents, release.documents),
                wait,
                deadline,
                description or f"Rollback to {target.revision}",
            )

    async def uninstall(
        self,
        name: str,
        namespace: str,
        *,
        keep_history: bool = False,
        timeout: float | None = None,
        description: str | None = None,
    ) -> Release:
        """Delete the resources of a release.

        Returns the final `uninstalled` record. The history is removed from
        the store unless `keep_history` is set.
        """
        key = ReleaseKey(namespace=namespace, name=name)
        deadline = self._deadline(timeout)
        with self._locks.hold(key), trace_context(f"Uninstall {key}"):
            history = await self._store.history(key)
            if not history or history[-1].status == ReleaseStatus.UNINSTALLED:
                raise ReleaseNotFoundError(f"Release {key} not found")
            last = history[-1]
            if last.status.is_pending and last.status != ReleaseStatus.UNINSTALLING:
                raise ReleaseConflictError(
                    f"Release {key} has an operation in progress ({last.status})"
                )
            # The latest revision may be a failed upgrade on top of the
            # deployed one, so resources of both are deleted
            documents = list(last.documents)
            deployed = _deployed(history)
            if deployed is not None and deployed.revision != last.revision:
                seen = {doc.resource_id for doc in documents}
                documents.extend(
                    doc for doc in deployed.documents if doc.resource_id not in seen
                )
            release = last.with_status(ReleaseStatus.UNINSTALLING, "Deletion in progress")
            await self._store.update(release)
            _LOGGER.info("Uninstalling %s revision %d", key, release.revision)

            results: list[ApplyResult] = []
            scheduler = self._scheduler(deadline)
            try:
                async with asyncio.timeout_at(deadline):
                    await scheduler.run_phase(HookPhase.PRE_DELETE, release.hooks, results)
                    await self._delete_documents(sort_for_uninstall(documents), results)
                    await scheduler.run_phase(HookPhase.POST_DELETE, release.hooks, results)
            except (TimeoutError, HookFailedError, ClusterException) as err:
                if isinstance(err, TimeoutError) or self._remaining(deadline) <= 0:
                    await self._fail(release, "Uninstall", results, "timed out")
                    raise OperationTimeoutError(f"Uninstall of {key} timed out") from err
                await self._fail(release, "Uninstall", results, str(err))
                raise
            except asyncio.CancelledError:
                await self._fail(release, "Uninstall", results, "cancelled")
                raise
            except Exception as err:
                await self._fail(release, "Uninstall", results, str(err))
                raise

            done = release.with_status(
                ReleaseStatus.UNINSTALLED,
                description or "Uninstallation complete",
                apply_results=results,
                deleted=_now(),
            )
            if keep_history:
                await self._supersede(key, done.revision)
                await self._store.update(done)
            else:
                for revision in await self._store.history(key):
                    await self._store.delete(key, revision.revision)
            _LOGGER.info("Uninstalled %s", key)
            return done

    async def test(
        self, name: str, namespace: str, *, timeout: float | None = None
    ) -> list[ApplyResult]:
        """Run the test hooks of the deployed revision."""
        key = ReleaseKey(namespace=namespace, name=name)
        deadline = self._deadline(timeout)
        with self._locks.hold(key), trace_context(f"Test {key}"):
            if (release := await self._store.deployed(key)) is None:
                raise ReleaseNotFoundError(f"Release {key} has no deployed revision")
            try:
                async with asyncio.timeout_at(deadline):
                    return await self._scheduler(deadline).run_phase(
                        HookPhase.TEST, release.hooks
                    )
            except TimeoutError as err:
                raise OperationTimeoutError(f"Tests of {key} timed out") from err

    async def diff(
        self,
        name: str,
        namespace: str,
        chart: Chart,
        values: Values = None,
        *,
        reuse_values: bool = False,
    ) -> ReleaseDiff:
        """Render an upgrade and compare it with the deployed revision."""
        key = ReleaseKey(namespace=namespace, name=name)
        history = await self._store.history(key)
        current = _deployed(history)
        new_values = await _user_values(values)
        if current is not None and (reuse_values or not new_values):
            new_values = merge_values(current.values, new_values)
        result = await self.template(
            name,
            namespace,
            chart,
            new_values,
            revision=history[-1].revision + 1 if history else 1,
            is_upgrade=current is not None,
        )
        old_documents = current.documents if current is not None else []
        return ReleaseDiff(
            diff="".join(perform_document_diff(old_documents, result.documents)),
            changed=changed_resources(old_documents, result.documents),
            removed=[
                doc.resource_id for doc in removed_resources(old_documents, result.documents)
            ],
        )

    async def status(
        self, name: str, namespace: str, revision: int | None = None
    ) -> Release:
        """Return the latest revision of a release, or a specific revision."""
        key = ReleaseKey(namespace=namespace, name=name)
        if revision is not None:
            return await self._store.get(key, revision)
        if (release := await self._store.last(key)) is None:
            raise ReleaseNotFoundError(f"Release {key} not found")
        return release

    async def history(
        self, name: str, namespace: str, max_revisions: int | None = None
    ) -> list[Release]:
        """Return the revisions of a release ordered by revision number."""
        key = ReleaseKey(namespace=namespace, name=name)
        if not (history := await self._store.history(key)):
            raise ReleaseNotFoundError(f"Release {key} not found")
        if max_revisions is not None and max_revisions > 0:
            return history[-max_revisions:]
        return history

    async def list_releases(
        self,
        namespace: str | None = None,
        statuses: Iterable[ReleaseStatus] | None = None,
    ) -> list[Release]:
        """Return the latest revision of each release."""
        releases = await self._store.list_releases(namespace)
        if statuses is None:
            return releases
        wanted = set(statuses)
        return [release for release in releases if release.status in wanted]

    def _new_revision(
        self,
        context: ReleaseContext,
        chart: Chart,
        user_values: ValueTree,
        result: RenderResult,
        status: ReleaseStatus,
        first_deployed: datetime.datetime | None = None,
    ) -> Release:
        now = _now()
        return Release(
            name=context.name,
            namespace=context.namespace,
            revision=context.revision,
            chart=chart.ref,
            status=status,
            app_version=chart.metadata.app_version,
            values=user_values,
            config=result.values,
            documents=result.documents,
            hooks=result.hooks,
            notes=result.notes,
            first_deployed=first_deployed or now,
            last_deployed=now,
        )

    def _scheduler(self, deadline: float) -> HookScheduler:
        return HookScheduler(
            self._cluster,
            timeout=self._config.hook_timeout,
            poll_interval=self._config.poll_interval,
            deadline=deadline,
        )

    async def _execute(
        self,
        release: Release,
        verb: str,
        pre: HookPhase,
        post: HookPhase,
        removed: list[RenderedDocument],
        wait: bool | None,
        deadline: float,
        description: str,
    ) -> Release:
        """Run hooks and apply documents, then commit the final status."""
        if wait is None:
            wait = self._config.wait
        results: list[ApplyResult] = []
        scheduler = self._scheduler(deadline)
        try:
            async with asyncio.timeout_at(deadline):
                await scheduler.run_phase(pre, release.hooks, results)
                await self._apply_documents(release.documents, wait, deadline, results)
                await self._delete_documents(removed, results)
                await scheduler.run_phase(post, release.hooks, results)
        except (TimeoutError, HookFailedError, ClusterException) as err:
            # A cluster call that gave up at the deadline counts as a timeout
            if isinstance(err, TimeoutError) or self._remaining(deadline) <= 0:
                await self._fail(release, verb, results, "timed out")
                raise OperationTimeoutError(
                    f"{verb} of {release.key} revision {release.revision} timed out"
                ) from err
            await self._fail(release, verb, results, str(err))
            raise
        except asyncio.CancelledError:
            await self._fail(release, verb, results, "cancelled")
            raise
        except Exception as err:
            await self._fail(release, verb, results, str(err))
            raise

        deployed = release.with_status(
            ReleaseStatus.DEPLOYED,
            description,
            apply_results=results,
            last_deployed=_now(),
        )
        await self._supersede(release.key, deployed.revision)
        await self._store.update(deployed)
        _LOGGER.info("Release %s revision %d deployed", release.key, release.revision)
        await self._prune(release.key)
        return deployed

    async def _fail(
        self, release: Release, verb: str, results: list[ApplyResult], reason: str
    ) -> None:
        failed = release.with_status(
            ReleaseStatus.FAILED, f"{verb} failed: {reason}", apply_results=results
        )
        await self._store.update(failed)
        _LOGGER.error(
            "Release %s revision %d failed: %s", release.key, release.revision, reason
        )
        await self._prune(release.key)

    async def _apply_documents(
        self,
        documents: list[RenderedDocument],
        wait: bool,
        deadline: float,
        results: list[ApplyResult],
    ) -> None:
        for i, doc in enumerate(documents):
            try:
                results.append(await self._cluster.apply(doc))
            except ClusterException as err:
                results.append(
                    ApplyResult(resource=str(doc.resource_id), succeeded=False, error=str(err))
                )
                results.extend(
                    ApplyResult(resource=str(rest.resource_id), succeeded=False, error=SKIPPED)
                    for rest in documents[i + 1 :]
                )
                raise ApplyFailedError(
                    f"Unable to apply {doc.resource_id}: {err}", list(results)
                ) from err
        if not wait:
            return
        for doc in documents:
            resource = doc.resource_id
            try:
                await self._cluster.wait_ready(
                    resource.kind, resource.name, resource.namespace, self._remaining(deadline)
                )
            except ClusterException as err:
                results.append(
                    ApplyResult(
                        resource=str(resource), succeeded=False, operation="wait", error=str(err)
                    )
                )
                raise ApplyFailedError(f"{resource} did not become ready: {err}", list(results)) from err
            results.append(ApplyResult(resource=str(resource), succeeded=True, operation="wait"))

    async def _delete_documents(
        self, documents: list[RenderedDocument], results: list[ApplyResult]
    ) -> None:
        for doc in documents:
            resource = doc.resource_id
            if doc.keep_on_delete:
                _LOGGER.info("Keeping %s, resource policy is keep", resource)
                results.append(ApplyResult(resource=str(resource), succeeded=True, operation="keep"))
                continue
            found = await self._cluster.delete(resource.kind, resource.name, resource.namespace)
            results.append(
                ApplyResult(
                    resource=str(resource),
                    succeeded=True,
                    operation="delete",
                    error=None if found else "not found",
                )
            )

    async def _supersede(self, key: ReleaseKey, revision: int) -> None:
        """Mark every other deployed revision as superseded."""
        for other in await self._store.history(key):
            if other.revision != revision and other.status == ReleaseStatus.DEPLOYED:
                await self._store.update(
                    other.with_status(
                        ReleaseStatus.SUPERSEDED, f"Superseded by revision {revision}"
                    )
                )

    async def _prune(self, key: ReleaseKey) -> None:
        """Delete the oldest revisions beyond the configured history limit."""
        if (max_history := self._config.max_history) <= 0:
            return
        history = await self._store.history(key)
        excess = len(history) - max_history
        for release in history[:-1]:
            if excess <= 0:
                break
            if release.status == ReleaseStatus.DEPLOYED:
                continue
            _LOGGER.debug("Pruning %s revision %d", key, release.revision)
            await self._store.delete(key, release.revision)
            excess -= 1


def _deployed(history: list[Release]) -> Release | None:
    for release in reversed(history):
        if release.status == ReleaseStatus.DEPLOYED:
            return release
    return None
