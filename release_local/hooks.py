"""Lifecycle hooks executed around release operations.

A rendered document becomes a hook when it carries the `helm.sh/hook`
annotation, a comma separated list of phases. Hooks of a phase run one at a
time ordered by `helm.sh/hook-weight` and then by declaration order, and a
hook must complete before the next one starts. The
`helm.sh/hook-delete-policy` annotation controls when the hook resource is
removed again:

| Policy | Behavior |
|---|---|
| `before-hook-creation` | Delete an existing resource of the same identity first (the default) |
| `hook-succeeded` | Delete the resource after the hook succeeded |
| `hook-failed` | Delete the resource after the hook failed |

A failing hook aborts the operation unless it is annotated with
`release-local/hook-continue-on-failure: "true"`, in which case the failure is
recorded and the remaining hooks still run.
"""

import asyncio
from collections.abc import Iterable
import dataclasses
import hashlib
import logging
from typing import Any

import yaml

from .cluster import ClusterClient
from .exceptions import ClusterException, HookFailedError, RenderException
from .manifest import (
    HOOK_ANNOTATION,
    HOOK_CONTINUE_ANNOTATION,
    HOOK_DELETE_POLICY_ANNOTATION,
    HOOK_WEIGHT_ANNOTATION,
    ApplyResult,
    Hook,
    HookDeletePolicy,
    HookPhase,
    NamedResource,
    RenderedDocument,
)

__all__ = [
    "parse_hook",
    "HookScheduler",
    "annotate_checksums",
]

_LOGGER = logging.getLogger(__name__)

# Older charts use test-success for the test phase
_PHASE_ALIASES = {"test-success": HookPhase.TEST.value}

CHECKSUM_PREFIX = "checksum/"
CHECKSUM_SOURCE_KINDS = frozenset({"ConfigMap", "Secret"})
WORKLOAD_KINDS = frozenset(
    {"Deployment", "StatefulSet", "DaemonSet", "ReplicaSet", "Job", "CronJob"}
)


def _split(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def parse_hook(document: RenderedDocument, index: int) -> Hook | None:
    """Return the hook described by a document, or None for a main document."""
    if not (value := document.annotations.get(HOOK_ANNOTATION)):
        return None
    phases: list[HookPhase] = []
    for item in _split(value):
        try:
            phases.append(HookPhase(_PHASE_ALIASES.get(item, item)))
        except ValueError as err:
            raise RenderException(
                f"Template {document.source} has unknown hook phase '{item}'"
            ) from err

    weight = 0
    if raw_weight := document.annotations.get(HOOK_WEIGHT_ANNOTATION):
        try:
            weight = int(raw_weight)
        except ValueError as err:
            raise RenderException(
                f"Template {document.source} has invalid hook weight '{raw_weight}'"
            ) from err

    policies: list[HookDeletePolicy] = []
    for item in _split(document.annotations.get(HOOK_DELETE_POLICY_ANNOTATION, "")):
        try:
            policies.append(HookDeletePolicy(item))
        except ValueError as err:
            raise RenderException(
                f"Template {document.source} has unknown hook delete policy '{item}'"
            ) from err

    continue_on_failure = (
        document.annotations.get(HOOK_CONTINUE_ANNOTATION, "").lower() == "true"
    )
    return Hook(
        name=document.name,
        kind=document.kind,
        phases=phases,
        document=document,
        weight=weight,
        delete_policies=policies,
        continue_on_failure=continue_on_failure,
        index=index,
    )


class HookScheduler:
    """Runs the hooks of a lifecycle phase against the cluster."""

    def __init__(
        self,
        cluster: ClusterClient,
        timeout: float,
        poll_interval: float = 0.1,
        deadline: float | None = None,
    ) -> None:
        """Initialize HookScheduler.

        The `timeout` bounds a single hook while the optional `deadline`, in
        event loop time, bounds the whole operation.
        """
        self._cluster = cluster
        self._timeout = timeout
        self._poll_interval = poll_interval
        self._deadline = deadline

    def _remaining(self) -> float:
        if self._deadline is None:
            return self._timeout
        remaining = self._deadline - asyncio.get_running_loop().time()
        return max(min(self._timeout, remaining), 0.0)

    async def run_phase(
        self,
        phase: HookPhase,
        hooks: Iterable[Hook],
        results: list[ApplyResult] | None = None,
    ) -> list[ApplyResult]:
        """Run all hooks bound to the phase in weight order.

        The outcome of each hook is appended to `results` as soon as it is
        known, so the caller keeps the outcomes of earlier hooks when a later
        hook raises `HookFailedError`.
        """
        selected = sorted(
            (hook for hook in hooks if phase in hook.phases),
            key=lambda hook: (hook.weight, hook.index),
        )
        if results is None:
            results = []
        if not selected:
            return results
        _LOGGER.info("Running %d %s hooks", len(selected), phase)
        for hook in selected:
            try:
                results.append(await self._run_hook(phase, hook))
            except HookFailedError as err:
                results.append(
                    ApplyResult(
                        resource=str(hook.resource_id),
                        succeeded=False,
                        operation=f"hook:{phase}",
                        error=str(err),
                    )
                )
                raise
        return results

    async def _run_hook(self, phase: HookPhase, hook: Hook) -> ApplyResult:
        resource = hook.resource_id
        operation = f"hook:{phase}"
        if not hook.delete_policies or hook.has_policy(
            HookDeletePolicy.BEFORE_HOOK_CREATION
        ):
            await self._delete_existing(resource)

        _LOGGER.debug("Running %s hook %s (weight %d)", phase, resource, hook.weight)
        try:
            await self._cluster.apply(hook.document)
            await self._cluster.wait_ready(
                resource.kind, resource.name, resource.namespace, self._remaining()
            )
        except asyncio.CancelledError:
            if hook.has_policy(HookDeletePolicy.HOOK_FAILED):
                await self._cleanup(resource)
            raise
        except ClusterException as err:
            if hook.has_policy(HookDeletePolicy.HOOK_FAILED):
                await self._cleanup(resource)
            if hook.continue_on_failure:
                _LOGGER.warning(
                    "Hook %s failed during %s, continuing: %s", resource, phase, err
                )
                return ApplyResult(
                    resource=str(resource),
                    succeeded=False,
                    operation=operation,
                    error=str(err),
                )
            raise HookFailedError(str(resource), phase, str(err)) from err

        if hook.has_policy(HookDeletePolicy.HOOK_SUCCEEDED):
            await self._cleanup(resource)
        return ApplyResult(resource=str(resource), succeeded=True, operation=operation)

    async def _delete_existing(self, resource: NamedResource) -> None:
        """Delete a previous instance of a hook and wait until it is gone."""
        if await self._cluster.get(resource.kind, resource.name, resource.namespace) is None:
            return
        _LOGGER.debug("Deleting existing hook resource %s", resource)
        await self._cluster.delete(resource.kind, resource.name, resource.namespace)
        while (
            await self._cluster.get(resource.kind, resource.name, resource.namespace)
            is not None
        ):
            await asyncio.sleep(self._poll_interval)

    async def _cleanup(self, resource: NamedResource) -> None:
        try:
            await self._cluster.delete(resource.kind, resource.name, resource.namespace)
        except ClusterException as err:
            _LOGGER.warning("Unable to delete hook resource %s: %s", resource, err)


def _pod_spec(obj: dict[str, Any]) -> dict[str, Any] | None:
    spec = obj.get("spec") or {}
    if obj.get("kind") == "CronJob":
        spec = (spec.get("jobTemplate") or {}).get("spec") or {}
    pod_spec = (spec.get("template") or {}).get("spec")
    return pod_spec if isinstance(pod_spec, dict) else None


def _referenced_configs(pod_spec: dict[str, Any]) -> list[tuple[str, str]]:
    """Return the ConfigMaps and Secrets a pod spec mounts or reads."""
    refs: list[tuple[str, str]] = []

    def add(kind: str, name: Any) -> None:
        if name and (kind, str(name)) not in refs:
            refs.append((kind, str(name)))

    for volume in pod_spec.get("volumes") or []:
        add("ConfigMap", (volume.get("configMap") or {}).get("name"))
        add("Secret", (volume.get("secret") or {}).get("secretName"))
        for source in (volume.get("projected") or {}).get("sources") or []:
            add("ConfigMap", (source.get("configMap") or {}).get("name"))
            add("Secret", (source.get("secret") or {}).get("name"))
    for container in (pod_spec.get("initContainers") or []) + (
        pod_spec.get("containers") or []
    ):
        for env_from in container.get("envFrom") or []:
            add("ConfigMap", (env_from.get("configMapRef") or {}).get("name"))
            add("Secret", (env_from.get("secretRef") or {}).get("name"))
        for env in container.get("env") or []:
            value_from = env.get("valueFrom") or {}
            add("ConfigMap", (value_from.get("configMapKeyRef") or {}).get("name"))
            add("Secret", (value_from.get("secretKeyRef") or {}).get("name"))
    return refs


def _checksum(document: RenderedDocument) -> str:
    return hashlib.sha256(document.content.encode("utf-8")).hexdigest()


def annotate_checksums(
    documents: list[RenderedDocument], sources: list[RenderedDocument]
) -> list[RenderedDocument]:
    """Stamp workloads with checksums of the configuration they reference.

    A workload gets a `checksum/<kind>-<name>` pod template annotation for
    each ConfigMap or Secret of the release it references, so that changing
    the configuration rolls the workload.
    """
    configs = {
        (doc.kind, doc.namespace, doc.name): doc
        for doc in sources
        if doc.kind in CHECKSUM_SOURCE_KINDS
    }
    if not configs:
        return documents
    result = []
    for doc in documents:
        if doc.kind not in WORKLOAD_KINDS:
            result.append(doc)
            continue
        obj = yaml.load(doc.content, Loader=yaml.SafeLoader)
        if (pod_spec := _pod_spec(obj)) is None:
            result.append(doc)
            continue
        checksums = {
            f"{CHECKSUM_PREFIX}{kind.lower()}-{name}": _checksum(config)
            for kind, name in _referenced_configs(pod_spec)
            if (config := configs.get((kind, doc.namespace, name))) is not None
        }
        if not checksums:
            result.append(doc)
            continue
        spec = obj["spec"]
        if obj.get("kind") == "CronJob":
            spec = spec["jobTemplate"]["spec"]
        template = spec["template"]
        metadata = template.get("metadata") or {}
        metadata["annotations"] = {**(metadata.get("annotations") or {}), **checksums}
        template["metadata"] = metadata
        _LOGGER.debug("Annotated %s with %s", doc.resource_id, list(checksums))
        result.append(
            dataclasses.replace(
                doc, content=yaml.dump(obj, sort_keys=False, explicit_start=False)
            )
        )
    return result
