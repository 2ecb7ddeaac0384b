"""Representation of charts, rendered documents, and releases.

A `Chart` is loaded from a chart package and rendered into a set of
`RenderedDocument` objects. A `Release` is one numbered revision of a chart
installed under a name and namespace, and is the record persisted by the
release store. Releases may be serialized to YAML and read back without loss
so that the full revision history can be inspected or rolled back.
"""

from dataclasses import dataclass, field, replace
import datetime
from enum import StrEnum
import logging
from typing import Any

from mashumaro import DataClassDictMixin
from mashumaro.codecs.yaml import yaml_decode, yaml_encode
from mashumaro.config import BaseConfig

from .exceptions import ChartException
from .version import parse_version

__all__ = [
    "NamedResource",
    "ChartDependency",
    "ChartMetadata",
    "ChartRef",
    "Chart",
    "RenderedDocument",
    "HookPhase",
    "HookDeletePolicy",
    "Hook",
    "ReleaseKey",
    "ReleaseStatus",
    "ApplyResult",
    "Release",
]

_LOGGER = logging.getLogger(__name__)


CHART_API_VERSION_V2 = "v2"
CHART_TYPE_APPLICATION = "application"
CHART_TYPE_LIBRARY = "library"

HOOK_ANNOTATION = "helm.sh/hook"
HOOK_WEIGHT_ANNOTATION = "helm.sh/hook-weight"
HOOK_DELETE_POLICY_ANNOTATION = "helm.sh/hook-delete-policy"
HOOK_CONTINUE_ANNOTATION = "release-local/hook-continue-on-failure"
RESOURCE_POLICY_ANNOTATION = "helm.sh/resource-policy"
RESOURCE_POLICY_KEEP = "keep"

# Kinds that are not namespaced and are applied without a namespace.
CLUSTER_SCOPED_KINDS = frozenset(
    {
        "Namespace",
        "CustomResourceDefinition",
        "ClusterRole",
        "ClusterRoleList",
        "ClusterRoleBinding",
        "ClusterRoleBindingList",
        "PersistentVolume",
        "StorageClass",
        "PodSecurityPolicy",
        "IngressClass",
        "APIService",
        "PriorityClass",
        "ValidatingWebhookConfiguration",
        "MutatingWebhookConfiguration",
    }
)


class BaseManifest(DataClassDictMixin):
    """Base class for all serializable objects."""

    @classmethod
    def parse_yaml(cls, content: str) -> "BaseManifest":
        """Parse a serialized object."""
        return yaml_decode(content, cls)

    def yaml(self) -> str:
        """Return a YAML string representation of the object."""
        return yaml_encode(self, self.__class__)  # type: ignore[return-value]

    class Config(BaseConfig):
        omit_none = True


@dataclass(frozen=True, order=True)
class NamedResource:
    """Identifier for a kubernetes resource."""

    kind: str
    namespace: str | None
    name: str

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


@dataclass
class ChartDependency(BaseManifest):
    """A dependency declared in the metadata of a parent chart."""

    name: str
    """The name of the dependent chart."""

    version: str | None = None
    """A semantic version constraint the dependent chart must satisfy."""

    repository: str | None = None
    """The repository the chart is fetched from, informational only."""

    condition: str | None = None
    """Comma separated value paths that enable or disable the chart."""

    tags: list[str] = field(default_factory=list)
    """Tags used to enable or disable groups of charts."""

    alias: str | None = None
    """Alternate name used for the chart values and rendered template paths."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any], parent: str) -> "ChartDependency":
        """Parse a dependency entry from a Chart.yaml document."""
        if not isinstance(doc, dict):
            raise ChartException(f"Chart {parent} has invalid dependency entry: {doc}")
        if not (name := doc.get("name")):
            raise ChartException(f"Chart {parent} dependency missing name: {doc}")
        tags = doc.get("tags") or []
        if not isinstance(tags, list):
            raise ChartException(f"Chart {parent} dependency {name} tags must be a list")
        version = doc.get("version")
        return cls(
            name=name,
            version=str(version) if version is not None else None,
            repository=doc.get("repository"),
            condition=doc.get("condition"),
            tags=[str(tag) for tag in tags],
            alias=doc.get("alias"),
        )

    @property
    def value_key(self) -> str:
        """Key under the parent values that holds this chart's values."""
        return self.alias or self.name


@dataclass
class ChartMetadata(BaseManifest):
    """Contents of the Chart.yaml metadata descriptor."""

    name: str
    """The name of the chart."""

    version: str
    """The semantic version of the chart."""

    api_version: str = CHART_API_VERSION_V2
    """The chart API version."""

    app_version: str | None = None
    """The version of the application packaged by the chart."""

    description: str | None = None
    """A one line description of the chart."""

    type: str = CHART_TYPE_APPLICATION
    """Either an application chart or a library chart."""

    dependencies: list[ChartDependency] = field(default_factory=list)
    """Charts this chart depends on, in declaration order."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "ChartMetadata":
        """Parse a Chart.yaml document."""
        if not isinstance(doc, dict):
            raise ChartException(f"Invalid chart metadata: {doc}")
        if not (name := doc.get("name")):
            raise ChartException(f"Invalid chart metadata missing name: {doc}")
        if (version := doc.get("version")) is None:
            raise ChartException(f"Invalid chart {name} metadata missing version")
        version = str(version)
        try:
            parse_version(version)
        except ValueError as err:
            raise ChartException(f"Chart {name} has invalid version: {err}") from err
        chart_type = doc.get("type") or CHART_TYPE_APPLICATION
        if chart_type not in (CHART_TYPE_APPLICATION, CHART_TYPE_LIBRARY):
            raise ChartException(f"Chart {name} has invalid type '{chart_type}'")
        app_version = doc.get("appVersion")
        return cls(
            name=name,
            version=version,
            api_version=doc.get("apiVersion", CHART_API_VERSION_V2),
            app_version=str(app_version) if app_version is not None else None,
            description=doc.get("description"),
            type=chart_type,
            dependencies=[
                ChartDependency.parse_doc(dep, name)
                for dep in doc.get("dependencies") or ()
            ],
        )


@dataclass(frozen=True, order=True)
class ChartRef(BaseManifest):
    """Identity of a chart, its name and version."""

    name: str
    version: str

    def __str__(self) -> str:
        return f"{self.name}@{self.version}"


@dataclass(frozen=True)
class Chart:
    """A loaded chart package.

    Charts are never modified once loaded. The `templates` are keyed by their
    path relative to the chart root, e.g. `templates/deployment.yaml`.
    """

    metadata: ChartMetadata
    values: dict[str, Any] = field(default_factory=dict)
    templates: dict[str, str] = field(default_factory=dict)
    charts: tuple["Chart", ...] = ()

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def version(self) -> str:
        return self.metadata.version

    @property
    def ref(self) -> ChartRef:
        """Identity of the chart."""
        return ChartRef(name=self.metadata.name, version=self.metadata.version)

    @property
    def is_library(self) -> bool:
        return self.metadata.type == CHART_TYPE_LIBRARY

    def __str__(self) -> str:
        return str(self.ref)


@dataclass
class RenderedDocument(BaseManifest):
    """A fully expanded manifest and the identity parsed from its content."""

    source: str
    """The template path that produced this document."""

    content: str
    """The rendered YAML text of the document."""

    api_version: str
    """The apiVersion of the object."""

    kind: str
    """The kind of the object."""

    name: str
    """The name of the object."""

    namespace: str | None = None
    """The namespace of the object, None for cluster scoped kinds."""

    annotations: dict[str, str] = field(default_factory=dict)
    """The annotations of the object."""

    @property
    def resource_id(self) -> NamedResource:
        """Identity used for applying, ordering, and diffing."""
        return NamedResource(kind=self.kind, namespace=self.namespace, name=self.name)

    @property
    def keep_on_delete(self) -> bool:
        """Whether the resource is left behind when removed from a release."""
        return self.annotations.get(RESOURCE_POLICY_ANNOTATION) == RESOURCE_POLICY_KEEP


class HookPhase(StrEnum):
    """Lifecycle phase a hook is executed in."""

    PRE_INSTALL = "pre-install"
    POST_INSTALL = "post-install"
    PRE_UPGRADE = "pre-upgrade"
    POST_UPGRADE = "post-upgrade"
    PRE_ROLLBACK = "pre-rollback"
    POST_ROLLBACK = "post-rollback"
    PRE_DELETE = "pre-delete"
    POST_DELETE = "post-delete"
    TEST = "test"


class HookDeletePolicy(StrEnum):
    """Controls when hook resources are deleted."""

    BEFORE_HOOK_CREATION = "before-hook-creation"
    HOOK_SUCCEEDED = "hook-succeeded"
    HOOK_FAILED = "hook-failed"


@dataclass
class Hook(BaseManifest):
    """A rendered resource executed at a lifecycle phase."""

    name: str
    """The name of the hook resource."""

    kind: str
    """The kind of the hook resource."""

    phases: list[HookPhase]
    """Phases the hook is bound to."""

    document: RenderedDocument
    """The rendered hook resource."""

    weight: int = 0
    """Hooks run in ascending weight order within a phase."""

    delete_policies: list[HookDeletePolicy] = field(default_factory=list)
    """When the hook resource is deleted."""

    continue_on_failure: bool = False
    """A failure of this hook is recorded but does not abort the operation."""

    index: int = 0
    """Declaration order among all hooks of the release, used to break ties."""

    @property
    def resource_id(self) -> NamedResource:
        return self.document.resource_id

    def has_policy(self, policy: HookDeletePolicy) -> bool:
        return policy in self.delete_policies


@dataclass(frozen=True, order=True)
class ReleaseKey:
    """Identity of a release, its namespace and name."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class ReleaseStatus(StrEnum):
    """Status of a single release revision."""

    PENDING_INSTALL = "pending-install"
    PENDING_UPGRADE = "pending-upgrade"
    PENDING_ROLLBACK = "pending-rollback"
    DEPLOYED = "deployed"
    FAILED = "failed"
    SUPERSEDED = "superseded"
    UNINSTALLING = "uninstalling"
    UNINSTALLED = "uninstalled"

    @property
    def is_pending(self) -> bool:
        """Whether an operation on the revision has not finished."""
        return self in (
            ReleaseStatus.PENDING_INSTALL,
            ReleaseStatus.PENDING_UPGRADE,
            ReleaseStatus.PENDING_ROLLBACK,
            ReleaseStatus.UNINSTALLING,
        )


@dataclass
class ApplyResult(BaseManifest):
    """Outcome of a single cluster operation performed for a revision."""

    resource: str
    """The resource identity the operation acted on."""

    succeeded: bool
    """Whether the operation succeeded."""

    operation: str = "apply"
    """The operation performed, e.g. apply, delete, or hook:pre-install."""

    error: str | None = None
    """Error message when the operation failed or was skipped."""


@dataclass
class Release(BaseManifest):
    """One revision of a named, namespaced instance of a chart."""

    name: str
    """The name of the release."""

    namespace: str
    """The namespace the release is installed into."""

    revision: int
    """Revision number, starting at 1."""

    chart: ChartRef
    """The chart the revision was rendered from."""

    status: ReleaseStatus
    """Status of this revision."""

    app_version: str | None = None
    """The chart app version at the time of rendering."""

    values: dict[str, Any] = field(default_factory=dict)
    """User supplied values for the revision."""

    config: dict[str, Any] = field(default_factory=dict)
    """The fully resolved values used for rendering."""

    documents: list[RenderedDocument] = field(default_factory=list)
    """The rendered main documents, in install order."""

    hooks: list[Hook] = field(default_factory=list)
    """The rendered lifecycle hooks."""

    description: str | None = None
    """Human readable description of the last status change."""

    notes: str | None = None
    """Rendered release notes."""

    apply_results: list[ApplyResult] = field(default_factory=list)
    """Per document outcomes of the cluster operations."""

    first_deployed: datetime.datetime | None = None
    last_deployed: datetime.datetime | None = None
    deleted: datetime.datetime | None = None

    @property
    def key(self) -> ReleaseKey:
        return ReleaseKey(namespace=self.namespace, name=self.name)

    @property
    def resource_ids(self) -> list[NamedResource]:
        """Identity of all main documents in the revision."""
        return [doc.resource_id for doc in self.documents]

    def with_status(
        self, status: ReleaseStatus, description: str | None = None, **changes: Any
    ) -> "Release":
        """Return a copy of the revision with an updated status."""
        return replace(
            self,
            status=status,
            description=description if description is not None else self.description,
            **changes,
        )

    def __str__(self) -> str:
        return f"{self.key} (revision {self.revision}, {self.status})"
