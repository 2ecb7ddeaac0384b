"""Render chart templates into documents.

Templates are written in Jinja2 syntax and see a Helm-like context:

| Name | Contents |
|---|---|
| `Values` | The chart's resolved values |
| `Chart` | `Name`, `Version`, `AppVersion`, `Type`, `Description` |
| `Release` | `Name`, `Namespace`, `Revision`, `IsInstall`, `IsUpgrade`, `Service` |
| `Template` | `Name` and `BasePath` of the template being rendered |
| `Global` | The global values shared with all sub-charts |

Named fragments are declared in any template of a chart, usually in files
starting with an underscore which never produce output of their own:

```
{% define "webapp.fullname" %}{{ Release.Name }}-{{ Chart.Name }}{% enddefine %}
```

and are expanded with `include`, which also accepts the name of another
template in the same chart:

```
metadata:
  name: {{ include("webapp.fullname") }}
  annotations:
    checksum/config: {{ include(Template.BasePath ~ "/configmap.yaml") | sha256sum }}
spec:
  replicas: {{ Values.replicaCount }}
  image: {{ Values.image.tag | required("image tag is required") }}
```

Fragments are scoped to a single chart. A chart additionally sees the
fragments of the library charts it depends on. Including an unknown name is a
rendering error.

Rendering has no access to clocks, randomness or the filesystem, so the same
charts, values, and release context always produce byte identical output.
"""

import base64
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
import hashlib
import json
import logging
import re
from typing import Any

import jinja2
from jinja2 import ChainableUndefined, Undefined, pass_context
from jinja2.runtime import Context
from jinja2.utils import missing
import yaml

from .config import RenderConfig
from .context import ReleaseContext, trace_context
from .dependency import Resolution, ResolvedChart
from .exceptions import ChartException, RenderException, RequiredValueError
from .hooks import annotate_checksums, parse_hook
from .manifest import CLUSTER_SCOPED_KINDS, Hook, RenderedDocument
from .values import GLOBAL_KEY
from .version import Constraint, parse_version

__all__ = [
    "Fragment",
    "FragmentRegistry",
    "RenderResult",
    "Renderer",
    "split_documents",
    "sort_for_install",
    "sort_for_uninstall",
]

_LOGGER = logging.getLogger(__name__)

TEMPLATES_DIR = "templates"
NOTES_FILE = "templates/NOTES.txt"

# Resource kinds in the order they are applied, other kinds are applied last
INSTALL_ORDER = [
    "Namespace",
    "NetworkPolicy",
    "ResourceQuota",
    "LimitRange",
    "PodSecurityPolicy",
    "PodDisruptionBudget",
    "ServiceAccount",
    "Secret",
    "SecretList",
    "ConfigMap",
    "StorageClass",
    "PersistentVolume",
    "PersistentVolumeClaim",
    "CustomResourceDefinition",
    "ClusterRole",
    "ClusterRoleList",
    "ClusterRoleBinding",
    "ClusterRoleBindingList",
    "Role",
    "RoleList",
    "RoleBinding",
    "RoleBindingList",
    "Service",
    "DaemonSet",
    "Pod",
    "ReplicationController",
    "ReplicaSet",
    "Deployment",
    "HorizontalPodAutoscaler",
    "StatefulSet",
    "Job",
    "CronJob",
    "IngressClass",
    "Ingress",
    "APIService",
]
_KIND_RANK = {kind: i for i, kind in enumerate(INSTALL_ORDER)}

_DEFINE_RE = re.compile(
    r"[ \t]*\{%(?P<open_ltrim>-?)\s*define\s+(?P<quote>[\"'])(?P<name>.+?)(?P=quote)\s*"
    r"(?P<open_rtrim>-?)%\}(?P<body>.*?)\{%(?P<close_ltrim>-?)\s*enddefine\s*"
    r"(?P<close_rtrim>-?)%\}[ \t]*\n?",
    re.DOTALL,
)
_DOC_SEPARATOR_RE = re.compile(r"^---[ \t]*(?:#.*)?$", re.MULTILINE)
_LEADING_BLANK_RE = re.compile(r"\A(?:[ \t]*\n)+")


def sort_for_install(documents: list[RenderedDocument]) -> list[RenderedDocument]:
    """Order documents by kind so dependencies such as namespaces apply first."""
    return sorted(
        documents, key=lambda doc: _KIND_RANK.get(doc.kind, len(INSTALL_ORDER))
    )


def sort_for_uninstall(documents: list[RenderedDocument]) -> list[RenderedDocument]:
    """Order documents in the reverse of the install order."""
    return list(reversed(sort_for_install(documents)))


@dataclass(frozen=True)
class Fragment:
    """A named reusable template fragment."""

    name: str
    source: str
    body: str

    @property
    def template_name(self) -> str:
        """Name used to load the fragment body as a template."""
        return f"{self.source}#{self.name}"


class FragmentRegistry:
    """Named fragments available to the templates of a single chart."""

    def __init__(self, scope: str) -> None:
        """Initialize FragmentRegistry."""
        self._scope = scope
        self._fragments: dict[str, Fragment] = {}

    @property
    def scope(self) -> str:
        return self._scope

    def define(self, fragment: Fragment) -> None:
        """Register a fragment, a later definition replaces an earlier one."""
        if (existing := self._fragments.get(fragment.name)) is not None:
            _LOGGER.debug(
                "Fragment %s defined in %s replaces definition in %s",
                fragment.name,
                fragment.source,
                existing.source,
            )
        self._fragments[fragment.name] = fragment

    def inherit(self, other: "FragmentRegistry") -> None:
        """Add fragments of a library chart that are not defined in this chart."""
        for name, fragment in other._fragments.items():
            self._fragments.setdefault(name, fragment)

    def get(self, name: str) -> Fragment:
        if (fragment := self._fragments.get(name)) is None:
            raise RenderException(
                f"Fragment '{name}' is not defined in chart {self._scope}"
            )
        return fragment

    def __contains__(self, name: object) -> bool:
        return name in self._fragments

    def __iter__(self) -> Iterator[Fragment]:
        return iter(self._fragments.values())

    def __len__(self) -> int:
        return len(self._fragments)


def extract_fragments(source: str, text: str) -> tuple[str, list[Fragment]]:
    """Remove `define` blocks from a template, returning the rest and the fragments."""
    fragments: list[Fragment] = []

    def _collect(match: re.Match[str]) -> str:
        body = match.group("body")
        if match.group("open_rtrim"):
            body = body.lstrip()
        elif body.startswith("\n"):
            body = body[1:]
        if match.group("close_ltrim"):
            body = body.rstrip()
        if "{% define" in body or "{%- define" in body:
            raise RenderException(
                f"Template {source} nests a define inside '{match.group('name')}'"
            )
        fragments.append(Fragment(name=match.group("name"), source=source, body=body))
        return ""

    return _DEFINE_RE.sub(_collect, text), fragments


class ValueScope(Mapping[str, Any]):
    """Read-only view of a value mapping that knows its path from `.Values`.

    Keys with a null value are hidden, so a null override reads as undefined.
    """

    __slots__ = ("_data", "_path")

    def __init__(self, data: Mapping[str, Any], path: str) -> None:
        self._data = data
        self._path = path

    def __getitem__(self, key: str) -> Any:
        if (value := self._data[key]) is None:
            raise KeyError(key)
        return _wrap(value, f"{self._path}.{key}")

    def __iter__(self) -> Iterator[str]:
        return (key for key, value in self._data.items() if value is not None)

    def __len__(self) -> int:
        return sum(1 for value in self._data.values() if value is not None)

    def __repr__(self) -> str:
        return f"ValueScope({self._path})"


def _wrap(value: Any, path: str) -> Any:
    if isinstance(value, Mapping):
        return ValueScope(value, path)
    if isinstance(value, list):
        return [_wrap(item, f"{path}[{i}]") for i, item in enumerate(value)]
    return value


def _unwrap(value: Any) -> Any:
    """Convert template values back into plain python objects."""
    if isinstance(value, Undefined):
        return None
    if isinstance(value, Mapping):
        return {str(k): _unwrap(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_unwrap(item) for item in value]
    return value


class ValueUndefined(ChainableUndefined):
    """An undefined value that renders empty and remembers the missing path."""

    __slots__ = ("_value_path",)

    def __init__(
        self,
        hint: str | None = None,
        obj: Any = missing,
        name: str | None = None,
        exc: type[jinja2.TemplateRuntimeError] = jinja2.UndefinedError,
        path: str | None = None,
    ) -> None:
        super().__init__(hint, obj, name, exc)
        if path is None:
            if isinstance(obj, ValueScope):
                path = f"{obj._path}.{name}"
            elif obj is not missing:
                path = f"{type(obj).__name__}.{name}"
            else:
                path = str(name)
        self._value_path = path

    @property
    def value_path(self) -> str:
        return self._value_path

    def __getattr__(self, name: str) -> Any:
        if name[:2] == "__":
            raise AttributeError(name)
        return self.__class__(
            name=name,
            exc=self._undefined_exception,
            path=f"{self._value_path}.{name}",
        )

    __getitem__ = __getattr__  # type: ignore[assignment]


class StrictValueUndefined(ValueUndefined):
    """An undefined value that fails when rendered."""

    __slots__ = ()

    def __str__(self) -> str:
        raise RenderException(f"Value {self._value_path} is not defined")


def _scalar_str(value: Any) -> str:
    if isinstance(value, Undefined) or value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _finalize(value: Any) -> Any:
    if isinstance(value, Undefined):
        return value
    if isinstance(value, (bool, type(None))):
        return _scalar_str(value)
    if isinstance(value, (Mapping, list, tuple)):
        return json.dumps(_unwrap(value))
    return value


def _is_empty(value: Any) -> bool:
    if isinstance(value, Undefined) or value is None or value is False:
        return True
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value == 0
    if isinstance(value, (str, Mapping, list, tuple)):
        return len(value) == 0
    return False


def _to_yaml(value: Any) -> str:
    if isinstance(value, Undefined):
        return ""
    text = yaml.safe_dump(
        _unwrap(value), sort_keys=False, default_flow_style=False, allow_unicode=True
    )
    if text.endswith("\n...\n"):
        text = text[: -len("\n...\n")]
    return text.rstrip("\n")


def _to_json(value: Any) -> str:
    return json.dumps(_unwrap(value), separators=(",", ":"))


def _from_yaml(value: Any) -> Any:
    try:
        return yaml.safe_load(_scalar_str(value))
    except yaml.YAMLError as err:
        raise RenderException(f"fromYaml could not parse value: {err}") from err


def _indent(value: Any, width: int) -> str:
    pad = " " * width
    return pad + _scalar_str(value).replace("\n", "\n" + pad)


def _nindent(value: Any, width: int) -> str:
    return "\n" + _indent(value, width)


def _quote(value: Any) -> str:
    return json.dumps(_scalar_str(value))


def _squote(value: Any) -> str:
    return f"'{_scalar_str(value)}'"


def _trunc(value: Any, length: int) -> str:
    text = _scalar_str(value)
    return text[:length] if length >= 0 else text[length:]


def _trim_suffix(value: Any, suffix: str) -> str:
    return _scalar_str(value).removesuffix(suffix)


def _trim_prefix(value: Any, prefix: str) -> str:
    return _scalar_str(value).removeprefix(prefix)


def _sha256sum(value: Any) -> str:
    return hashlib.sha256(_scalar_str(value).encode("utf-8")).hexdigest()


def _b64enc(value: Any) -> str:
    return base64.b64encode(_scalar_str(value).encode("utf-8")).decode("utf-8")


def _b64dec(value: Any) -> str:
    try:
        return base64.b64decode(_scalar_str(value)).decode("utf-8")
    except ValueError as err:
        raise RenderException(f"b64dec could not decode value: {err}") from err


def _default(value: Any, default_value: Any = "") -> Any:
    """Return the default when the value is empty, following Helm semantics."""
    return default_value if _is_empty(value) else value


@pass_context
def _required(context: Context, value: Any, message: str | None = None) -> Any:
    if isinstance(value, Undefined):
        path = value.value_path if isinstance(value, ValueUndefined) else str(value._undefined_name)
        raise RequiredValueError(path, context.name, message)
    if value is None or value == "":
        raise RequiredValueError("value", context.name, message)
    return value


def _fail(message: str) -> None:
    raise RenderException(str(message))


def _semver_compare(constraint: str, version: Any) -> bool:
    try:
        return Constraint.parse(constraint).allows(parse_version(_scalar_str(version)))
    except (ValueError, ChartException) as err:
        raise RenderException(f"semverCompare: {err}") from err


FILTERS: dict[str, Any] = {
    "toYaml": _to_yaml,
    "toJson": _to_json,
    "fromYaml": _from_yaml,
    "indent": _indent,
    "nindent": _nindent,
    "quote": _quote,
    "squote": _squote,
    "trunc": _trunc,
    "trimSuffix": _trim_suffix,
    "trimPrefix": _trim_prefix,
    "sha256sum": _sha256sum,
    "b64enc": _b64enc,
    "b64dec": _b64dec,
    "default": _default,
    "d": _default,
    "required": _required,
    "toString": _scalar_str,
}


def split_documents(source: str, text: str, namespace: str) -> list[RenderedDocument]:
    """Split rendered output into documents and parse their identity.

    Documents without a namespace are assigned the release namespace unless the
    kind is cluster scoped.
    """
    documents: list[RenderedDocument] = []
    for chunk in _DOC_SEPARATOR_RE.split(text):
        if not chunk.strip():
            continue
        try:
            obj = yaml.safe_load(chunk)
        except yaml.YAMLError as err:
            raise RenderException(f"Template {source} produced invalid YAML: {err}") from err
        if obj is None:
            continue
        if not isinstance(obj, dict):
            raise RenderException(f"Template {source} produced a document that is not a mapping")
        if not (kind := obj.get("kind")):
            raise RenderException(f"Template {source} produced a document missing kind")
        if not (api_version := obj.get("apiVersion")):
            raise RenderException(f"Template {source} produced {kind} missing apiVersion")
        metadata = obj.get("metadata")
        if not isinstance(metadata, dict) or not (name := metadata.get("name")):
            raise RenderException(f"Template {source} produced {kind} missing metadata.name")
        doc_namespace = metadata.get("namespace")
        if not doc_namespace and kind not in CLUSTER_SCOPED_KINDS:
            doc_namespace = namespace
        annotations = metadata.get("annotations") or {}
        if not isinstance(annotations, dict):
            raise RenderException(f"Template {source} produced {kind}/{name} with invalid annotations")
        documents.append(
            RenderedDocument(
                source=source,
                content=_LEADING_BLANK_RE.sub("", chunk).rstrip() + "\n",
                api_version=str(api_version),
                kind=str(kind),
                name=str(name),
                namespace=str(doc_namespace) if doc_namespace else None,
                annotations={str(k): _scalar_str(v) for k, v in annotations.items()},
            )
        )
    return documents


@dataclass
class RenderResult:
    """The output of rendering a chart and its dependencies."""

    documents: list[RenderedDocument] = field(default_factory=list)
    """Main documents in install order."""

    hooks: list[Hook] = field(default_factory=list)
    """Lifecycle hooks in declaration order."""

    notes: str | None = None
    """Rendered NOTES.txt of the root chart."""

    values: dict[str, Any] = field(default_factory=dict)
    """The fully resolved values of the root chart."""

    @property
    def manifest(self) -> str:
        """All main documents joined into a single multi-document string."""
        return "".join(f"---\n# Source: {doc.source}\n{doc.content}" for doc in self.documents)


class _ChartEnvironment(jinja2.Environment):
    """Environment where value keys take precedence over mapping methods."""

    def getattr(self, obj: Any, attribute: str) -> Any:
        if isinstance(obj, ValueScope):
            try:
                return obj[attribute]
            except KeyError:
                pass
        return super().getattr(obj, attribute)

    def getitem(self, obj: Any, argument: Any) -> Any:
        if isinstance(obj, ValueScope) and isinstance(argument, str):
            return self.getattr(obj, argument)
        return super().getitem(obj, argument)


class _ChartRenderer:
    """Renders the templates of one chart instance in its own environment."""

    def __init__(
        self,
        node: ResolvedChart,
        registry: FragmentRegistry,
        sources: dict[str, str],
        context: ReleaseContext,
        config: RenderConfig,
    ) -> None:
        self._node = node
        self._registry = registry
        self._sources = sources
        self._config = config
        self._depth = 0
        self._prefix = f"{node.label}/"
        chart = node.chart
        global_values = node.values.get(GLOBAL_KEY)
        self._scope: dict[str, Any] = {
            "Values": ValueScope(node.values, ".Values"),
            "Chart": {
                "Name": chart.metadata.name,
                "Version": chart.metadata.version,
                "AppVersion": chart.metadata.app_version or "",
                "Type": chart.metadata.type,
                "Description": chart.metadata.description or "",
            },
            "Release": context.template_scope(),
            "Global": ValueScope(
                global_values if isinstance(global_values, dict) else {},
                f".Values.{GLOBAL_KEY}",
            ),
        }
        self._env = _ChartEnvironment(
            loader=jinja2.FunctionLoader(self._load),
            undefined=StrictValueUndefined if config.strict else ValueUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
            finalize=_finalize,
            extensions=["jinja2.ext.do", "jinja2.ext.loopcontrols"],
        )
        # lipsum produces random output
        self._env.globals.pop("lipsum", None)
        self._env.filters.update(FILTERS)
        self._env.globals.update(
            include=self._include,
            tpl=self._tpl,
            fail=_fail,
            semverCompare=_semver_compare,
        )

    def _load(self, name: str) -> str | None:
        if name in self._sources:
            return self._sources[name]
        source, sep, fragment = name.rpartition("#")
        if sep and fragment in self._registry:
            found = self._registry.get(fragment)
            if found.source == source:
                return found.body
        return None

    def _resolve_include(self, name: str) -> str:
        if name in self._registry:
            return self._registry.get(name).template_name
        for candidate in (name, f"{self._prefix}{name}", f"{self._prefix}{TEMPLATES_DIR}/{name}"):
            if candidate in self._sources:
                return candidate
        raise RenderException(
            f"include: '{name}' is not a fragment or template of chart {self._node.label}"
        )

    @pass_context
    def _include(self, context: Context, name: str, scope: Any = None) -> str:
        if self._depth >= self._config.max_include_depth:
            raise RenderException(
                f"include: maximum depth {self._config.max_include_depth} exceeded "
                f"rendering '{name}' in {context.name}"
            )
        template_name = self._resolve_include(str(name))
        variables = context.get_all()
        if scope is not None:
            if not isinstance(scope, Mapping):
                raise RenderException(f"include: scope for '{name}' must be a mapping")
            variables = {**variables, **scope}
        self._depth += 1
        try:
            return self._env.get_template(template_name).render(variables).strip("\n")
        finally:
            self._depth -= 1

    @pass_context
    def _tpl(self, context: Context, text: Any, scope: Any = None) -> str:
        variables = context.get_all()
        if isinstance(scope, Mapping):
            variables = {**variables, **scope}
        try:
            return self._env.from_string(_scalar_str(text)).render(variables)
        except jinja2.TemplateSyntaxError as err:
            raise RenderException(f"tpl: invalid template in {context.name}: {err}") from err

    def template_names(self) -> list[str]:
        """Names of the templates that produce output, in sorted order."""
        names = []
        for path in sorted(self._node.chart.templates):
            basename = path.rsplit("/", 1)[-1]
            if basename.startswith("_") or path == NOTES_FILE:
                continue
            names.append(f"{self._prefix}{path}")
        return names

    def render_template(self, name: str) -> str:
        scope = {
            **self._scope,
            "Template": {
                "Name": name,
                "BasePath": f"{self._prefix}{TEMPLATES_DIR}",
            },
        }
        try:
            return self._env.get_template(name).render(scope)
        except RenderException:
            raise
        except jinja2.TemplateSyntaxError as err:
            raise RenderException(
                f"Template {err.name or name} line {err.lineno} has invalid syntax: {err.message}"
            ) from err
        except jinja2.TemplateError as err:
            raise RenderException(f"Error rendering template {name}: {err}") from err
        except RecursionError as err:
            raise RenderException(f"Template {name} recursion limit exceeded") from err

    def render_notes(self) -> str | None:
        name = f"{self._prefix}{NOTES_FILE}"
        if name not in self._sources:
            return None
        return self.render_template(name)


class Renderer:
    """Renders a resolved chart tree into documents and hooks."""

    def __init__(self, config: RenderConfig | None = None) -> None:
        """Initialize Renderer."""
        self._config = config or RenderConfig()

    def render(self, resolution: Resolution, context: ReleaseContext) -> RenderResult:
        """Render all enabled charts, failing the whole render on any error."""
        with trace_context(f"Render {resolution.root.label}"):
            return self._render(resolution, context)

    def _render(self, resolution: Resolution, context: ReleaseContext) -> RenderResult:
        registries: dict[int, FragmentRegistry] = {}
        documents: list[RenderedDocument] = []
        hooks: list[Hook] = []
        notes: str | None = None
        for node in resolution.order:
            registry, sources = self._prepare(node)
            for child in node.children:
                if child.chart.is_library and id(child) in registries:
                    registry.inherit(registries[id(child)])
            registries[id(node)] = registry
            if node.chart.is_library:
                continue
            renderer = _ChartRenderer(node, registry, sources, context, self._config)
            for name in renderer.template_names():
                _LOGGER.debug("Rendering template %s", name)
                text = renderer.render_template(name)
                for doc in split_documents(name, text, context.namespace):
                    if (hook := parse_hook(doc, len(hooks))) is not None:
                        hooks.append(hook)
                    else:
                        documents.append(doc)
            if node is resolution.root:
                notes = renderer.render_notes()

        documents = sort_for_install(documents)
        if self._config.annotate_checksums:
            documents = annotate_checksums(
                documents, documents + [hook.document for hook in hooks]
            )
        _LOGGER.info(
            "Chart %s rendered %d documents and %d hooks",
            resolution.root.chart.ref,
            len(documents),
            len(hooks),
        )
        return RenderResult(
            documents=documents,
            hooks=hooks,
            notes=notes,
            values=resolution.values,
        )

    def _prepare(self, node: ResolvedChart) -> tuple[FragmentRegistry, dict[str, str]]:
        """Collect fragment definitions and the remaining template sources."""
        registry = FragmentRegistry(node.label)
        sources: dict[str, str] = {}
        for path, text in sorted(node.chart.templates.items()):
            name = f"{node.label}/{path}"
            remaining, fragments = extract_fragments(name, text)
            for fragment in fragments:
                registry.define(fragment)
            sources[name] = remaining
        return registry, sources


