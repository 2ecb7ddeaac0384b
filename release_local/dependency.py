"""Resolve the dependency graph of a chart into a rendering order.

Resolution happens in two passes:

1. The dependency tree is expanded top-down from the root chart. For every
   declared dependency the enable condition and tags are evaluated against the
   parent's merged values, a chart version satisfying the constraint is
   selected from the bundled sub-charts and the local chart repository, and the
   sub-chart's values are merged from its defaults, the parent's overrides and
   the global values.
2. The charts are ordered with a topological sort so that every chart comes
   after the charts it depends on. Independent charts keep their declaration
   order, so identical inputs always produce the same order. A cycle is a
   fatal error reporting the full cycle path.
"""

from collections import defaultdict
from dataclasses import dataclass, field
import heapq
import logging
from typing import Any

from .chart import ChartRepository
from .exceptions import DependencyCycleError, UnsatisfiableConstraintError
from .manifest import Chart, ChartDependency, ChartRef
from .values import MISSING, ValueTree, lookup, merge_values, scope_values
from .version import Constraint

__all__ = [
    "DependencyEdge",
    "ResolvedChart",
    "Resolution",
    "DependencyStatus",
    "resolve_dependencies",
    "list_dependencies",
]

_LOGGER = logging.getLogger(__name__)

TAGS_KEY = "tags"


@dataclass(frozen=True)
class DependencyEdge:
    """A dependency from a parent chart to a selected child chart."""

    parent: ChartRef
    child: ChartRef
    constraint: str
    condition: str | None = None


@dataclass
class ResolvedChart:
    """A chart instance in the dependency tree with its resolved values."""

    chart: Chart
    """The selected chart."""

    path: tuple[str, ...]
    """Names (or aliases) from the root chart down to this chart."""

    values: ValueTree
    """The merged values visible to this chart's templates."""

    parent: "ResolvedChart | None" = field(default=None, repr=False)
    children: list["ResolvedChart"] = field(default_factory=list, repr=False)

    @property
    def name(self) -> str:
        """Name the chart is rendered as, the alias when one is declared."""
        return self.path[-1]

    @property
    def label(self) -> str:
        """Path of the chart in the tree, e.g. `webapp/postgresql`."""
        return "/".join(self.path)

    def walk(self) -> list["ResolvedChart"]:
        """Return this chart and all descendants in declaration pre-order."""
        result = [self]
        for child in self.children:
            result.extend(child.walk())
        return result


@dataclass
class Resolution:
    """The result of resolving a chart's dependencies."""

    root: ResolvedChart
    """The root chart of the tree."""

    order: list[ResolvedChart]
    """All enabled charts, each after the charts it depends on."""

    edges: list[DependencyEdge]
    """The edges of the dependency graph in discovery order."""

    @property
    def values(self) -> ValueTree:
        """The fully resolved values of the root chart."""
        return self.root.values


def _is_enabled(dep: ChartDependency, values: ValueTree, parent: str) -> bool:
    """Evaluate the condition, then the tags, of a dependency."""
    if dep.condition:
        for path in dep.condition.split(","):
            path = path.strip()
            if not path:
                continue
            found = lookup(values, path)
            if isinstance(found, bool):
                _LOGGER.debug(
                    "Chart %s dependency %s condition %s=%s", parent, dep.name, path, found
                )
                return found
            if found is not MISSING and found is not None:
                _LOGGER.warning(
                    "Chart %s dependency %s condition %s is not a bool, ignoring",
                    parent,
                    dep.name,
                    path,
                )
    if dep.tags:
        tags = values.get(TAGS_KEY)
        if isinstance(tags, dict):
            settings = [tags[tag] for tag in dep.tags if isinstance(tags.get(tag), bool)]
            if settings:
                return any(settings)
    return True


def _candidates(
    dep: ChartDependency, chart: Chart, repository: ChartRepository | None
) -> list[Chart]:
    found: dict[str, Chart] = {}
    if repository is not None:
        for candidate in repository.versions(dep.name):
            found[candidate.version] = candidate
    # Bundled sub-charts take precedence over the repository for the same version
    for candidate in chart.charts:
        if candidate.name == dep.name:
            found[candidate.version] = candidate
    return list(found.values())


def _select(
    dep: ChartDependency, chart: Chart, repository: ChartRepository | None
) -> Chart:
    candidates = _candidates(dep, chart, repository)
    constraint = Constraint.parse(dep.version)
    versions = [candidate.version for candidate in candidates]
    if (best := constraint.best_match(versions)) is None:
        raise UnsatisfiableConstraintError(
            parent=str(chart.ref),
            child=dep.name,
            constraint=str(constraint),
            available=versions,
        )
    return next(candidate for candidate in candidates if candidate.version == best)


class _Graph:
    """Chart identities and the edges between them in discovery order."""

    def __init__(self) -> None:
        self.index: dict[ChartRef, int] = {}
        self.edges: list[DependencyEdge] = []
        self.children: dict[ChartRef, list[ChartRef]] = defaultdict(list)

    def add_node(self, ref: ChartRef) -> None:
        if ref not in self.index:
            self.index[ref] = len(self.index)

    def add_edge(self, edge: DependencyEdge) -> None:
        self.add_node(edge.parent)
        self.add_node(edge.child)
        self.edges.append(edge)
        if edge.child not in self.children[edge.parent]:
            self.children[edge.parent].append(edge.child)

    def topological_order(self) -> list[ChartRef]:
        """Order charts after their dependencies using Kahn's algorithm."""
        pending: dict[ChartRef, int] = {
            ref: len(self.children[ref]) for ref in self.index
        }
        dependents: dict[ChartRef, list[ChartRef]] = defaultdict(list)
        for parent, children in self.children.items():
            for child in children:
                dependents[child].append(parent)
        ready = [(self.index[ref], ref) for ref, count in pending.items() if count == 0]
        heapq.heapify(ready)
        order: list[ChartRef] = []
        while ready:
            _, ref = heapq.heappop(ready)
            order.append(ref)
            for parent in dependents[ref]:
                pending[parent] -= 1
                if pending[parent] == 0:
                    heapq.heappush(ready, (self.index[parent], parent))
        if len(order) != len(self.index):
            remaining = {ref for ref, count in pending.items() if count > 0}
            raise DependencyCycleError(self._find_cycle(remaining))
        return order

    def _find_cycle(self, remaining: set[ChartRef]) -> list[str]:
        """Return the path of a cycle among charts left over by the sort."""
        start = min(remaining, key=lambda ref: self.index[ref])
        stack: list[ChartRef] = []
        on_stack: set[ChartRef] = set()
        visited: set[ChartRef] = set()

        def visit(ref: ChartRef) -> list[ChartRef] | None:
            stack.append(ref)
            on_stack.add(ref)
            visited.add(ref)
            for child in self.children[ref]:
                if child not in remaining:
                    continue
                if child in on_stack:
                    return stack[stack.index(child) :] + [child]
                if child not in visited and (cycle := visit(child)):
                    return cycle
            stack.pop()
            on_stack.discard(ref)
            return None

        for ref in [start] + sorted(remaining, key=lambda ref: self.index[ref]):
            if ref not in visited and (cycle := visit(ref)):
                return [str(item) for item in cycle]
        return [str(ref) for ref in sorted(remaining, key=lambda ref: self.index[ref])]


def _expand(
    node: ResolvedChart,
    repository: ChartRepository | None,
    graph: _Graph,
    ancestors: tuple[ChartRef, ...],
) -> None:
    chart = node.chart
    for dep in chart.metadata.dependencies:
        if not _is_enabled(dep, node.values, node.label):
            _LOGGER.debug("Chart %s dependency %s is disabled", node.label, dep.value_key)
            continue
        child = _select(dep, chart, repository)
        graph.add_edge(
            DependencyEdge(
                parent=chart.ref,
                child=child.ref,
                constraint=dep.version or "*",
                condition=dep.condition,
            )
        )
        if child.ref in ancestors:
            # The cycle is reported by the topological sort
            continue
        key = dep.value_key
        child_node = ResolvedChart(
            chart=child,
            path=node.path + (key,),
            values=scope_values(node.values, key, child.values),
            parent=node,
        )
        _expand(child_node, repository, graph, ancestors + (child.ref,))
        node.children.append(child_node)
        # The parent sees the sub-chart's merged values under its key
        node.values[key] = {
            k: v for k, v in child_node.values.items() if k != "global"
        }


def resolve_dependencies(
    chart: Chart,
    values: ValueTree | None = None,
    repository: ChartRepository | None = None,
) -> Resolution:
    """Resolve the dependency tree of a chart merged with user supplied values.

    Raises `UnsatisfiableConstraintError` when a constraint cannot be met and
    `DependencyCycleError` when the graph is not acyclic.
    """
    root = ResolvedChart(
        chart=chart,
        path=(chart.name,),
        values=merge_values(chart.values, values),
    )
    graph = _Graph()
    graph.add_node(chart.ref)
    _expand(root, repository, graph, (chart.ref,))
    ref_order = graph.topological_order()
    position = {ref: i for i, ref in enumerate(ref_order)}
    nodes = root.walk()
    preorder = {id(node): i for i, node in enumerate(nodes)}
    # Deeper instances first so a chart included twice still precedes its parents
    order = sorted(
        nodes,
        key=lambda node: (position[node.chart.ref], -len(node.path), preorder[id(node)]),
    )
    _LOGGER.debug(
        "Resolved chart %s rendering order: %s",
        chart.ref,
        [node.label for node in order],
    )
    return Resolution(root=root, order=order, edges=graph.edges)


@dataclass(frozen=True)
class DependencyStatus:
    """Status of a declared dependency, similar to `helm dependency list`."""

    name: str
    constraint: str
    repository: str | None
    status: str
    version: str | None = None

    OK = "ok"
    MISSING = "missing"
    UNSATISFIED = "unsatisfied"
    DISABLED = "disabled"


def list_dependencies(
    chart: Chart,
    values: ValueTree | None = None,
    repository: ChartRepository | None = None,
) -> list[DependencyStatus]:
    """Report the status of each dependency declared by the chart."""
    merged: dict[str, Any] = merge_values(chart.values, values)
    result: list[DependencyStatus] = []
    for dep in chart.metadata.dependencies:
        constraint = dep.version or "*"
        candidates = _candidates(dep, chart, repository)
        version: str | None = None
        if not _is_enabled(dep, merged, chart.name):
            status = DependencyStatus.DISABLED
        elif not candidates:
            status = DependencyStatus.MISSING
        elif (
            version := Constraint.parse(dep.version).best_match(
                [candidate.version for candidate in candidates]
            )
        ) is None:
            status = DependencyStatus.UNSATISFIED
        else:
            status = DependencyStatus.OK
        result.append(
            DependencyStatus(
                name=dep.value_key,
                constraint=constraint,
                repository=dep.repository,
                status=status,
                version=version,
            )
        )
    return result
