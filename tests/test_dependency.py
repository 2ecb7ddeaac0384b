"""Tests for dependency resolution."""

from collections.abc import Callable
from pathlib import Path

import pytest

from release_local.chart import ChartRepository, load_chart
from release_local.dependency import (
    DependencyStatus,
    list_dependencies,
    resolve_dependencies,
)
from release_local.exceptions import (
    DependencyCycleError,
    UnsatisfiableConstraintError,
)
from release_local.manifest import Chart

TESTDATA = Path("tests/testdata/charts")


def test_dependencies_render_first(chart_factory: Callable[..., Chart]) -> None:
    """Test that every chart is ordered after the charts it depends on."""
    app = chart_factory(
        "app",
        dependencies=[
            {"name": "db", "version": "^1.0.0"},
            {"name": "cache", "version": "^1.0.0"},
        ],
    )
    repository = ChartRepository([chart_factory("db"), chart_factory("cache")])
    resolution = resolve_dependencies(app, repository=repository)
    assert [node.label for node in resolution.order] == ["app/db", "app/cache", "app"]
    assert [str(edge.child) for edge in resolution.edges] == ["db@1.0.0", "cache@1.0.0"]
    assert resolution.root.name == "app"


def test_nested_dependencies(chart_factory: Callable[..., Chart]) -> None:
    app = chart_factory(
        "app",
        dependencies=[{"name": "web"}, {"name": "db"}],
    )
    repository = ChartRepository(
        [
            chart_factory("web", dependencies=[{"name": "lib"}]),
            chart_factory("lib", chart_type="library"),
            chart_factory("db"),
        ]
    )
    resolution = resolve_dependencies(app, repository=repository)
    assert [node.label for node in resolution.order] == [
        "app/web/lib",
        "app/web",
        "app/db",
        "app",
    ]
    assert [node.label for node in resolution.root.walk()] == [
        "app",
        "app/web",
        "app/web/lib",
        "app/db",
    ]


def test_resolution_is_deterministic(chart_factory: Callable[..., Chart]) -> None:
    """Test that identical inputs always produce the identical order."""
    app = chart_factory(
        "app",
        dependencies=[{"name": name} for name in ("e", "d", "c", "b", "a")],
    )
    repository = ChartRepository([chart_factory(name) for name in "abcde"])
    orders = [
        [node.label for node in resolve_dependencies(app, repository=repository).order]
        for _ in range(5)
    ]
    assert orders[0] == ["app/e", "app/d", "app/c", "app/b", "app/a", "app"]
    assert all(order == orders[0] for order in orders)


def test_cycle_detected(chart_factory: Callable[..., Chart]) -> None:
    """Test that a cycle reports the full cycle path."""
    repository = ChartRepository(
        [
            chart_factory("a", dependencies=[{"name": "b"}]),
            chart_factory("b", dependencies=[{"name": "a"}]),
        ]
    )
    root = repository.get("a", "1.0.0")
    assert root is not None
    with pytest.raises(DependencyCycleError) as exc_info:
        resolve_dependencies(root, repository=repository)
    assert exc_info.value.cycle == ["a@1.0.0", "b@1.0.0", "a@1.0.0"]
    assert "a@1.0.0 -> b@1.0.0 -> a@1.0.0" in str(exc_info.value)


def test_longer_cycle_detected(chart_factory: Callable[..., Chart]) -> None:
    repository = ChartRepository(
        [
            chart_factory("a", dependencies=[{"name": "b"}]),
            chart_factory("b", dependencies=[{"name": "c"}]),
            chart_factory("c", dependencies=[{"name": "a"}]),
        ]
    )
    root = repository.get("a", "1.0.0")
    assert root is not None
    with pytest.raises(DependencyCycleError) as exc_info:
        resolve_dependencies(root, repository=repository)
    assert exc_info.value.cycle == ["a@1.0.0", "b@1.0.0", "c@1.0.0", "a@1.0.0"]


def test_unsatisfiable_constraint(chart_factory: Callable[..., Chart]) -> None:
    """Test that the error names the constraint and the available versions."""
    app = chart_factory("app", dependencies=[{"name": "db", "version": "^2.0.0"}])
    repository = ChartRepository([chart_factory("db", version="1.9.0")])
    with pytest.raises(UnsatisfiableConstraintError) as exc_info:
        resolve_dependencies(app, repository=repository)
    err = exc_info.value
    assert err.parent == "app@1.0.0"
    assert err.child == "db"
    assert err.constraint == "^2.0.0"
    assert err.available == ["1.9.0"]


def test_missing_dependency(chart_factory: Callable[..., Chart]) -> None:
    app = chart_factory("app", dependencies=[{"name": "db"}])
    with pytest.raises(UnsatisfiableConstraintError, match="none"):
        resolve_dependencies(app)


def test_highest_matching_version_selected(chart_factory: Callable[..., Chart]) -> None:
    app = chart_factory("app", dependencies=[{"name": "db", "version": "~1.2.0"}])
    repository = ChartRepository(
        [chart_factory("db", version=version) for version in ("1.1.0", "1.2.3", "1.2.9", "1.3.0")]
    )
    resolution = resolve_dependencies(app, repository=repository)
    assert str(resolution.order[0].chart) == "db@1.2.9"


def test_bundled_chart_preferred(chart_factory: Callable[..., Chart]) -> None:
    """Test that a bundled sub-chart wins over the repository for the same version."""
    bundled = chart_factory("db", values={"source": "bundled"})
    app = chart_factory("app", dependencies=[{"name": "db"}], charts=(bundled,))
    repository = ChartRepository([chart_factory("db", values={"source": "repository"})])
    resolution = resolve_dependencies(app, repository=repository)
    assert resolution.values["db"] == {"source": "bundled"}


@pytest.mark.parametrize(
    ("values", "expected"),
    [
        (None, ["app"]),
        ({"db": {"enabled": True}}, ["app/db", "app"]),
        ({"db": {"enabled": None}}, ["app/db", "app"]),
    ],
)
def test_condition(
    chart_factory: Callable[..., Chart],
    values: dict | None,
    expected: list[str],
) -> None:
    """Test enabling a dependency with a condition value."""
    app = chart_factory(
        "app",
        values={"db": {"enabled": False}},
        dependencies=[{"name": "db", "condition": "db.enabled"}],
    )
    repository = ChartRepository([chart_factory("db")])
    resolution = resolve_dependencies(app, values, repository=repository)
    assert [node.label for node in resolution.order] == expected


@pytest.mark.parametrize(
    ("values", "expected"),
    [
        ({"tags": {"storage": False}}, ["app"]),
        ({"tags": {"storage": True}}, ["app/db", "app"]),
        ({}, ["app/db", "app"]),
        ({"tags": {"storage": False}, "db": {"enabled": True}}, ["app/db", "app"]),
    ],
)
def test_tags(
    chart_factory: Callable[..., Chart],
    values: dict,
    expected: list[str],
) -> None:
    """Test that tags apply when no condition resolves to a bool."""
    app = chart_factory(
        "app",
        dependencies=[{"name": "db", "condition": "db.enabled", "tags": ["storage"]}],
    )
    repository = ChartRepository([chart_factory("db")])
    resolution = resolve_dependencies(app, values, repository=repository)
    assert [node.label for node in resolution.order] == expected


def test_alias_and_scoped_values(chart_factory: Callable[..., Chart]) -> None:
    """Test that a sub-chart sees its section of the parent values and globals."""
    app = chart_factory(
        "app",
        values={"global": {"domain": "example.com"}, "db": {"port": 5433}},
        dependencies=[{"name": "postgresql", "alias": "db"}],
    )
    repository = ChartRepository(
        [chart_factory("postgresql", values={"port": 5432, "user": "app"})]
    )
    resolution = resolve_dependencies(
        app, {"db": {"user": "admin"}}, repository=repository
    )
    child = resolution.order[0]
    assert child.label == "app/db"
    assert child.name == "db"
    assert child.parent is resolution.root
    assert child.values == {
        "port": 5433,
        "user": "admin",
        "global": {"domain": "example.com"},
    }
    assert resolution.values["db"] == {"port": 5433, "user": "admin"}


def test_user_null_removes_subchart_default(chart_factory: Callable[..., Chart]) -> None:
    app = chart_factory("app", dependencies=[{"name": "db"}])
    repository = ChartRepository([chart_factory("db", values={"port": 5432, "user": "app"})])
    resolution = resolve_dependencies(app, {"db": {"user": None}}, repository=repository)
    assert resolution.order[0].values == {"port": 5432, "user": None}


async def test_resolve_testdata(repository: ChartRepository) -> None:
    """Test resolving a chart with a library and a bundled conditional chart."""
    chart = await load_chart(TESTDATA / "frontend-2.0.0")
    resolution = resolve_dependencies(chart, repository=repository)
    assert [node.label for node in resolution.order] == [
        "frontend/common",
        "frontend/redis",
        "frontend",
    ]
    redis = resolution.order[1]
    assert str(redis.chart) == "redis@7.0.4"
    assert redis.values == {
        "enabled": True,
        "port": 6380,
        "global": {"environment": "staging"},
    }

    resolution = resolve_dependencies(
        chart, {"redis": {"enabled": False}}, repository=repository
    )
    assert [node.label for node in resolution.order] == ["frontend/common", "frontend"]


async def test_list_dependencies(repository: ChartRepository) -> None:
    chart = await load_chart(TESTDATA / "frontend-2.0.0")
    assert list_dependencies(chart, repository=repository) == [
        DependencyStatus(
            name="common",
            constraint="^0.1.0",
            repository="file://../common-0.1.0",
            status=DependencyStatus.OK,
            version="0.1.0",
        ),
        DependencyStatus(
            name="redis",
            constraint="~7.0.0",
            repository=None,
            status=DependencyStatus.OK,
            version="7.0.4",
        ),
    ]
    statuses = list_dependencies(chart, {"redis": {"enabled": False}})
    assert [(status.name, status.status) for status in statuses] == [
        ("common", DependencyStatus.MISSING),
        ("redis", DependencyStatus.DISABLED),
    ]
