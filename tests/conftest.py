"""Test fixtures for release-local."""

import dataclasses
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
import yaml

from release_local.action import ReleaseManager
from release_local.chart import ChartRepository, load_chart, parse_chart_files
from release_local.cluster import InMemoryCluster
from release_local.config import ManagerConfig
from release_local.manifest import Chart
from release_local.store import InMemoryReleaseStore, ReleaseStore

TESTDATA = Path("tests/testdata/charts")


def build_chart(
    name: str,
    version: str = "1.0.0",
    templates: dict[str, str] | None = None,
    values: dict[str, Any] | None = None,
    dependencies: list[dict[str, Any]] | None = None,
    charts: tuple[Chart, ...] = (),
    chart_type: str | None = None,
    app_version: str | None = None,
) -> Chart:
    """Build a chart in memory from template sources."""
    metadata: dict[str, Any] = {"apiVersion": "v2", "name": name, "version": version}
    if chart_type:
        metadata["type"] = chart_type
    if app_version:
        metadata["appVersion"] = app_version
    if dependencies:
        metadata["dependencies"] = dependencies
    files = {"Chart.yaml": yaml.dump(metadata).encode()}
    if values is not None:
        files["values.yaml"] = yaml.dump(values).encode()
    for path, text in (templates or {}).items():
        files[f"templates/{path}"] = text.encode()
    chart = parse_chart_files(files, name)
    if charts:
        chart = dataclasses.replace(chart, charts=charts)
    return chart


@pytest.fixture(name="chart_factory")
def chart_factory_fixture() -> Callable[..., Chart]:
    """Fixture to build charts in memory."""
    return build_chart


@pytest.fixture(name="cluster")
def cluster_fixture() -> InMemoryCluster:
    return InMemoryCluster()


@pytest.fixture(name="store")
def store_fixture() -> ReleaseStore:
    return InMemoryReleaseStore()


@pytest.fixture(name="repository")
async def repository_fixture() -> ChartRepository:
    return await ChartRepository.load_directory(TESTDATA)


@pytest.fixture(name="config")
def config_fixture() -> ManagerConfig:
    return ManagerConfig(retry_backoff=0.0, poll_interval=0.0)


@pytest.fixture(name="manager")
def manager_fixture(
    store: ReleaseStore,
    cluster: InMemoryCluster,
    repository: ChartRepository,
    config: ManagerConfig,
) -> ReleaseManager:
    return ReleaseManager(store, cluster, repository=repository, config=config)


@pytest.fixture(name="webapp_v1")
async def webapp_v1_fixture() -> Chart:
    return await load_chart(TESTDATA / "webapp-1.0.0")


@pytest.fixture(name="webapp_v2")
async def webapp_v2_fixture() -> Chart:
    return await load_chart(TESTDATA / "webapp-1.1.0")
