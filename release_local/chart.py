"""Library for loading chart packages from disk.

A chart package is a directory (or a gzipped tar archive of one) with this
layout:

```
webapp/
  Chart.yaml          # metadata descriptor
  values.yaml         # default values
  templates/          # templates and `_*.tpl` fragment files
  charts/             # nested sub-chart directories or archives
```

Example loading a chart and a local set of charts used to satisfy
dependencies:
```python
from release_local.chart import load_chart, ChartRepository

chart = await load_chart(Path("charts/webapp"))
repository = await ChartRepository.load_directory(Path("charts"))
```
"""

from collections.abc import Iterable
import io
import logging
from pathlib import Path, PurePosixPath
import tarfile
from typing import Any

import aiofiles
from aiofiles.os import listdir
from aiofiles.ospath import exists, isdir
import yaml

from .exceptions import ChartException
from .manifest import Chart, ChartMetadata
from .version import parse_version

__all__ = [
    "load_chart",
    "load_chart_archive",
    "parse_chart_files",
    "ChartRepository",
]

_LOGGER = logging.getLogger(__name__)

CHART_FILE = "Chart.yaml"
VALUES_FILE = "values.yaml"
TEMPLATES_DIR = "templates"
CHARTS_DIR = "charts"
ARCHIVE_SUFFIXES = (".tgz", ".tar.gz")


def _is_archive(name: str) -> bool:
    return name.endswith(ARCHIVE_SUFFIXES)


async def _read_tree(root: Path, prefix: str = "") -> dict[str, bytes]:
    """Read all chart files below root keyed by their posix relative path."""
    files: dict[str, bytes] = {}
    for entry in sorted(await listdir(str(root))):
        path = root / entry
        rel = f"{prefix}{entry}"
        if await isdir(str(path)):
            files.update(await _read_tree(path, f"{rel}/"))
            continue
        async with aiofiles.open(str(path), mode="rb") as chart_file:
            files[rel] = await chart_file.read()
    return files


def _load_yaml(content: bytes, path: str, source: str) -> Any:
    try:
        return yaml.load(content.decode("utf-8"), Loader=yaml.SafeLoader)
    except (yaml.YAMLError, UnicodeDecodeError) as err:
        raise ChartException(f"Chart {source} file {path} is not valid yaml: {err}") from err


def _archive_files(content: bytes, source: str) -> dict[str, bytes]:
    """Extract the files of a chart archive, stripping the top level directory."""
    files: dict[str, bytes] = {}
    try:
        with tarfile.open(fileobj=io.BytesIO(content), mode="r:gz") as archive:
            for member in archive.getmembers():
                if not member.isfile():
                    continue
                parts = PurePosixPath(member.name).parts
                if len(parts) < 2 or ".." in parts:
                    continue
                if (extracted := archive.extractfile(member)) is None:
                    continue
                files["/".join(parts[1:])] = extracted.read()
    except (tarfile.TarError, OSError) as err:
        raise ChartException(f"Unable to read chart archive {source}: {err}") from err
    return files


def parse_chart_files(files: dict[str, bytes], source: str) -> Chart:
    """Build a chart from its files keyed by path relative to the chart root."""
    if CHART_FILE not in files:
        raise ChartException(f"Chart {source} is missing {CHART_FILE}")
    metadata = ChartMetadata.parse_doc(_load_yaml(files[CHART_FILE], CHART_FILE, source))

    values: dict[str, Any] = {}
    if VALUES_FILE in files:
        loaded = _load_yaml(files[VALUES_FILE], VALUES_FILE, source)
        if loaded is not None and not isinstance(loaded, dict):
            raise ChartException(f"Chart {source} {VALUES_FILE} must be a mapping")
        values = loaded or {}

    templates: dict[str, str] = {}
    sub_files: dict[str, dict[str, bytes]] = {}
    sub_archives: dict[str, bytes] = {}
    for path, content in files.items():
        parts = path.split("/")
        if parts[0] == TEMPLATES_DIR and len(parts) > 1:
            try:
                templates[path] = content.decode("utf-8")
            except UnicodeDecodeError as err:
                raise ChartException(f"Chart {source} template {path} is not utf-8") from err
        elif parts[0] == CHARTS_DIR and len(parts) > 2:
            sub_files.setdefault(parts[1], {})["/".join(parts[2:])] = content
        elif parts[0] == CHARTS_DIR and len(parts) == 2 and _is_archive(parts[1]):
            sub_archives[parts[1]] = content

    charts: list[Chart] = []
    for name in sorted(sub_files):
        charts.append(parse_chart_files(sub_files[name], f"{source}/{CHARTS_DIR}/{name}"))
    for name in sorted(sub_archives):
        sub_source = f"{source}/{CHARTS_DIR}/{name}"
        charts.append(parse_chart_files(_archive_files(sub_archives[name], sub_source), sub_source))

    _LOGGER.debug(
        "Loaded chart %s@%s from %s (%d templates, %d sub-charts)",
        metadata.name,
        metadata.version,
        source,
        len(templates),
        len(charts),
    )
    return Chart(
        metadata=metadata,
        values=values,
        templates=dict(sorted(templates.items())),
        charts=tuple(charts),
    )


async def load_chart(path: Path) -> Chart:
    """Load a chart from a directory or a chart archive."""
    if not await exists(str(path)):
        raise ChartException(f"Chart path does not exist: {path}")
    if not await isdir(str(path)):
        return await load_chart_archive(path)
    return parse_chart_files(await _read_tree(path), str(path))


async def load_chart_archive(path: Path) -> Chart:
    """Load a chart from a gzipped tar archive."""
    async with aiofiles.open(str(path), mode="rb") as archive_file:
        content = await archive_file.read()
    return parse_chart_files(_archive_files(content, str(path)), str(path))


class ChartRepository:
    """A local set of charts available to satisfy dependencies."""

    def __init__(self, charts: Iterable[Chart] = ()) -> None:
        """Initialize ChartRepository."""
        self._charts: dict[str, dict[str, Chart]] = {}
        for chart in charts:
            self.add(chart)

    def add(self, chart: Chart) -> None:
        """Add a chart, replacing any chart with the same name and version."""
        self._charts.setdefault(chart.name, {})[chart.version] = chart

    def versions(self, name: str) -> list[Chart]:
        """Return the charts with the given name, lowest version first."""
        charts = list(self._charts.get(name, {}).values())
        return sorted(charts, key=lambda chart: parse_version(chart.version))

    def get(self, name: str, version: str) -> Chart | None:
        return self._charts.get(name, {}).get(version)

    def __contains__(self, name: object) -> bool:
        return name in self._charts

    def __len__(self) -> int:
        return sum(len(versions) for versions in self._charts.values())

    @classmethod
    async def load_directory(cls, path: Path) -> "ChartRepository":
        """Load every chart directory or archive directly below path."""
        repository = cls()
        for entry in sorted(await listdir(str(path))):
            chart_path = path / entry
            if await isdir(str(chart_path)):
                if not await exists(str(chart_path / CHART_FILE)):
                    _LOGGER.debug("Skipping %s, not a chart directory", chart_path)
                    continue
            elif not _is_archive(entry):
                continue
            repository.add(await load_chart(chart_path))
        _LOGGER.info("Loaded %d charts from %s", len(repository), path)
        return repository
