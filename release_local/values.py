"""Module for merging chart values from multiple sources.

Values are merged in order of increasing precedence:

  chart defaults -> parent chart overrides -> value files -> inline values -> --set overrides

Later sources win key by key. Nested mappings are merged recursively while
scalars and lists are replaced wholesale, and a mapping on one side and a
scalar on the other is not an error: the later value replaces the earlier one.
A `null` in a later source replaces the key with `null`, which templates
treat as an undefined value. This is how a user deletes a default provided by
a chart, including a default of a sub-chart whose values are merged later.

The `global` key is shared by a chart and all of its sub-charts, see
`scope_values`.
"""

from collections.abc import Iterable
import copy
from dataclasses import dataclass, field
import logging
from pathlib import Path
import re
from typing import Any, TypeAlias, Union

import aiofiles
import yaml

from .exceptions import InputException

__all__ = [
    "Value",
    "ValueTree",
    "ValueSources",
    "GLOBAL_KEY",
    "merge_values",
    "scope_values",
    "parse_set_values",
    "load_values_file",
    "lookup",
    "MISSING",
]

_LOGGER = logging.getLogger(__name__)

Value: TypeAlias = Union[
    None, bool, int, float, str, list["Value"], dict[str, "Value"]
]
ValueTree: TypeAlias = dict[str, Any]

GLOBAL_KEY = "global"


class _Missing:
    """Sentinel for a value path that does not resolve."""

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING = _Missing()


def _deep_merge(base: ValueTree, override: ValueTree) -> ValueTree:
    """Recursively merge two dictionaries, similar to how Helm merges values.

    Lists are replaced entirely and a None value masks the key.
    """
    result = base.copy()
    for key, override_value in override.items():
        base_value = result.get(key)
        if isinstance(base_value, dict) and isinstance(override_value, dict):
            result[key] = _deep_merge(base_value, override_value)
        else:
            result[key] = override_value
    return result


def merge_values(*sources: ValueTree | None) -> ValueTree:
    """Merge value trees in order, the last source has the highest precedence.

    The inputs are never modified and the result shares no mutable state with
    them.
    """
    values: ValueTree = {}
    for source in sources:
        if not source:
            continue
        if not isinstance(source, dict):
            raise InputException(f"Expected values to be a mapping, found {type(source)}")
        values = _deep_merge(values, source)
    return copy.deepcopy(values)


def scope_values(parent: ValueTree, key: str, defaults: ValueTree) -> ValueTree:
    """Return the merged values of a sub-chart.

    The sub-chart sees its own defaults overridden by the parent's section
    under `key`. The parent's `global` values are merged on top of the
    sub-chart's `global` values so they are visible unmodified.
    """
    section = parent.get(key)
    if section is not None and not isinstance(section, dict):
        _LOGGER.warning(
            "Ignoring non-mapping values for sub-chart %s: %s", key, type(section)
        )
        section = None
    values = merge_values(defaults, section)
    parent_global = parent.get(GLOBAL_KEY)
    if isinstance(parent_global, dict):
        child_global = values.get(GLOBAL_KEY)
        values[GLOBAL_KEY] = merge_values(
            child_global if isinstance(child_global, dict) else None, parent_global
        )
    return values


def lookup(values: ValueTree, path: str) -> Any:
    """Return the value at a dotted path or MISSING when it does not resolve."""
    current: Any = values
    for part in _split_path(path):
        if not isinstance(current, dict) or part not in current:
            return MISSING
        current = current[part]
    return current


def _split_path(path: str) -> list[str]:
    """Split a dotted path, a backslash escapes a literal dot."""
    raw_parts = re.split(r"(?<!\\)\.", path.strip().lstrip("."))
    return [re.sub(r"\\(.)", r"\1", raw_part) for raw_part in raw_parts]


_INDEX_RE = re.compile(r"^(?P<key>.*?)\[(?P<index>\d+)\]$")


def _typed_value(raw: str) -> Any:
    """Convert a --set value into a scalar, following YAML scalar rules."""
    if raw.startswith("{") and raw.endswith("}"):
        inner = raw[1:-1]
        return [_typed_value(item.strip()) for item in inner.split(",")] if inner else []
    if raw == "":
        return ""
    try:
        value = yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw
    if isinstance(value, (dict, list)):
        return raw
    return value


def _set_path(values: ValueTree, path: str, value: Any) -> None:
    parts = _split_path(path)
    current: Any = values
    for i, part in enumerate(parts):
        last = i == len(parts) - 1
        index: int | None = None
        if match := _INDEX_RE.match(part):
            part = match.group("key")
            index = int(match.group("index"))
        if not part:
            raise InputException(f"Invalid --set path '{path}'")
        if index is None:
            if last:
                current[part] = value
                return
            if not isinstance(current.get(part), dict):
                current[part] = {}
            current = current[part]
            continue
        items = current.get(part)
        if not isinstance(items, list):
            items = []
            current[part] = items
        while len(items) <= index:
            items.append(None)
        if last:
            items[index] = value
            return
        if not isinstance(items[index], dict):
            items[index] = {}
        current = items[index]


def _split_assignments(item: str) -> list[str]:
    """Split `a=1,b=2` on commas that are not inside a `{...}` list."""
    result: list[str] = []
    depth = 0
    start = 0
    for i, char in enumerate(item):
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
        elif char == "," and depth == 0 and (i == 0 or item[i - 1] != "\\"):
            result.append(item[start:i])
            start = i + 1
    result.append(item[start:])
    return [part.replace("\\,", ",") for part in result if part]


def parse_set_values(items: Iterable[str]) -> ValueTree:
    """Convert `--set` style `path=value` overrides into a value tree.

    Supported forms are `a.b=1`, `a\\.b=1` for a literal dot, `list={x,y}`,
    `a[0].name=x` for list indices, and `a=null` to remove a default.
    """
    values: ValueTree = {}
    for item in items:
        for assignment in _split_assignments(item):
            path, sep, raw = assignment.partition("=")
            if not sep or not path.strip():
                raise InputException(f"Invalid --set value '{assignment}', expected path=value")
            _set_path(values, path.strip(), _typed_value(raw))
    _LOGGER.debug("parse_set_values=%s", values)
    return values


async def load_values_file(path: Path) -> ValueTree:
    """Read a YAML values file, an empty file has no values."""
    try:
        async with aiofiles.open(str(path)) as values_file:
            content = await values_file.read()
    except OSError as err:
        raise InputException(f"Unable to read values file {path}: {err}") from err
    try:
        obj = yaml.load(content, Loader=yaml.SafeLoader)
    except yaml.YAMLError as err:
        raise InputException(f"Values file {path} is not valid yaml: {err}") from err
    if obj is None:
        return {}
    if not isinstance(obj, dict):
        raise InputException(
            f"Expected values file {path} to contain a mapping, found {type(obj)}"
        )
    return obj


@dataclass
class ValueSources:
    """User supplied values for an operation, in order of increasing precedence."""

    files: list[Path] = field(default_factory=list)
    """Value files, applied in the given order."""

    values: list[ValueTree] = field(default_factory=list)
    """Inline value trees, applied after the files."""

    set_values: list[str] = field(default_factory=list)
    """Individual `path=value` overrides with the highest precedence."""

    def __bool__(self) -> bool:
        return bool(self.files or self.values or self.set_values)

    async def resolve(self) -> ValueTree:
        """Merge all sources into the user supplied value tree."""
        trees: list[ValueTree] = []
        for path in self.files:
            _LOGGER.debug("Loading values file %s", path)
            trees.append(await load_values_file(path))
        trees.extend(self.values)
        if self.set_values:
            trees.append(parse_set_values(self.set_values))
        return merge_values(*trees)
