"""Tests for the values module."""

from pathlib import Path
from typing import Any

import pytest

from release_local.exceptions import InputException
from release_local.values import (
    MISSING,
    ValueSources,
    load_values_file,
    lookup,
    merge_values,
    parse_set_values,
    scope_values,
)


def test_later_source_wins_at_any_depth() -> None:
    """Test that the last source wins over earlier sources for nested keys."""
    a = {"image": {"repository": "nginx", "tag": "1.0", "pull": {"policy": "Always"}}}
    b = {"image": {"tag": "2.0", "pull": {"policy": "IfNotPresent"}}}
    c = {"image": {"pull": {"policy": "Never"}}, "replicaCount": 3}
    assert merge_values(a, b, c) == {
        "image": {"repository": "nginx", "tag": "2.0", "pull": {"policy": "Never"}},
        "replicaCount": 3,
    }


def test_lists_are_replaced() -> None:
    """Test that lists are replaced and never concatenated."""
    assert merge_values({"hosts": ["a", "b"]}, {"hosts": ["c"]}) == {"hosts": ["c"]}


@pytest.mark.parametrize(
    ("base", "override", "expected"),
    [
        ({"a": {"b": 1}}, {"a": 3}, {"a": 3}),
        ({"a": 3}, {"a": {"b": 1}}, {"a": {"b": 1}}),
        ({"a": [1]}, {"a": {"b": 1}}, {"a": {"b": 1}}),
        ({"a": {"b": 1}}, {"a": "text"}, {"a": "text"}),
    ],
)
def test_type_mismatch_last_writer_wins(
    base: dict[str, Any], override: dict[str, Any], expected: dict[str, Any]
) -> None:
    """Test that mismatched types are not an error."""
    assert merge_values(base, override) == expected


def test_merge_does_not_modify_inputs() -> None:
    """Test that merged inputs are left untouched and not shared."""
    base = {"a": {"b": 1}, "list": [1, 2]}
    override = {"a": {"c": 2}}
    result = merge_values(base, override)
    result["a"]["b"] = 100
    result["list"].append(3)
    assert base == {"a": {"b": 1}, "list": [1, 2]}
    assert override == {"a": {"c": 2}}


def test_null_masks_default() -> None:
    """Test that a null override replaces the default."""
    assert merge_values({"a": 1, "b": {"c": 2}}, {"b": {"c": None}}) == {
        "a": 1,
        "b": {"c": None},
    }


def test_merge_rejects_non_mapping() -> None:
    with pytest.raises(InputException, match="Expected values to be a mapping"):
        merge_values({"a": 1}, ["a"])  # type: ignore[arg-type]


def test_scope_values() -> None:
    """Test the values visible to a sub-chart."""
    parent = {
        "global": {"domain": "example.com"},
        "db": {"port": 5433},
        "other": True,
    }
    defaults = {
        "port": 5432,
        "user": "app",
        "global": {"domain": "localhost", "timezone": "UTC"},
    }
    assert scope_values(parent, "db", defaults) == {
        "port": 5433,
        "user": "app",
        "global": {"domain": "example.com", "timezone": "UTC"},
    }


def test_scope_values_without_section() -> None:
    """Test a sub-chart with no parent overrides and no globals."""
    assert scope_values({"other": 1}, "db", {"port": 5432}) == {"port": 5432}


def test_lookup() -> None:
    values = {"a": {"b": {"c": 1}, "d.e": 2}, "flag": False}
    assert lookup(values, "a.b.c") == 1
    assert lookup(values, ".a.b.c") == 1
    assert lookup(values, "a.d\\.e") == 2
    assert lookup(values, "flag") is False
    assert lookup(values, "a.missing") is MISSING
    assert lookup(values, "a.b.c.d") is MISSING


@pytest.mark.parametrize(
    ("items", "expected"),
    [
        (["a.b=1"], {"a": {"b": 1}}),
        (["enabled=true"], {"enabled": True}),
        (["name=web"], {"name": "web"}),
        (["version=\"1.0\""], {"version": "1.0"}),
        (["hosts={a.example.com,b.example.com}"], {"hosts": ["a.example.com", "b.example.com"]}),
        (["empty={}"], {"empty": []}),
        (["a[1]=x"], {"a": [None, "x"]}),
        (["servers[0].port=80"], {"servers": [{"port": 80}]}),
        (["a\\.b=1"], {"a.b": 1}),
        (["x=1,y=two"], {"x": 1, "y": "two"}),
        (["n=null"], {"n": None}),
        (["e="], {"e": ""}),
        (["a.b=1", "a.c=2", "a.b=3"], {"a": {"b": 3, "c": 2}}),
    ],
)
def test_parse_set_values(items: list[str], expected: dict[str, Any]) -> None:
    """Test parsing of --set style overrides."""
    assert parse_set_values(items) == expected


@pytest.mark.parametrize("item", ["novalue", "=1", "a.[0]=1"])
def test_parse_set_values_invalid(item: str) -> None:
    with pytest.raises(InputException):
        parse_set_values([item])


async def test_load_values_file(tmp_path: Path) -> None:
    """Test reading a values file."""
    path = tmp_path / "values.yaml"
    path.write_text("replicaCount: 2\nimage:\n  tag: '1.0'\n")
    assert await load_values_file(path) == {"replicaCount": 2, "image": {"tag": "1.0"}}


async def test_load_empty_values_file(tmp_path: Path) -> None:
    path = tmp_path / "values.yaml"
    path.write_text("# nothing here\n")
    assert await load_values_file(path) == {}


async def test_load_invalid_values_file(tmp_path: Path) -> None:
    """Test that a values file must contain a mapping."""
    path = tmp_path / "values.yaml"
    path.write_text("- a\n- b\n")
    with pytest.raises(InputException, match="to contain a mapping"):
        await load_values_file(path)
    with pytest.raises(InputException, match="Unable to read values file"):
        await load_values_file(tmp_path / "missing.yaml")


async def test_value_sources_precedence(tmp_path: Path) -> None:
    """Test that files, inline values and overrides apply in order."""
    first = tmp_path / "first.yaml"
    first.write_text("a: 1\nb: 1\nc: 1\nd: 1\n")
    second = tmp_path / "second.yaml"
    second.write_text("b: 2\nc: 2\nd: 2\n")
    sources = ValueSources(
        files=[first, second],
        values=[{"c": 3, "d": 3}],
        set_values=["d=4"],
    )
    assert sources
    assert await sources.resolve() == {"a": 1, "b": 2, "c": 3, "d": 4}
    assert not ValueSources()
