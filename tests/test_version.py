"""Tests for version constraints."""

import pytest

from release_local.exceptions import InvalidConstraintError
from release_local.version import Constraint, parse_version


@pytest.mark.parametrize(
    ("constraint", "version", "expected"),
    [
        ("^1.2.3", "1.2.3", True),
        ("^1.2.3", "1.9.9", True),
        ("^1.2.3", "2.0.0", False),
        ("^1.2.3", "1.2.2", False),
        ("^0.2.3", "0.2.9", True),
        ("^0.2.3", "0.3.0", False),
        ("~1.2.3", "1.2.9", True),
        ("~1.2.3", "1.3.0", False),
        ("~1", "1.9.0", True),
        ("1.x", "1.5.0", True),
        ("1.x", "2.0.0", False),
        ("1.2.*", "1.2.7", True),
        ("1.2.*", "1.3.0", False),
        ("*", "4.0.0", True),
        ("", "0.0.1", True),
        (">=1.2.0 <2.0.0", "1.4.2", True),
        (">=1.2.0 <2.0.0", "2.0.0", False),
        (">= 1.0, < 2.0", "1.9.0", True),
        (">= 1.0, < 2.0", "2.0.0", False),
        ("1.2 - 1.4.5", "1.4.5", True),
        ("1.2 - 1.4.5", "1.4.6", False),
        ("1.2 - 1.4.5", "1.1.9", False),
        ("!=1.2.3", "1.2.4", True),
        ("!=1.2.3", "1.2.3", False),
        ("1.0.0 || ^3.1", "3.2.0", True),
        ("1.0.0 || ^3.1", "1.0.0", True),
        ("1.0.0 || ^3.1", "2.0.0", False),
        ("^1.0.0", "1.5.0-rc.1", False),
        (">=1.5.0-rc.0", "1.5.0-rc.1", True),
        ("^1.0.0", "v1.2.0", True),
        ("^1.0.0", "not-a-version", False),
    ],
)
def test_allows(constraint: str, version: str, expected: bool) -> None:
    """Test evaluating a version against a constraint."""
    assert Constraint.parse(constraint).allows(version) is expected


def test_best_match() -> None:
    """Test that the highest satisfying version is selected."""
    constraint = Constraint.parse(">=1.2.0 <2.0.0 || ^3.1")
    assert constraint.best_match(["1.0.0", "1.9.9", "3.2.0"]) == "3.2.0"
    assert constraint.best_match(["1.0.0", "1.9.9", "bogus"]) == "1.9.9"
    assert Constraint.parse("^2").best_match(["1.0.0", "3.0.0"]) is None
    assert Constraint.parse("~7.0.0").best_match([]) is None


@pytest.mark.parametrize(
    "constraint",
    ["^abc", ">=1.0 ||", "1.x-beta", ">>1.0"],
)
def test_invalid_constraint(constraint: str) -> None:
    with pytest.raises(InvalidConstraintError):
        Constraint.parse(constraint)


def test_parse_version() -> None:
    assert str(parse_version("1.2")) == "1.2.0"
    assert str(parse_version("v1.2.3")) == "1.2.3"
    with pytest.raises(ValueError, match="Invalid semantic version"):
        parse_version("one")
