"""Semantic version constraints used to select chart dependencies.

A constraint is a set of alternatives separated by `||`. Each alternative is a
list of comparisons that must all hold, separated by commas or spaces:

```python
from release_local.version import Constraint

constraint = Constraint.parse(">=1.2.0 <2.0.0 || ^3.1")
constraint.allows("1.4.2")  # True
constraint.best_match(["1.0.0", "1.9.9", "3.2.0"])  # "3.2.0"
```

Supported forms are comparisons (`=`, `!=`, `>`, `>=`, `<`, `<=`), caret
ranges (`^1.2.3`), tilde ranges (`~1.2.3`), wildcards (`1.x`, `1.2.*`, `*`),
and hyphen ranges (`1.2 - 1.4.5`). A pre-release version is only allowed by an
alternative that itself mentions a pre-release.
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass
import logging
import operator
import re

from semver import Version

from .exceptions import InvalidConstraintError

__all__ = [
    "Constraint",
    "parse_version",
]

_LOGGER = logging.getLogger(__name__)

_WILDCARDS = ("x", "X", "*")

_OPERATORS: dict[str, Callable[[Version, Version], bool]] = {
    "=": operator.eq,
    "!=": operator.ne,
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
}

_TERM_RE = re.compile(
    r"^(?P<op>>=|<=|!=|=>|=<|>|<|=|\^|~>|~)?\s*v?"
    r"(?P<version>[0-9xX*]+(?:\.[0-9xX*]+){0,2}"
    r"(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?)$"
)
_HYPHEN_RE = re.compile(r"^(?P<low>\S+)\s+-\s+(?P<high>\S+)$")
_SPACED_OP_RE = re.compile(r"(>=|<=|!=|=>|=<|>|<|=|\^|~>|~)\s+")


def parse_version(value: str) -> Version:
    """Parse a possibly partial semantic version such as `1.2` or `v1.2.3`."""
    text = str(value).strip()
    if text[:1] in ("v", "V"):
        text = text[1:]
    try:
        return Version.parse(text, optional_minor_and_patch=True)
    except (ValueError, TypeError) as err:
        raise ValueError(f"Invalid semantic version '{value}'") from err


@dataclass(frozen=True)
class _Comparator:
    op: str
    version: Version

    def allows(self, version: Version) -> bool:
        return _OPERATORS[self.op](version, self.version)

    def __str__(self) -> str:
        return f"{self.op}{self.version}"


@dataclass(frozen=True)
class _Partial:
    """A version where missing or wildcard components are None."""

    major: int | None
    minor: int | None
    patch: int | None
    prerelease: str | None

    @property
    def floor(self) -> Version:
        return Version(
            self.major or 0,
            self.minor or 0,
            self.patch or 0,
            prerelease=self.prerelease,
        )

    @property
    def ceiling(self) -> Version | None:
        """Exclusive upper bound of a wildcard range, None when unbounded."""
        if self.major is None:
            return None
        if self.minor is None:
            return Version(self.major + 1, 0, 0)
        if self.patch is None:
            return Version(self.major, self.minor + 1, 0)
        return None

    @property
    def is_wildcard(self) -> bool:
        return self.patch is None


def _parse_partial(text: str, constraint: str) -> _Partial:
    main, _, build = text.partition("+")
    main, sep, prerelease = main.partition("-")
    parts = main.split(".")
    numbers: list[int | None] = []
    wildcard = False
    for part in parts:
        if part in _WILDCARDS or wildcard:
            wildcard = True
            numbers.append(None)
            continue
        if not part.isdigit():
            raise InvalidConstraintError(
                f"Invalid version '{text}' in constraint '{constraint}'"
            )
        numbers.append(int(part))
    while len(numbers) < 3:
        numbers.append(None)
    if sep and (wildcard or None in numbers):
        raise InvalidConstraintError(
            f"Pre-release on partial version '{text}' in constraint '{constraint}'"
        )
    return _Partial(numbers[0], numbers[1], numbers[2], prerelease or None)


def _caret(partial: _Partial) -> list[_Comparator]:
    low = partial.floor
    if partial.major is None:
        return [_Comparator(">=", low)]
    if partial.major > 0 or partial.minor is None:
        high = Version(partial.major + 1, 0, 0)
    elif partial.minor > 0 or partial.patch is None:
        high = Version(0, partial.minor + 1, 0)
    else:
        high = Version(0, 0, (partial.patch or 0) + 1)
    return [_Comparator(">=", low), _Comparator("<", high)]


def _tilde(partial: _Partial) -> list[_Comparator]:
    low = partial.floor
    if partial.major is None:
        return [_Comparator(">=", low)]
    if partial.minor is None:
        high = Version(partial.major + 1, 0, 0)
    else:
        high = Version(partial.major, partial.minor + 1, 0)
    return [_Comparator(">=", low), _Comparator("<", high)]


def _comparison(op: str, partial: _Partial) -> list[_Comparator]:
    op = {"=>": ">=", "=<": "<="}.get(op, op)
    if not partial.is_wildcard:
        return [_Comparator(op, partial.floor)]
    ceiling = partial.ceiling
    if op == "=":
        if ceiling is None:
            return [_Comparator(">=", partial.floor)]
        return [_Comparator(">=", partial.floor), _Comparator("<", ceiling)]
    if op == "<=" and ceiling is not None:
        return [_Comparator("<", ceiling)]
    if op == ">" and ceiling is not None:
        return [_Comparator(">=", ceiling)]
    if op == "!=":
        raise InvalidConstraintError(f"Wildcard not supported with != in '{partial}'")
    if partial.major is None:
        # `>=*` and `<*` style expressions
        return [_Comparator(">=", Version(0, 0, 0))] if op in (">", ">=") else []
    return [_Comparator(op, partial.floor)]


def _parse_term(term: str, constraint: str) -> list[_Comparator]:
    if not (match := _TERM_RE.match(term)):
        raise InvalidConstraintError(
            f"Invalid term '{term}' in version constraint '{constraint}'"
        )
    op = match.group("op") or "="
    partial = _parse_partial(match.group("version"), constraint)
    if op == "^":
        return _caret(partial)
    if op in ("~", "~>"):
        return _tilde(partial)
    return _comparison(op, partial)


def _parse_hyphen(low: str, high: str, constraint: str) -> list[_Comparator]:
    lower = _parse_partial(low, constraint)
    upper = _parse_partial(high, constraint)
    result = [_Comparator(">=", lower.floor)]
    if upper.is_wildcard:
        if (ceiling := upper.ceiling) is not None:
            result.append(_Comparator("<", ceiling))
    else:
        result.append(_Comparator("<=", upper.floor))
    return result


def _parse_group(group: str, constraint: str) -> tuple[_Comparator, ...]:
    text = _SPACED_OP_RE.sub(r"\1", group.strip())
    if not text:
        raise InvalidConstraintError(f"Empty alternative in constraint '{constraint}'")
    if match := _HYPHEN_RE.match(group.strip()):
        return tuple(_parse_hyphen(match.group("low"), match.group("high"), constraint))
    comparators: list[_Comparator] = []
    for term in re.split(r"[\s,]+", text):
        if term:
            comparators.extend(_parse_term(term, constraint))
    return tuple(comparators)


@dataclass(frozen=True)
class Constraint:
    """A parsed semantic version constraint."""

    text: str
    groups: tuple[tuple[_Comparator, ...], ...]

    @classmethod
    def parse(cls, text: str | None) -> "Constraint":
        """Parse a constraint expression, an empty constraint allows any version."""
        raw = str(text).strip() if text is not None else ""
        if not raw:
            return cls(text="*", groups=((),))
        groups = tuple(_parse_group(group, raw) for group in raw.split("||"))
        _LOGGER.debug("Parsed constraint '%s' into %s", raw, groups)
        return cls(text=raw, groups=groups)

    def allows(self, version: str | Version) -> bool:
        """Return True if the version satisfies the constraint."""
        if not isinstance(version, Version):
            try:
                version = parse_version(version)
            except ValueError:
                return False
        for group in self.groups:
            if version.prerelease and not any(
                comp.version.prerelease for comp in group
            ):
                continue
            if all(comp.allows(version) for comp in group):
                return True
        return False

    def best_match(self, versions: Iterable[str]) -> str | None:
        """Return the highest version that satisfies the constraint."""
        best: tuple[Version, str] | None = None
        for candidate in versions:
            try:
                parsed = parse_version(candidate)
            except ValueError:
                _LOGGER.debug("Ignoring invalid candidate version %s", candidate)
                continue
            if not self.allows(parsed):
                continue
            if best is None or parsed > best[0]:
                best = (parsed, candidate)
        return best[1] if best else None

    def __str__(self) -> str:
        return self.text
