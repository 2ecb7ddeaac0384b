"""Module for computing differences between the document sets of revisions.

This is used by the release manager to find resources removed by an upgrade
or rollback and to preview an upgrade as a unified diff.
"""

from collections.abc import Iterable
import difflib
import logging
from typing import Any, Generator, TypeVar

from .manifest import NamedResource, RenderedDocument

__all__ = [
    "removed_resources",
    "changed_resources",
    "perform_document_diff",
]

_LOGGER = logging.getLogger(__name__)

_TRUNCATE = "[Diff truncated by release-local]"

T = TypeVar("T")


def _unique_keys(k1: dict[T, Any], k2: dict[T, Any]) -> Iterable[T]:
    """Return an ordered set."""
    return {
        **{k: True for k in k1.keys()},
        **{k: True for k in k2.keys()},
    }.keys()


def _by_resource(documents: Iterable[RenderedDocument]) -> dict[NamedResource, RenderedDocument]:
    return {doc.resource_id: doc for doc in documents}


def removed_resources(
    old: Iterable[RenderedDocument], new: Iterable[RenderedDocument]
) -> list[RenderedDocument]:
    """Return documents of the old set whose identity is absent from the new set."""
    new_ids = {doc.resource_id for doc in new}
    return [doc for doc in old if doc.resource_id not in new_ids]


def changed_resources(
    old: Iterable[RenderedDocument], new: Iterable[RenderedDocument]
) -> list[NamedResource]:
    """Return identities that were added, removed, or whose content changed."""
    a = _by_resource(old)
    b = _by_resource(new)
    return [
        key
        for key in _unique_keys(a, b)
        if key not in a or key not in b or a[key].content != b[key].content
    ]


def perform_document_diff(
    old: Iterable[RenderedDocument],
    new: Iterable[RenderedDocument],
    n: int = 3,
    limit_bytes: int = 0,
) -> Generator[str, None, None]:
    """Generate a unified diff between two document sets keyed by resource."""
    a = _by_resource(old)
    b = _by_resource(new)
    size = 0
    for key in _unique_keys(a, b):
        a_doc = a.get(key)
        b_doc = b.get(key)
        if a_doc is not None and b_doc is not None and a_doc.content == b_doc.content:
            continue
        _LOGGER.debug("Diffing resource %s (n=%d)", key, n)
        diff_text = difflib.unified_diff(
            a=a_doc.content.splitlines(keepends=True) if a_doc else [],
            b=b_doc.content.splitlines(keepends=True) if b_doc else [],
            fromfile=f"{a_doc.source if a_doc else '/dev/null'} {key}",
            tofile=f"{b_doc.source if b_doc else '/dev/null'} {key}",
            n=n,
        )
        for line in diff_text:
            size += len(line)
            if limit_bytes and size > limit_bytes:
                yield _TRUNCATE
                return
            yield line
