"""Module for in memory release store."""

import copy
import logging
from typing import Any

from release_local.exceptions import RevisionNotFoundError, StoreException
from release_local.manifest import Release, ReleaseKey

from .store import ReleaseStore

_LOGGER = logging.getLogger(__name__)


class InMemoryReleaseStore(ReleaseStore):
    """In-memory implementation of the ReleaseStore interface.

    Records are kept in serialized form so callers never share state with the
    store.
    """

    def __init__(self) -> None:
        """Initialize the InMemoryReleaseStore."""
        self._records: dict[ReleaseKey, dict[int, dict[str, Any]]] = {}

    async def create(self, release: Release) -> None:
        revisions = self._records.setdefault(release.key, {})
        if release.revision in revisions:
            raise StoreException(f"Release {release.key} revision {release.revision} already exists")
        _LOGGER.debug("Creating %s", release)
        revisions[release.revision] = copy.deepcopy(release.to_dict())

    async def update(self, release: Release) -> None:
        revisions = self._records.get(release.key, {})
        if release.revision not in revisions:
            raise RevisionNotFoundError(
                f"Release {release.key} revision {release.revision} not found"
            )
        _LOGGER.debug("Updating %s", release)
        revisions[release.revision] = copy.deepcopy(release.to_dict())

    async def get(self, key: ReleaseKey, revision: int) -> Release:
        if (record := self._records.get(key, {}).get(revision)) is None:
            raise RevisionNotFoundError(f"Release {key} revision {revision} not found")
        return Release.from_dict(copy.deepcopy(record))

    async def history(self, key: ReleaseKey) -> list[Release]:
        revisions = self._records.get(key, {})
        return [
            Release.from_dict(copy.deepcopy(revisions[revision]))
            for revision in sorted(revisions)
        ]

    async def delete(self, key: ReleaseKey, revision: int) -> None:
        revisions = self._records.get(key, {})
        if revisions.pop(revision, None) is None:
            raise RevisionNotFoundError(f"Release {key} revision {revision} not found")
        if not revisions:
            del self._records[key]

    async def keys(self, namespace: str | None = None) -> list[ReleaseKey]:
        return [
            key
            for key, revisions in self._records.items()
            if revisions and (namespace is None or key.namespace == namespace)
        ]
