"""Store module for the revision history of releases."""

from abc import ABC, abstractmethod

from release_local.manifest import Release, ReleaseKey, ReleaseStatus


class ReleaseStore(ABC):
    """Abstract base class for a durable store of release revisions."""

    @abstractmethod
    async def create(self, release: Release) -> None:
        """Record a new revision, failing if the revision already exists."""

    @abstractmethod
    async def update(self, release: Release) -> None:
        """Replace the record of an existing revision."""

    @abstractmethod
    async def get(self, key: ReleaseKey, revision: int) -> Release:
        """Return a revision or raise `RevisionNotFoundError`."""

    @abstractmethod
    async def history(self, key: ReleaseKey) -> list[Release]:
        """Return all revisions of a release ordered by revision number."""

    @abstractmethod
    async def delete(self, key: ReleaseKey, revision: int) -> None:
        """Remove a single revision from the history."""

    @abstractmethod
    async def keys(self, namespace: str | None = None) -> list[ReleaseKey]:
        """Return the keys of all releases with at least one revision."""

    async def last(self, key: ReleaseKey) -> Release | None:
        """Return the latest revision of a release."""
        if history := await self.history(key):
            return history[-1]
        return None

    async def deployed(self, key: ReleaseKey) -> Release | None:
        """Return the deployed revision of a release, if any."""
        for release in reversed(await self.history(key)):
            if release.status == ReleaseStatus.DEPLOYED:
                return release
        return None

    async def list_releases(self, namespace: str | None = None) -> list[Release]:
        """Return the latest revision of every release, ordered by key."""
        result = []
        for key in sorted(await self.keys(namespace)):
            if (release := await self.last(key)) is not None:
                result.append(release)
        return result
