"""Module for a release store backed by a directory of YAML files.

Each revision is one file at `<root>/<namespace>/<name>/v<revision>.yaml`.
Records are written to a temporary file which is then renamed over the
target, so a concurrent reader sees either the previous or the new record
and never a partial write.
"""

import logging
from pathlib import Path
import re

import aiofiles
import aiofiles.os
from aiofiles.ospath import exists, isdir
from mashumaro.exceptions import MissingField, InvalidFieldValue
from slugify import slugify
import yaml

from release_local.exceptions import RevisionNotFoundError, StoreException
from release_local.manifest import Release, ReleaseKey

from .store import ReleaseStore

_LOGGER = logging.getLogger(__name__)

_RECORD_RE = re.compile(r"^v(?P<revision>\d+)\.yaml$")
_TMP_SUFFIX = ".tmp"


def _component(value: str) -> str:
    """Return a path safe version of a namespace or release name."""
    if not (slug := slugify(value, lowercase=False, regex_pattern=r"[^-a-zA-Z0-9_.]+")):
        raise StoreException(f"Invalid release name or namespace '{value}'")
    return slug


class FileReleaseStore(ReleaseStore):
    """Stores each release revision as a YAML file below a root directory."""

    def __init__(self, root: Path) -> None:
        """Initialize the FileReleaseStore."""
        self._root = root

    def _release_dir(self, key: ReleaseKey) -> Path:
        return self._root / _component(key.namespace) / _component(key.name)

    def _record_path(self, key: ReleaseKey, revision: int) -> Path:
        return self._release_dir(key) / f"v{revision}.yaml"

    async def _write(self, release: Release) -> None:
        path = self._record_path(release.key, release.revision)
        tmp_path = path.with_name(path.name + _TMP_SUFFIX)
        try:
            await aiofiles.os.makedirs(str(path.parent), exist_ok=True)
            async with aiofiles.open(str(tmp_path), mode="w") as record_file:
                await record_file.write(release.yaml())
                await record_file.flush()
            await aiofiles.os.replace(str(tmp_path), str(path))
        except OSError as err:
            raise StoreException(f"Unable to write {release.key} revision {release.revision}: {err}") from err
        _LOGGER.debug("Wrote %s to %s", release, path)

    async def _read(self, path: Path) -> Release:
        try:
            async with aiofiles.open(str(path)) as record_file:
                content = await record_file.read()
        except OSError as err:
            raise StoreException(f"Unable to read release record {path}: {err}") from err
        try:
            release = Release.parse_yaml(content)
        except (yaml.YAMLError, MissingField, InvalidFieldValue, ValueError) as err:
            raise StoreException(f"Release record {path} is corrupt: {err}") from err
        if not isinstance(release, Release):
            raise StoreException(f"Release record {path} is not a release")
        return release

    async def create(self, release: Release) -> None:
        if await exists(str(self._record_path(release.key, release.revision))):
            raise StoreException(f"Release {release.key} revision {release.revision} already exists")
        await self._write(release)

    async def update(self, release: Release) -> None:
        if not await exists(str(self._record_path(release.key, release.revision))):
            raise RevisionNotFoundError(
                f"Release {release.key} revision {release.revision} not found"
            )
        await self._write(release)

    async def get(self, key: ReleaseKey, revision: int) -> Release:
        path = self._record_path(key, revision)
        if not await exists(str(path)):
            raise RevisionNotFoundError(f"Release {key} revision {revision} not found")
        release = await self._read(path)
        if release.key != key:
            raise StoreException(f"Release record {path} belongs to {release.key}, not {key}")
        return release

    async def _revisions(self, key: ReleaseKey) -> list[int]:
        release_dir = self._release_dir(key)
        if not await isdir(str(release_dir)):
            return []
        revisions = []
        for entry in await aiofiles.os.listdir(str(release_dir)):
            if match := _RECORD_RE.match(entry):
                revisions.append(int(match.group("revision")))
        return sorted(revisions)

    async def history(self, key: ReleaseKey) -> list[Release]:
        result = []
        for revision in await self._revisions(key):
            release = await self._read(self._record_path(key, revision))
            if release.key == key:
                result.append(release)
        return result

    async def delete(self, key: ReleaseKey, revision: int) -> None:
        path = self._record_path(key, revision)
        try:
            await aiofiles.os.remove(str(path))
        except FileNotFoundError as err:
            raise RevisionNotFoundError(f"Release {key} revision {revision} not found") from err
        except OSError as err:
            raise StoreException(f"Unable to delete release record {path}: {err}") from err
        _LOGGER.debug("Deleted %s revision %d", key, revision)
        if not await self._revisions(key):
            try:
                await aiofiles.os.rmdir(str(path.parent))
            except OSError as err:
                _LOGGER.debug("Unable to remove release directory %s: %s", path.parent, err)

    async def keys(self, namespace: str | None = None) -> list[ReleaseKey]:
        if not await isdir(str(self._root)):
            return []
        result: set[ReleaseKey] = set()
        for namespace_dir in sorted(await aiofiles.os.listdir(str(self._root))):
            if namespace is not None and namespace_dir != _component(namespace):
                continue
            namespace_path = self._root / namespace_dir
            if not await isdir(str(namespace_path)):
                continue
            for name_dir in sorted(await aiofiles.os.listdir(str(namespace_path))):
                release_dir = namespace_path / name_dir
                if not await isdir(str(release_dir)):
                    continue
                for entry in sorted(await aiofiles.os.listdir(str(release_dir))):
                    if _RECORD_RE.match(entry):
                        release = await self._read(release_dir / entry)
                        result.add(release.key)
                        break
        return sorted(result)
