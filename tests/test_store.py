"""Tests for the release stores."""

import datetime
from pathlib import Path

import pytest

from release_local.exceptions import RevisionNotFoundError, StoreException
from release_local.manifest import (
    ApplyResult,
    ChartRef,
    Hook,
    HookDeletePolicy,
    HookPhase,
    Release,
    ReleaseKey,
    ReleaseStatus,
    RenderedDocument,
)
from release_local.store import FileReleaseStore, InMemoryReleaseStore, ReleaseStore

KEY = ReleaseKey(namespace="default", name="web")
DEPLOYED_AT = datetime.datetime(2026, 1, 2, 3, 4, 5, tzinfo=datetime.UTC)


def _release(
    revision: int = 1,
    status: ReleaseStatus = ReleaseStatus.DEPLOYED,
    name: str = "web",
    namespace: str = "default",
) -> Release:
    document = RenderedDocument(
        source="webapp/templates/configmap.yaml",
        content="apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: web-config\n",
        api_version="v1",
        kind="ConfigMap",
        name="web-config",
        namespace=namespace,
        annotations={"helm.sh/resource-policy": "keep"},
    )
    hook_document = RenderedDocument(
        source="webapp/templates/hooks/migrate.yaml",
        content="apiVersion: batch/v1\nkind: Job\nmetadata:\n  name: migrate\n",
        api_version="batch/v1",
        kind="Job",
        name="migrate",
        namespace=namespace,
        annotations={"helm.sh/hook": "pre-upgrade"},
    )
    return Release(
        name=name,
        namespace=namespace,
        revision=revision,
        chart=ChartRef(name="webapp", version="1.0.0"),
        status=status,
        app_version="2.4.1",
        values={"image": {"tag": "1.25"}, "debug": None},
        config={"image": {"repository": "nginx", "tag": "1.25"}, "replicaCount": 1},
        documents=[document],
        hooks=[
            Hook(
                name="migrate",
                kind="Job",
                phases=[HookPhase.PRE_UPGRADE],
                document=hook_document,
                weight=-1,
                delete_policies=[HookDeletePolicy.HOOK_SUCCEEDED],
            )
        ],
        description="Install complete",
        notes="Visit http://web:80\n",
        apply_results=[ApplyResult(resource="ConfigMap/default/web-config", succeeded=True)],
        first_deployed=DEPLOYED_AT,
        last_deployed=DEPLOYED_AT,
    )


@pytest.fixture(name="release_store", params=["memory", "file"])
def release_store_fixture(request: pytest.FixtureRequest, tmp_path: Path) -> ReleaseStore:
    """Fixture to exercise each store implementation."""
    if request.param == "memory":
        return InMemoryReleaseStore()
    return FileReleaseStore(tmp_path / "releases")


async def test_create_and_get(release_store: ReleaseStore) -> None:
    """Test that a record is read back without loss."""
    release = _release()
    await release_store.create(release)
    assert await release_store.get(KEY, 1) == release
    assert await release_store.history(KEY) == [release]
    assert await release_store.last(KEY) == release
    assert await release_store.deployed(KEY) == release
    assert await release_store.keys() == [KEY]


async def test_create_duplicate(release_store: ReleaseStore) -> None:
    await release_store.create(_release())
    with pytest.raises(StoreException, match="already exists"):
        await release_store.create(_release())


async def test_missing_records(release_store: ReleaseStore) -> None:
    with pytest.raises(RevisionNotFoundError):
        await release_store.get(KEY, 1)
    with pytest.raises(RevisionNotFoundError):
        await release_store.update(_release())
    with pytest.raises(RevisionNotFoundError):
        await release_store.delete(KEY, 1)
    assert await release_store.history(KEY) == []
    assert await release_store.last(KEY) is None
    assert await release_store.deployed(KEY) is None
    assert await release_store.keys() == []
    assert await release_store.list_releases() == []


async def test_update(release_store: ReleaseStore) -> None:
    """Test replacing the record of a revision."""
    await release_store.create(_release(status=ReleaseStatus.PENDING_INSTALL))
    assert await release_store.deployed(KEY) is None
    await release_store.update(_release(status=ReleaseStatus.DEPLOYED))
    release = await release_store.get(KEY, 1)
    assert release.status == ReleaseStatus.DEPLOYED


async def test_history_order(release_store: ReleaseStore) -> None:
    for revision in (2, 10, 1):
        await release_store.create(
            _release(revision=revision, status=ReleaseStatus.SUPERSEDED)
        )
    await release_store.update(_release(revision=2, status=ReleaseStatus.DEPLOYED))
    assert [release.revision for release in await release_store.history(KEY)] == [1, 2, 10]
    last = await release_store.last(KEY)
    assert last is not None
    assert last.revision == 10
    deployed = await release_store.deployed(KEY)
    assert deployed is not None
    assert deployed.revision == 2


async def test_delete(release_store: ReleaseStore) -> None:
    await release_store.create(_release(revision=1))
    await release_store.create(_release(revision=2))
    await release_store.delete(KEY, 1)
    assert [release.revision for release in await release_store.history(KEY)] == [2]
    await release_store.delete(KEY, 2)
    assert await release_store.history(KEY) == []
    assert await release_store.keys() == []


async def test_list_releases(release_store: ReleaseStore) -> None:
    """Test listing the latest revision of every release."""
    await release_store.create(_release(name="web", revision=1))
    await release_store.create(_release(name="web", revision=2))
    await release_store.create(_release(name="api", namespace="prod"))
    await release_store.create(_release(name="db", namespace="default"))
    releases = await release_store.list_releases()
    assert [(str(release.key), release.revision) for release in releases] == [
        ("default/db", 1),
        ("default/web", 2),
        ("prod/api", 1),
    ]
    assert await release_store.keys("prod") == [ReleaseKey(namespace="prod", name="api")]
    assert [str(release.key) for release in await release_store.list_releases("default")] == [
        "default/db",
        "default/web",
    ]


async def test_records_are_isolated(release_store: ReleaseStore) -> None:
    """Test that modifying a returned record does not change the store."""
    await release_store.create(_release())
    release = await release_store.get(KEY, 1)
    release.values["image"]["tag"] = "changed"
    release.documents.clear()
    stored = await release_store.get(KEY, 1)
    assert stored.values["image"]["tag"] == "1.25"
    assert len(stored.documents) == 1


async def test_file_layout(tmp_path: Path) -> None:
    """Test that each revision is one YAML file below the namespace and name."""
    store = FileReleaseStore(tmp_path)
    await store.create(_release(revision=1))
    await store.create(_release(revision=2))
    assert sorted(path.name for path in (tmp_path / "default" / "web").iterdir()) == [
        "v1.yaml",
        "v2.yaml",
    ]
    content = (tmp_path / "default" / "web" / "v1.yaml").read_text()
    assert Release.parse_yaml(content) == _release(revision=1)

    await store.delete(KEY, 1)
    await store.delete(KEY, 2)
    assert not (tmp_path / "default" / "web").exists()


async def test_file_corrupt_record(tmp_path: Path) -> None:
    store = FileReleaseStore(tmp_path)
    path = tmp_path / "default" / "web" / "v1.yaml"
    path.parent.mkdir(parents=True)
    path.write_text("name: web\nrevision: [1\n")
    with pytest.raises(StoreException, match="corrupt"):
        await store.get(KEY, 1)

    path.write_text("name: web\nnamespace: default\n")
    with pytest.raises(StoreException, match="corrupt"):
        await store.history(KEY)


async def test_file_record_key_mismatch(tmp_path: Path) -> None:
    store = FileReleaseStore(tmp_path)
    await store.create(_release(name="web"))
    other = tmp_path / "default" / "other"
    other.mkdir()
    (other / "v1.yaml").write_text((tmp_path / "default" / "web" / "v1.yaml").read_text())
    with pytest.raises(StoreException, match="belongs to default/web"):
        await store.get(ReleaseKey(namespace="default", name="other"), 1)


async def test_file_invalid_name(tmp_path: Path) -> None:
    store = FileReleaseStore(tmp_path)
    with pytest.raises(StoreException, match="Invalid release name"):
        await store.create(_release(name="///"))
