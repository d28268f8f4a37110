"""
Tests for snapshot generation.

Verifies:
- The archive digest is computed from the exact bytes written
- Excluded prefixes, directory markers and the post-restore entry
- The pipeline order and that nothing is published before a successful upload
"""

import io
import tarfile
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock

import pytest

from devenv.errors import ObjectStoreError, SnapshotError, WatchClosedError
from devenv.services.snapshot.generator import HashingWriter, SnapshotGenerator, UNKNOWN, load_definitions, write_archive
from devenv.services.snapshot.lock import SnapshotLockRegistry
from devenv.services.snapshot.models import POST_RESTORE_ARCHIVE_PATH, SnapshotGenerateConfig, SnapshotTarget

from conftest import FakeKubernetes, FakeObjectStore, make_pod, md5_b64, resource_event


def complete_backups(k8s: FakeKubernetes, phase: str = "Completed"):
    """Make every created Backup report InProgress, then phase."""
    def hook(obj):
        name = obj["metadata"]["name"]
        k8s.watch_events["backups"] = [
            resource_event("ADDED", name, None),
            resource_event("MODIFIED", name, "InProgress"),
            resource_event("MODIFIED", name, phase),
        ]
    k8s.on_create["backups"] = hook


@pytest.mark.unit
class TestHashingWriter:

    def test_digest_matches_written_bytes(self):
        sink = io.BytesIO()
        writer = HashingWriter(sink)

        writer.write(b"hello ")
        writer.write(b"world")

        assert sink.getvalue() == b"hello world"
        assert writer.size == 11
        assert writer.digest() == md5_b64(b"hello world")


@pytest.mark.unit
class TestWriteArchive:

    @pytest.mark.asyncio
    async def test_archive_contents_and_digest(self, tmp_path):
        store = FakeObjectStore("velero", {
            "backups/a/velero-backup.json": b"{}",
            "restic/default/config": b"cfg",
            "restic/default/": b"",
            "cache/tmp": b"skip me",
        })
        post_restore = tmp_path / "post-restore.yaml"
        post_restore.write_text("kind: ConfigMap\n")

        sink = io.BytesIO()
        writer = HashingWriter(sink)
        entries = await write_archive(store, writer, ["./cache/"], str(post_restore))

        assert entries == 3
        assert writer.digest() == md5_b64(sink.getvalue())

        with tarfile.open(fileobj=io.BytesIO(sink.getvalue()), mode="r:") as tar:
            names = tar.getnames()
            assert names == ["backups/a/velero-backup.json", "restic/default/config", POST_RESTORE_ARCHIVE_PATH]
            assert tar.extractfile("restic/default/config").read() == b"cfg"
            assert tar.extractfile(POST_RESTORE_ARCHIVE_PATH).read() == b"kind: ConfigMap\n"
            assert tar.getmember("restic/default/config").mode == 0o755


@asynccontextmanager
async def local_store_cm(store):
    yield store


def make_generator(settings, runtime, k8s, source, local):
    return SnapshotGenerator(
        settings,
        runtime,
        source,
        deployer=AsyncMock(),
        k8s_factory=lambda kubeconfig: k8s,
        local_store_factory=lambda kubeconfig: local_store_cm(local),
    )


@pytest.mark.unit
class TestSnapshotGenerator:

    @pytest.mark.asyncio
    async def test_generate_uploads_then_publishes(self, settings, fake_runtime, fake_k8s, source_store):
        fake_k8s.pods = [make_pod("api")]
        complete_backups(fake_k8s)
        local = FakeObjectStore("velero", {"backups/x/velero-backup.json": b"{}"})
        generator = make_generator(settings, fake_runtime, fake_k8s, source_store, local)
        definitions = SnapshotGenerateConfig(targets={"default": SnapshotTarget(deploy_apps=["api"], post_deploy_apps=["web"])})

        items = await generator.generate(definitions, "stable")

        item = items["default"]
        assert fake_runtime.calls == ["destroy", "pre_create", "create"]
        assert [c.args[0] for c in generator.deployer.deploy.await_args_list] == ["api", "web"]
        assert item.uri.startswith("automated-snapshots/v2/default/") and item.uri.endswith(".tar")
        assert item.digest == md5_b64(source_store.objects[item.uri])
        assert item.backup_id == fake_k8s.created("backups")[0]

        published = await SnapshotLockRegistry(source_store, settings.snapshot_lock_key).fetch("default", "stable")
        assert published == item

    @pytest.mark.asyncio
    async def test_watch_uses_creation_resource_version(self, settings, fake_runtime, fake_k8s, source_store):
        complete_backups(fake_k8s, phase="PartiallyFailed")
        generator = make_generator(settings, fake_runtime, fake_k8s, source_store, FakeObjectStore("velero"))

        name = await generator.create_backup(fake_k8s)

        watch = [c for c in fake_k8s.calls if c[0] == "watch"][0]
        assert watch == ("watch", "backups", name, "101")

    @pytest.mark.asyncio
    async def test_skip_upload_publishes_nothing(self, settings, fake_runtime, fake_k8s, source_store):
        complete_backups(fake_k8s)
        generator = make_generator(settings, fake_runtime, fake_k8s, source_store, FakeObjectStore("velero"))
        definitions = SnapshotGenerateConfig(targets={"default": SnapshotTarget()})

        items = await generator.generate(definitions, "stable", skip_upload=True)

        assert items["default"].digest == UNKNOWN
        assert items["default"].uri == UNKNOWN
        assert source_store.objects == {}

    @pytest.mark.asyncio
    async def test_failed_upload_publishes_nothing(self, settings, fake_runtime, fake_k8s):
        class BrokenStore(FakeObjectStore):
            async def put_object(self, key, body, content_md5=None):
                raise ObjectStoreError("upload failed")

        source = BrokenStore("devenv-snapshots")
        complete_backups(fake_k8s)
        generator = make_generator(settings, fake_runtime, fake_k8s, source, FakeObjectStore("velero"))
        definitions = SnapshotGenerateConfig(targets={"default": SnapshotTarget()})

        with pytest.raises(ObjectStoreError):
            await generator.generate(definitions, "stable")

        assert source.objects == {}

    @pytest.mark.asyncio
    async def test_backup_watch_closing_early_is_an_error(self, settings, fake_runtime, fake_k8s, source_store):
        def hook(obj):
            fake_k8s.watch_events["backups"] = [resource_event("MODIFIED", obj["metadata"]["name"], "InProgress")]
        fake_k8s.on_create["backups"] = hook
        generator = make_generator(settings, fake_runtime, fake_k8s, source_store, FakeObjectStore("velero"))

        with pytest.raises(WatchClosedError):
            await generator.generate(SnapshotGenerateConfig(targets={"default": SnapshotTarget()}), "stable")

        assert source_store.objects == {}


@pytest.mark.unit
class TestLoadDefinitions:

    def test_reads_targets(self, tmp_path):
        path = tmp_path / "snapshots.yaml"
        path.write_text(
            "targets:\n"
            "  default:\n"
            "    deployApps: [api]\n"
            "    excludedPaths: [restic/tmp]\n"
        )

        definitions = load_definitions(str(path))

        assert definitions.targets["default"].deploy_apps == ["api"]
        assert definitions.targets["default"].excluded_paths == ["restic/tmp"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(SnapshotError, match="not found"):
            load_definitions(str(tmp_path / "missing.yaml"))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
