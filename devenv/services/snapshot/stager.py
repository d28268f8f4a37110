"""
Snapshot stager (runs as a Job inside the destination cluster).

Steps, each of which must fully succeed before the next begins:
- Discover: pick the newest snapshot for target/channel, unless a key is pinned
- Prepare: compare the staging marker with the selected digest; a match
  means the snapshot is already staged and the transfer steps are skipped
- DownloadFile: stream the archive to a temporary file through an MD5
  accumulator and verify the digest before the destination is touched
- UploadArchiveContents: empty the destination bucket, extract every archive
  entry into it, then write the staging marker last as the commit record
- ExtractPostRestore: move the post-restore manifest (if any) out of the
  bucket into the hand-off config map alongside the selected snapshot
"""

import asyncio
import base64
import gzip
import hashlib
import logging
import tarfile
import tempfile
from typing import IO, Awaitable, Callable, List, Optional, Tuple

from ...errors import (
    ChecksumMismatchError,
    MalformedDocumentError,
    ObjectNotFoundError,
    SnapshotError,
    StagingStepError,
)
from ..object_store import ObjectStore
from .lock import SnapshotLockRegistry
from .models import (
    LOCAL_MARKER_KEY,
    POST_RESTORE_ARCHIVE_PATH,
    LocalSnapshot,
    SnapshotHandoff,
    SnapshotLockListItem,
    SnapshotTarget,
    StagerConfig,
)

logger = logging.getLogger(__name__)

# Hand-off config map keys
HANDOFF_SNAPSHOT_KEY = "snapshot.json"
HANDOFF_POST_RESTORE_KEY = "post-restore.yaml"

DIGEST_CHUNK_SIZE = 1024 * 1024


def _content_md5(fileobj: IO[bytes]) -> str:
    """base64 MD5 of a seekable file object; leaves it rewound."""
    md5 = hashlib.md5(usedforsecurity=False)
    for chunk in iter(lambda: fileobj.read(DIGEST_CHUNK_SIZE), b""):
        md5.update(chunk)
    fileobj.seek(0)
    return base64.b64encode(md5.digest()).decode("ascii")


def compress_manifest(data: bytes) -> str:
    """gzip (best compression) then base64, as stored in the hand-off record."""
    return base64.b64encode(gzip.compress(data, compresslevel=9)).decode("ascii")


def decompress_manifest(encoded: str) -> bytes:
    try:
        return gzip.decompress(base64.b64decode(encoded))
    except (ValueError, OSError) as e:
        raise MalformedDocumentError(f"failed to decode post-restore manifests: {e}") from e


async def read_handoff(k8s, namespace: str = "devenv", name: str = "snapshot") -> Optional[SnapshotHandoff]:
    """
    Read the hand-off record left by the stager.

    Returns:
        The record, or None if the config map does not exist
    """
    config_map = await k8s.read_config_map(name, namespace)
    if config_map is None:
        return None

    data = config_map.data or {}
    if HANDOFF_SNAPSHOT_KEY not in data:
        raise MalformedDocumentError(f"config map {namespace}/{name} has no '{HANDOFF_SNAPSHOT_KEY}'")

    return SnapshotHandoff(
        snapshot=SnapshotLockListItem.from_json(data[HANDOFF_SNAPSHOT_KEY]),
        post_restore=data.get(HANDOFF_POST_RESTORE_KEY),
    )


class SnapshotStager:
    """Stages a snapshot into the cluster's local object store."""

    def __init__(
        self,
        config: StagerConfig,
        source: ObjectStore,
        dest: ObjectStore,
        k8s,
        namespace: str = "devenv",
        configmap_name: str = "snapshot",
        lock_key: str = "automated-snapshots/v2/latest.yaml",
    ):
        self.config = config
        self.source = source
        self.dest = dest
        self.k8s = k8s
        self.namespace = namespace
        self.configmap_name = configmap_name
        self.lock_registry = SnapshotLockRegistry(source, lock_key)

        # Set as the steps run
        self.snapshot: Optional[SnapshotLockListItem] = None
        self.already_staged = False
        self._archive: Optional[IO[bytes]] = None

    @classmethod
    def from_config(cls, config: StagerConfig, k8s, settings) -> "SnapshotStager":
        """Create the source and destination store clients from the stager config."""
        logger.info("[STAGER] Creating snapshot clients")
        return cls(
            config=config,
            source=ObjectStore.from_s3_config(config.source),
            dest=ObjectStore.from_s3_config(config.dest),
            k8s=k8s,
            namespace=settings.devenv_namespace,
            configmap_name=settings.snapshot_configmap_name,
            lock_key=settings.snapshot_lock_key,
        )

    def steps(self) -> List[Tuple[str, Callable[[], Awaitable[None]]]]:
        return [
            ("Discover", self.discover),
            ("Prepare", self.prepare),
            ("DownloadFile", self.download_file),
            ("UploadArchiveContents", self.upload_archive_contents),
            ("ExtractPostRestore", self.extract_post_restore),
        ]

    async def run(self) -> SnapshotLockListItem:
        """
        Run every step in order.

        Raises:
            StagingStepError: Wrapping the first failure, named after its step
        """
        try:
            for name, step in self.steps():
                try:
                    await step()
                except Exception as e:
                    raise StagingStepError(name, e) from e
        finally:
            self._close_archive()

        logger.info(f"[STAGER] ✅ Snapshot {self.snapshot.uri} staged")
        return self.snapshot

    def _close_archive(self) -> None:
        if self._archive is not None:
            self._archive.close()
            self._archive = None

    # =========================================================================
    # STEPS
    # =========================================================================

    async def discover(self) -> None:
        source = self.config.source

        if source.key:
            if not source.digest:
                raise SnapshotError(f"pinned snapshot '{source.key}' has no digest to verify against")
            logger.info(f"[STAGER] Using snapshot at {source.key}")
            self.snapshot = SnapshotLockListItem(
                digest=source.digest,
                uri=source.key,
                config=SnapshotTarget(),
                backup_id=source.backup_id,
            )
            return

        logger.info("[STAGER] Discovering snapshots")
        self.snapshot = await self.lock_registry.fetch(source.snapshot_target, source.snapshot_channel)

    async def prepare(self) -> None:
        logger.info("[STAGER] Getting current snapshot information")
        try:
            raw = await self.dest.get_object(LOCAL_MARKER_KEY)
        except ObjectNotFoundError:
            logger.info("[STAGER] No snapshot staged yet")
            return

        try:
            current = LocalSnapshot.from_yaml(raw.decode("utf-8"))
        except (MalformedDocumentError, UnicodeDecodeError) as e:
            logger.warning(f"[STAGER] Ignoring unreadable staging marker: {e}")
            return

        if current.digest == self.snapshot.digest:
            logger.info("[STAGER] Using already downloaded snapshot")
            self.already_staged = True

    async def download_file(self) -> None:
        if self.already_staged:
            return

        logger.info(f"[STAGER] Starting download of {self.source.bucket}/{self.snapshot.uri}")
        md5 = hashlib.md5(usedforsecurity=False)
        archive = tempfile.TemporaryFile(prefix="devenv-snapshot-")
        self._archive = archive

        size = await self.source.download_object(self.snapshot.uri, archive, on_chunk=md5.update)
        logger.info(f"[STAGER] Finished downloading snapshot ({size} bytes)")

        actual = base64.b64encode(md5.digest()).decode("ascii")
        if actual != self.snapshot.digest:
            raise ChecksumMismatchError(self.snapshot.digest, actual)

        archive.seek(0)

    async def upload_archive_contents(self) -> None:
        if self.already_staged:
            return

        await self._purge_destination()

        logger.info(f"[STAGER] Extracting snapshot into bucket {self.dest.bucket}")
        entries = 0
        with tarfile.open(fileobj=self._archive, mode="r:") as tar:
            for member in tar:
                # Directories carry no data in an object store
                if not member.isfile():
                    continue

                key = member.name[2:] if member.name.startswith("./") else member.name
                body = tar.extractfile(member)
                content_md5 = await asyncio.to_thread(_content_md5, body)
                await self.dest.put_object(key, body, content_md5=content_md5)
                entries += 1
        logger.info(f"[STAGER] Finished extracting {entries} entries")

        # Written last: a crash before this point leaves no marker and the
        # next run extracts again
        marker = LocalSnapshot(digest=self.snapshot.digest).to_yaml().encode("utf-8")
        await self.dest.put_object(LOCAL_MARKER_KEY, marker)
        logger.info("[STAGER] Wrote snapshot state")

    async def _purge_destination(self) -> None:
        logger.info("[STAGER] Preparing local storage for snapshot")
        # The marker goes first so a partial purge never looks staged
        try:
            await self.dest.remove_object(LOCAL_MARKER_KEY)
        except ObjectNotFoundError:
            pass

        for obj in await self.dest.list_objects():
            if not obj.key or obj.key == LOCAL_MARKER_KEY:
                continue
            logger.debug(f"[STAGER] Removing old snapshot file {obj.key}")
            await self.dest.remove_object(obj.key)

    async def extract_post_restore(self) -> None:
        if self.already_staged:
            existing = await read_handoff(self.k8s, self.namespace, self.configmap_name)
            if existing is not None and existing.snapshot.digest == self.snapshot.digest:
                logger.info("[STAGER] Snapshot state already present in Kubernetes")
                return

        logger.info("[STAGER] Generating snapshot state in Kubernetes")
        data = {HANDOFF_SNAPSHOT_KEY: self.snapshot.to_json()}

        manifest = await self._get_post_restore_manifest()
        if manifest is not None:
            logger.info("[STAGER] Compressing post-restore manifests")
            data[HANDOFF_POST_RESTORE_KEY] = compress_manifest(manifest)

        await self.k8s.create_or_replace_config_map(self.configmap_name, self.namespace, data)

        if manifest is not None:
            logger.info("[STAGER] Cleaning up post-restore artifacts")
            try:
                await self.dest.remove_object(POST_RESTORE_ARCHIVE_PATH)
            except ObjectNotFoundError:
                pass
            except SnapshotError as e:
                logger.warning(f"[STAGER] Failed to remove post-restore manifest: {e}")

        logger.info("[STAGER] Finished setting up Kubernetes snapshot state")

    async def _get_post_restore_manifest(self) -> Optional[bytes]:
        try:
            return await self.dest.get_object(POST_RESTORE_ARCHIVE_PATH)
        except ObjectNotFoundError:
            return None
