"""
Snapshot generation.

For every target in a definitions file:
1. Recreate an ephemeral base cluster
2. Deploy the target's apps, run its capture command, deploy post-capture apps
3. Wait for every pod to be ready, then back the cluster up
4. Archive the in-cluster object store (the backup data) into a tar stream,
   hashing the exact bytes written, and upload it with that digest
5. Publish the new snapshot to the lock document

A target that fails at any step aborts the run before anything is published.
"""

import asyncio
import base64
import hashlib
import logging
import os
import tarfile
import tempfile
import time
from contextlib import asynccontextmanager
from typing import IO, AsyncContextManager, AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple

from ...errors import CommandError, SnapshotError
from ...utils.async_subprocess import run_async_stream
from ..object_store import ObjectStore
from ..orchestration.kubernetes.client import KubernetesClient
from ..orchestration.kubernetes.helpers import create_backup_manifest, generate_backup_name
from ..orchestration.kubernetes.readiness import wait_for_all_pods_ready
from .backup import VeleroClient
from .lock import SnapshotLockRegistry
from .models import (
    POST_RESTORE_ARCHIVE_PATH,
    SnapshotGenerateConfig,
    SnapshotLockListItem,
    SnapshotTarget,
)

logger = logging.getLogger(__name__)

# Set for every command run while generating, so apps can tell
GENERATION_ENV = "DEVENV_SNAPSHOT_GENERATION"

# Digest/uri recorded when the archive was not uploaded
UNKNOWN = "unknown"

ARCHIVE_ENTRY_MODE = 0o755
PORT_FORWARD_READY_TIMEOUT = 30


class HashingWriter:
    """
    Write-only file object that feeds every byte to an MD5 accumulator
    before writing it to the underlying file.
    """

    def __init__(self, fileobj: IO[bytes]):
        self.fileobj = fileobj
        self._md5 = hashlib.md5(usedforsecurity=False)
        self.size = 0

    def write(self, data: bytes) -> int:
        self._md5.update(data)
        self.size += len(data)
        return self.fileobj.write(data)

    def flush(self) -> None:
        self.fileobj.flush()

    def digest(self) -> str:
        """base64-encoded MD5 of everything written so far (Content-MD5 format)."""
        return base64.b64encode(self._md5.digest()).decode("ascii")


def _is_excluded(key: str, excluded_paths: Iterable[str]) -> bool:
    return any(key.startswith(prefix) for prefix in excluded_paths)


async def write_archive(
    store: ObjectStore,
    sink: IO[bytes],
    excluded_paths: Iterable[str] = (),
    post_restore_path: Optional[str] = None
) -> int:
    """
    Stream every object of store into a tar archive written to sink.

    Entries are named by object key. An optional post-restore manifest
    template is appended at POST_RESTORE_ARCHIVE_PATH.

    Returns:
        Number of entries written
    """
    excluded = [p[2:] if p.startswith("./") else p for p in excluded_paths]
    objects = await store.list_objects()
    entries = 0

    with tarfile.open(fileobj=sink, mode="w|") as tar:
        for obj in objects:
            # Skip empty keys and directory markers
            if not obj.key or obj.key.endswith("/"):
                continue
            if _is_excluded(obj.key, excluded):
                logger.debug(f"[SNAPSHOT] Skipping excluded key {obj.key}")
                continue

            with tempfile.TemporaryFile(prefix="snapshot-object-") as buf:
                size = await store.download_object(obj.key, buf)
                buf.seek(0)

                info = tarfile.TarInfo(name=obj.key)
                info.size = size
                info.mode = ARCHIVE_ENTRY_MODE
                info.mtime = obj.last_modified.timestamp() if obj.last_modified else time.time()
                await asyncio.to_thread(tar.addfile, info, buf)
                entries += 1

        if post_restore_path:
            try:
                with open(post_restore_path, "rb") as f:
                    info = tar.gettarinfo(fileobj=f, arcname=POST_RESTORE_ARCHIVE_PATH)
                    await asyncio.to_thread(tar.addfile, info, f)
                    entries += 1
            except OSError as e:
                raise SnapshotError(f"failed to add post-restore file '{post_restore_path}': {e}") from e

    logger.info(f"[SNAPSHOT] Archived {entries} entries")
    return entries


@asynccontextmanager
async def port_forward(
    kubectl: str,
    kubeconfig: str,
    namespace: str,
    service: str,
    local_port: int,
    remote_port: int
) -> AsyncIterator[None]:
    """Forward 127.0.0.1:local_port to a service for the duration of the block."""
    cmd = [
        kubectl, "--kubeconfig", kubeconfig, "--namespace", namespace,
        "port-forward", f"svc/{service}", f"{local_port}:{remote_port}", "--address", "127.0.0.1",
    ]

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT
        )
    except OSError as e:
        raise CommandError(f"failed to start {kubectl}: {e}") from e

    async def drain():
        # kubectl logs every connection; keep the pipe from filling up
        while await process.stdout.readline():
            pass

    drainer: Optional[asyncio.Task] = None
    try:
        first_line = await asyncio.wait_for(process.stdout.readline(), timeout=PORT_FORWARD_READY_TIMEOUT)
        if not first_line:
            await process.wait()
            raise CommandError(
                f"port-forward to {namespace}/{service} exited with code {process.returncode}",
                returncode=process.returncode,
            )
        logger.info(f"[SNAPSHOT] {first_line.decode('utf-8', errors='replace').strip()}")
        drainer = asyncio.create_task(drain())
        yield
    finally:
        if drainer is not None:
            drainer.cancel()
        if process.returncode is None:
            process.terminate()
            await process.wait()


class AppDeployer:
    """Deploys applications by shelling out to the deploy CLI."""

    def __init__(self, command: str = "devenv"):
        self.command = command

    async def deploy(self, app: str, kubeconfig: Optional[str] = None) -> None:
        """
        Raises:
            CommandError: If the deployment failed
        """
        env = {GENERATION_ENV: "true"}
        if kubeconfig:
            env["KUBECONFIG"] = kubeconfig

        logger.info(f"[SNAPSHOT] Deploying application {app}")
        await run_async_stream([self.command, "--skip-update", "deploy-app", app], extra_env=env)


class SnapshotGenerator:
    """Builds, uploads and publishes snapshots for each target of a definitions file."""

    def __init__(
        self,
        settings,
        runtime,
        source_store: ObjectStore,
        lock_registry: Optional[SnapshotLockRegistry] = None,
        deployer: Optional[AppDeployer] = None,
        k8s_factory: Optional[Callable[[str], KubernetesClient]] = None,
        local_store_factory: Optional[Callable[[str], AsyncContextManager[ObjectStore]]] = None,
    ):
        self.settings = settings
        self.runtime = runtime
        self.source_store = source_store
        self.lock_registry = lock_registry or SnapshotLockRegistry(source_store, settings.snapshot_lock_key)
        self.deployer = deployer or AppDeployer(settings.deploy_command)
        self.k8s_factory = k8s_factory or (lambda kubeconfig: KubernetesClient(kubeconfig=kubeconfig))
        self.local_store_factory = local_store_factory or self._forwarded_local_store

    @asynccontextmanager
    async def _forwarded_local_store(self, kubeconfig: str) -> AsyncIterator[ObjectStore]:
        s = self.settings
        async with port_forward(
            s.kubectl_command, kubeconfig, s.local_store_namespace, s.local_store_service,
            s.local_store_forward_port, s.local_store_port,
        ):
            yield ObjectStore(
                bucket=s.local_store_snapshot_bucket,
                endpoint_url=f"http://127.0.0.1:{s.local_store_forward_port}",
                region=s.local_store_region,
                access_key_id=s.local_store_access_key,
                secret_access_key=s.local_store_secret_key,
            )

    async def generate(
        self,
        definitions: SnapshotGenerateConfig,
        channel: str,
        skip_upload: bool = False
    ) -> Dict[str, SnapshotLockListItem]:
        """
        Generate a snapshot for every target, publishing each after its upload.

        With skip_upload, nothing is uploaded or published.
        """
        logger.info(f"[SNAPSHOT] Generating {len(definitions.targets)} snapshot(s) on channel '{channel}'")

        items: Dict[str, SnapshotLockListItem] = {}
        for name, target in definitions.targets.items():
            item = await self.generate_target(name, target, skip_upload)
            if not skip_upload:
                await self.lock_registry.publish(name, channel, item)
            items[name] = item

        return items

    async def generate_target(self, name: str, target: SnapshotTarget, skip_upload: bool = False) -> SnapshotLockListItem:
        logger.info(f"[SNAPSHOT] Generating snapshot '{name}'")

        await self._recreate_cluster()
        kubeconfig = await self.runtime.get_kube_config()
        k8s = self.k8s_factory(kubeconfig)

        await self._deploy_apps(target.deploy_apps, kubeconfig)

        if target.command:
            logger.info("[SNAPSHOT] Running snapshot generation command")
            env = {GENERATION_ENV: "true", "KUBECONFIG": kubeconfig}
            await run_async_stream(["/bin/bash", "-c", target.command], extra_env=env)

        await self._deploy_apps(target.post_deploy_apps, kubeconfig)

        await wait_for_all_pods_ready(
            k8s,
            timeout=self.settings.generation_readiness_timeout_seconds,
            interval=self.settings.readiness_poll_interval_seconds,
            exempt_prefixes=self.settings.readiness_exempt_pod_prefixes,
        )

        backup_name = await self.create_backup(k8s)

        digest, key = UNKNOWN, UNKNOWN
        if not skip_upload:
            async with self.local_store_factory(kubeconfig) as local_store:
                digest, key = await self.upload(name, target, local_store)

        return SnapshotLockListItem(digest=digest, uri=key, config=target, backup_id=backup_name)

    async def _recreate_cluster(self) -> None:
        try:
            await self.runtime.destroy()
        except Exception as e:
            logger.warning(f"[SNAPSHOT] Failed to destroy existing environment, continuing: {e}")

        await self.runtime.pre_create()
        await self.runtime.create()

    async def _deploy_apps(self, apps: List[str], kubeconfig: str) -> None:
        if not apps:
            return
        logger.info("[SNAPSHOT] Deploying applications into devenv")
        for app in apps:
            await self.deployer.deploy(app, kubeconfig)

    async def create_backup(self, k8s) -> str:
        """
        Back up the cluster and wait for the backup to finish.

        Returns:
            The backup name
        """
        velero = VeleroClient(k8s, self.settings.backup_namespace)
        backup_name = generate_backup_name()
        manifest = create_backup_manifest(
            backup_name,
            self.settings.backup_namespace,
            self.settings.backup_excluded_namespaces,
            self.settings.backup_excluded_resources,
        )

        created = await velero.backups.create(manifest)
        logger.info("[SNAPSHOT] Waiting for snapshot to finish being created...")

        resource_version = (created.get("metadata") or {}).get("resourceVersion")
        phase = await velero.backups.wait_for_terminal_phase(backup_name, resource_version)
        logger.info(f"[SNAPSHOT] Backup {backup_name} finished with status: {phase}")
        return backup_name

    async def upload(self, name: str, target: SnapshotTarget, local_store: ObjectStore) -> Tuple[str, str]:
        """
        Archive the local store and upload the archive to the snapshot bucket.

        Returns:
            Tuple of (digest, key)
        """
        with tempfile.TemporaryFile(prefix="snapshot-") as archive:
            sink = HashingWriter(archive)
            logger.info("[SNAPSHOT] Creating tar archive")
            await write_archive(local_store, sink, target.excluded_paths, target.post_restore or None)

            digest = sink.digest()
            key = f"{self.settings.snapshot_prefix}/{name}/{time.time_ns()}.tar"

            archive.seek(0)
            logger.info(f"[SNAPSHOT] Uploading tar archive to {self.source_store.bucket}/{key} ({sink.size} bytes)")
            await self.source_store.put_object(key, archive, content_md5=digest)

        logger.info(f"[SNAPSHOT] ✅ Uploaded snapshot '{name}' to {key}")
        return digest, key


def load_definitions(path: str) -> SnapshotGenerateConfig:
    """Read a snapshot definitions file."""
    if not os.path.exists(path):
        raise SnapshotError(f"snapshot definitions file '{path}' not found")
    with open(path, "r", encoding="utf-8") as f:
        return SnapshotGenerateConfig.from_yaml(f.read())
