"""
Provisioning a developer environment from a snapshot.

Runs from the developer's machine against a freshly created cluster:
1. Launch the stager Job and wait for it to finish
2. Read the hand-off record it left behind
3. Point the backup system at the staged bucket and wait for it to see the backup
4. Restore the backup, then run the post-restore steps
5. Wait for every pod to become ready

If any step fails the environment is destroyed; recovery is re-provisioning.
"""

import asyncio
import logging
from typing import Optional

import boto3
from kubernetes.client.rest import ApiException

from ...errors import BackupNotFoundError, SnapshotError, StagingJobError
from ...utils.backoff import backoff
from ..alert import AlertNotifier
from ..apps import AppRegistry, KubernetesAppRegistry
from ..orchestration.kubernetes.helpers import create_stager_job_manifest
from ..orchestration.kubernetes.readiness import wait_for_all_pods_ready
from ..runtime import ClusterRuntime
from .backup import VeleroClient
from .models import DEFAULT_S3_HOST, S3Config, StagerConfig
from .post_restore import (
    CertificateRenewer,
    apply_post_restore,
    build_template_context,
    purge_restore_wait_pods,
)
from .restore import RestoreOrchestrator
from .stager import read_handoff

logger = logging.getLogger(__name__)

DESTROY_TIMEOUT_SECONDS = 300  # 5 minutes


def _source_credentials(settings):
    """
    Credentials handed to the stager for the shared snapshot bucket.

    The Job cannot see the developer's credential chain, so explicit keys
    from settings win and the resolved default chain is the fallback.
    """
    if settings.snapshot_access_key_id:
        return settings.snapshot_access_key_id, settings.snapshot_secret_access_key, ""

    credentials = boto3.Session().get_credentials()
    if credentials is None:
        return "", "", ""
    frozen = credentials.get_frozen_credentials()
    return frozen.access_key, frozen.secret_key, frozen.token or ""


def build_stager_config(settings, target: str, channel: str) -> StagerConfig:
    access_key, secret_key, session_token = _source_credentials(settings)
    return StagerConfig(
        source=S3Config(
            s3_host=settings.snapshot_endpoint or DEFAULT_S3_HOST,
            bucket=settings.snapshot_bucket,
            region=settings.snapshot_region,
            aws_access_key=access_key,
            aws_secret_key=secret_key,
            aws_session_token=session_token,
            snapshot_target=target,
            snapshot_channel=channel,
        ),
        dest=S3Config(
            s3_host=settings.local_store_cluster_host,
            bucket=settings.local_store_restore_bucket,
            region=settings.local_store_region,
            aws_access_key=settings.local_store_access_key,
            aws_secret_key=settings.local_store_secret_key,
        ),
    )


def _job_failed(job, backoff_limit: int) -> bool:
    status = job.status
    if status is None:
        return False
    for condition in status.conditions or []:
        if condition.type == "Failed" and condition.status == "True":
            return True
    return (status.failed or 0) > backoff_limit


class SnapshotProvisioner:
    """Seeds a freshly created cluster from a published snapshot."""

    def __init__(
        self,
        settings,
        runtime: ClusterRuntime,
        k8s,
        registry: Optional[AppRegistry] = None,
        alerts: Optional[AlertNotifier] = None,
    ):
        self.settings = settings
        self.runtime = runtime
        self.k8s = k8s
        self.registry = registry or KubernetesAppRegistry(
            k8s, settings.devenv_namespace, settings.apps_configmap_name
        )
        self.alerts = alerts or AlertNotifier(settings.alerts_enabled)
        self.velero = VeleroClient(k8s, settings.backup_namespace)

    async def provision(self, target: str, channel: str) -> str:
        """
        Stage and restore the newest snapshot of target on channel.

        Returns:
            The terminal phase of the restore

        Raises:
            Exception: The first failure, after the environment was destroyed
        """
        try:
            phase = await self._provision(target, channel)
        except Exception as e:
            logger.error(f"[RESTORE] Provisioning failed: {e}")
            self.alerts.alert("Failed to provision developer environment")
            await self._destroy()
            raise
        finally:
            await self.alerts.aclose()

        return phase

    async def _provision(self, target: str, channel: str) -> str:
        await self.stage(target, channel)

        handoff = await read_handoff(self.k8s, self.settings.devenv_namespace, self.settings.snapshot_configmap_name)
        if handoff is None:
            raise SnapshotError("failed to retrieve loaded snapshot information")
        backup_name = handoff.snapshot.backup_id

        await self.ensure_backup_storage(backup_name)

        restorer = RestoreOrchestrator.from_settings(self.k8s, self.registry, self.settings)
        phase = await restorer.restore(backup_name)

        if handoff.post_restore:
            context = await build_template_context(self.runtime)
            await apply_post_restore(
                self.k8s,
                handoff.post_restore,
                context,
                max_attempts=self.settings.post_restore_max_attempts,
                interval=self.settings.post_restore_retry_interval_seconds,
            )

        await purge_restore_wait_pods(self.k8s, self.settings.restore_wait_init_containers)

        renewer = CertificateRenewer(self.k8s, self.settings.certificate_renew_retry_seconds)
        await renewer.renew_all()

        await wait_for_all_pods_ready(
            self.k8s,
            timeout=self.settings.provision_readiness_timeout_seconds,
            interval=self.settings.readiness_poll_interval_seconds,
            exempt_prefixes=self.settings.readiness_exempt_pod_prefixes,
        )

        logger.info(f"[RESTORE] ✅ Developer environment restored from snapshot {handoff.snapshot.uri}")
        self.alerts.alert("Successfully provisioned developer environment")
        return phase

    async def stage(self, target: str, channel: str) -> None:
        """
        Run the stager Job and wait for it to succeed.

        Raises:
            StagingJobError: If the Job fails; carries the Job's logs
        """
        s = self.settings
        config = build_stager_config(s, target, channel)
        manifest = create_stager_job_manifest(
            s.devenv_namespace,
            s.stager_image,
            config.to_json(),
            service_account=s.stager_service_account,
            backoff_limit=s.stager_backoff_limit,
        )

        logger.info(f"[RESTORE] Staging snapshot '{target}' from channel '{channel}'")
        job = await self.k8s.create_job(s.devenv_namespace, manifest)
        name = job.metadata.name

        while True:
            job = await self.k8s.read_job(name, s.devenv_namespace)
            if job.status is not None and (job.status.succeeded or 0) >= 1:
                logger.info(f"[RESTORE] ✅ Snapshot staged by job {name}")
                return
            if _job_failed(job, s.stager_backoff_limit):
                logs = await self.k8s.get_job_logs(name, s.devenv_namespace)
                raise StagingJobError(f"snapshot staging job {name} failed:\n{logs}")
            await asyncio.sleep(s.stager_poll_interval_seconds)

    async def ensure_backup_storage(self, backup_name: str) -> None:
        """
        Register the staged bucket with the backup system and wait until the
        backup it contains is visible.
        """
        s = self.settings
        logger.info("[RESTORE] Creating snapshot storage location")

        async def _ensure_and_verify():
            try:
                await self.velero.storage_locations.ensure(
                    s.backup_storage_location_name,
                    s.local_store_restore_bucket,
                    f"http://{s.local_store_cluster_host}",
                    s.local_store_region,
                )
            except ApiException as e:
                # Backup CRDs can lag behind a fresh cluster; the verify below decides
                logger.debug(f"[RESTORE] Waiting to create backup storage location: {e.reason}")

            if await self.velero.backups.get(backup_name) is None:
                raise BackupNotFoundError(f"backup '{backup_name}' not loaded yet")

        await backoff(
            _ensure_and_verify,
            interval=s.backup_storage_verify_interval_seconds,
            max_attempts=s.backup_storage_verify_attempts,
            description="verify backup system loaded snapshot",
        )

    async def _destroy(self) -> None:
        logger.info("[RESTORE] Destroying developer environment after failed provision")
        try:
            await asyncio.wait_for(self.runtime.destroy(), timeout=DESTROY_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.error("[RESTORE] Timed out destroying developer environment")
        except Exception as e:
            logger.error(f"[RESTORE] Failed to destroy developer environment: {e}")
