"""
Restore orchestration.

Restoring a backup replaces every workload outside the excluded namespaces,
the application registry included. Applications that were registered before
the restore but are missing from the restored registry are written back, so
local state about deployed applications survives a snapshot reset.
"""

import asyncio
import logging
from typing import List

from kubernetes.client.rest import ApiException

from ...errors import (
    BackupNotFoundError,
    DevenvError,
    RestoreConflictError,
)
from ..apps import App, AppNotFoundError, AppRegistry
from ..orchestration.kubernetes.helpers import create_restore_manifest
from .backup import VeleroClient, get_phase

logger = logging.getLogger(__name__)


async def reconcile_app_registry(before: List[App], registry: AppRegistry) -> List[str]:
    """
    Write back applications that disappeared during a restore.

    Entries present in both the old and the restored registry keep their
    restored values. Failures are logged and skipped.

    Returns:
        Names of the applications that were written back
    """
    restored = []
    for app in before:
        try:
            await registry.get(app.name)
            continue
        except AppNotFoundError:
            pass
        except (DevenvError, ApiException) as e:
            logger.warning(f"[RESTORE] Failed to read application {app.name} after restore: {e}")
            continue

        try:
            await registry.set(app)
            restored.append(app.name)
            logger.info(f"[RESTORE] Re-registered application {app.name}")
        except (DevenvError, ApiException) as e:
            logger.warning(f"[RESTORE] Failed to re-register application {app.name}: {e}")

    return restored


class RestoreOrchestrator:
    """Triggers a restore of a named backup and waits for it to finish."""

    def __init__(
        self,
        velero: VeleroClient,
        registry: AppRegistry,
        excluded_namespaces: List[str],
        delete_poll_interval: float = 5.0,
    ):
        self.velero = velero
        self.registry = registry
        self.excluded_namespaces = excluded_namespaces
        self.delete_poll_interval = delete_poll_interval

    @classmethod
    def from_settings(cls, k8s, registry: AppRegistry, settings) -> "RestoreOrchestrator":
        return cls(
            velero=VeleroClient(k8s, settings.backup_namespace),
            registry=registry,
            excluded_namespaces=settings.restore_excluded_namespaces,
            delete_poll_interval=settings.restore_delete_poll_interval_seconds,
        )

    async def restore(self, backup_name: str) -> str:
        """
        Restore backup_name into the cluster.

        Returns:
            The terminal phase of the restore (Completed, PartiallyFailed, ...)

        Raises:
            BackupNotFoundError: If the backup does not exist
            RestoreConflictError: If a restore of the same name is in progress
            WatchClosedError: If the restore watch ended early
        """
        if await self.velero.backups.get(backup_name) is None:
            raise BackupNotFoundError(f"backup '{backup_name}' not found")

        await self._clear_previous_restore(backup_name)

        before = await self._list_apps()

        # The restore brings back the registry from the snapshot; start from scratch
        try:
            await self.registry.reset()
        except (DevenvError, ApiException) as e:
            logger.warning(f"[RESTORE] Failed to reset application registry: {e}")

        manifest = create_restore_manifest(
            backup_name, self.velero.namespace, backup_name, self.excluded_namespaces
        )
        created = await self.velero.restores.create(manifest)
        resource_version = (created.get("metadata") or {}).get("resourceVersion")

        logger.info(f"[RESTORE] Waiting for restore {backup_name} to finish")
        phase = await self.velero.restores.wait_for_terminal_phase(backup_name, resource_version)

        await reconcile_app_registry(before, self.registry)

        logger.info(f"[RESTORE] ✅ Restore {backup_name} finished with status: {phase}")
        return phase

    async def _clear_previous_restore(self, name: str) -> None:
        existing = await self.velero.restores.get(name)
        if existing is None:
            return

        phase = get_phase(existing)
        if phase == "InProgress":
            raise RestoreConflictError(f"restore '{name}' is already in progress")

        logger.info(f"[RESTORE] Deleting previous restore {name} ({phase})")
        await self.velero.restores.delete(name)

        while await self.velero.restores.get(name) is not None:
            logger.debug(f"[RESTORE] Waiting for restore {name} to be deleted")
            await asyncio.sleep(self.delete_poll_interval)

    async def _list_apps(self) -> List[App]:
        try:
            return await self.registry.list()
        except (DevenvError, ApiException) as e:
            logger.warning(f"[RESTORE] Failed to list applications before restore: {e}")
            return []
