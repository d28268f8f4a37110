"""
Backup system (Velero) access.

Backups, Restores and BackupStorageLocations are custom resources; this
module only creates, reads, deletes and observes them. Waiting for a
resource to finish is a single call, wait_for_terminal_phase(), which owns
its watch subscription.
"""

import logging
from typing import Any, Dict, Optional

from kubernetes.client.rest import ApiException

from ...errors import WatchClosedError, is_already_exists
from ..orchestration.kubernetes.helpers import (
    BACKUP_GROUP,
    BACKUP_STORAGE_LOCATIONS_PLURAL,
    BACKUP_VERSION,
    BACKUPS_PLURAL,
    NON_TERMINAL_PHASES,
    RESTORES_PLURAL,
    create_backup_storage_location_manifest,
)

logger = logging.getLogger(__name__)

# Phase assumed when the backup system has not written a status yet
DEFAULT_PHASE = "New"


def get_phase(obj: Optional[Dict[str, Any]]) -> str:
    """Phase of a backup-system resource; a missing status counts as New."""
    if not obj:
        return DEFAULT_PHASE
    return (obj.get("status") or {}).get("phase") or DEFAULT_PHASE


def is_terminal(phase: str) -> bool:
    return phase not in NON_TERMINAL_PHASES


class BackupSystemResource:
    """One resource type of the backup system, in the backup namespace."""

    def __init__(self, k8s, namespace: str, plural: str, kind: str):
        self.k8s = k8s
        self.namespace = namespace
        self.plural = plural
        self.kind = kind

    async def get(self, name: str) -> Optional[Dict[str, Any]]:
        """Return the resource, or None if it does not exist."""
        return await self.k8s.get_custom_object(BACKUP_GROUP, BACKUP_VERSION, self.namespace, self.plural, name)

    async def create(self, manifest: Dict[str, Any]) -> Dict[str, Any]:
        created = await self.k8s.create_custom_object(
            BACKUP_GROUP, BACKUP_VERSION, self.namespace, self.plural, manifest
        )
        logger.info(f"[BACKUP] ✅ Created {self.kind}: {self.namespace}/{manifest['metadata']['name']}")
        return created

    async def delete(self, name: str) -> None:
        await self.k8s.delete_custom_object(BACKUP_GROUP, BACKUP_VERSION, self.namespace, self.plural, name)
        logger.info(f"[BACKUP] Deleted {self.kind}: {self.namespace}/{name}")

    async def wait_for_terminal_phase(self, name: str, resource_version: Optional[str] = None) -> str:
        """
        Block until the named resource leaves the New/InProgress phases.

        Only update and delete events are considered. Pass the resourceVersion
        returned on creation so no update is missed between create and watch.

        Returns:
            The terminal phase (Completed, PartiallyFailed, Failed, ...)

        Raises:
            WatchClosedError: The subscription ended, or the resource was
                deleted, before a terminal phase was seen
            asyncio.CancelledError: If cancelled while waiting; the resource
                keeps running upstream
        """
        subscription = self.k8s.watch_custom_objects(
            BACKUP_GROUP,
            BACKUP_VERSION,
            self.namespace,
            self.plural,
            name=name,
            resource_version=resource_version,
        )

        async with subscription as events:
            async for event in events:
                event_type = event.get("type")
                obj = event.get("object") or {}

                if event_type == "ERROR":
                    raise WatchClosedError(f"watch on {self.kind} {name} failed: {obj}")

                if event_type not in ("MODIFIED", "DELETED"):
                    continue

                if (obj.get("metadata") or {}).get("name") != name:
                    continue

                phase = get_phase(obj)
                if is_terminal(phase):
                    logger.info(f"[BACKUP] {self.kind} {name} finished with status: {phase}")
                    return phase

                if event_type == "DELETED":
                    raise WatchClosedError(f"{self.kind} {name} was deleted while in phase {phase}")

                logger.debug(f"[BACKUP] {self.kind} {name} is {phase}")

        raise WatchClosedError(f"watch on {self.kind} {name} closed before it finished")


class BackupStorageLocations(BackupSystemResource):

    def __init__(self, k8s, namespace: str):
        super().__init__(k8s, namespace, BACKUP_STORAGE_LOCATIONS_PLURAL, "BackupStorageLocation")

    async def ensure(self, name: str, bucket: str, s3_url: str, region: str = "minio") -> None:
        """Create a storage location pointing at bucket; an existing one is kept."""
        manifest = create_backup_storage_location_manifest(name, self.namespace, bucket, s3_url, region)
        try:
            await self.create(manifest)
        except ApiException as e:
            if not is_already_exists(e):
                raise
            logger.debug(f"[BACKUP] BackupStorageLocation {name} already exists")


class VeleroClient:
    """Entry point to the backup system's resources."""

    def __init__(self, k8s, namespace: str = "velero"):
        self.k8s = k8s
        self.namespace = namespace
        self.backups = BackupSystemResource(k8s, namespace, BACKUPS_PLURAL, "Backup")
        self.restores = BackupSystemResource(k8s, namespace, RESTORES_PLURAL, "Restore")
        self.storage_locations = BackupStorageLocations(k8s, namespace)
