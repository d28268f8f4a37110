"""
Kubernetes manifest builders for the snapshot lifecycle.

Backup-system resources are built as plain dicts for the custom objects API;
the staging Job uses the typed client models.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional

from kubernetes import client

# Backup system (Velero) API
BACKUP_GROUP = "velero.io"
BACKUP_VERSION = "v1"
BACKUP_API_VERSION = f"{BACKUP_GROUP}/{BACKUP_VERSION}"
BACKUPS_PLURAL = "backups"
RESTORES_PLURAL = "restores"
BACKUP_STORAGE_LOCATIONS_PLURAL = "backupstoragelocations"

# Phases that mean the backup system is still working on a resource
NON_TERMINAL_PHASES = frozenset({"New", "InProgress"})

STAGER_COMMAND = ["/usr/local/bin/snapshot-uploader"]
STAGER_JOB_PREFIX = "snapshot-stage-"


def generate_backup_name(now: Optional[datetime] = None) -> str:
    """
    Create a DNS-1123 compliant backup name from a timestamp.

    e.g. 2024-03-01T10:22:05Z -> 2024-03-01t10-22-05z
    """
    now = now or datetime.now(timezone.utc)
    stamp = now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    return stamp.replace(":", "-").lower()


def create_backup_manifest(
    name: str,
    namespace: str,
    excluded_namespaces: List[str],
    excluded_resources: List[str]
) -> Dict:
    """Backup of the whole cluster, volumes included (file-system backup)."""
    return {
        "apiVersion": BACKUP_API_VERSION,
        "kind": "Backup",
        "metadata": {
            "name": name,
            "namespace": namespace,
        },
        "spec": {
            "excludedNamespaces": list(excluded_namespaces),
            "excludedResources": list(excluded_resources),
            "snapshotVolumes": True,
            "defaultVolumesToRestic": True,
            "includeClusterResources": True,
        },
    }


def create_restore_manifest(name: str, namespace: str, backup_name: str, excluded_namespaces: List[str]) -> Dict:
    return {
        "apiVersion": BACKUP_API_VERSION,
        "kind": "Restore",
        "metadata": {
            "name": name,
            "namespace": namespace,
        },
        "spec": {
            "backupName": backup_name,
            "restorePVs": True,
            "includeClusterResources": True,
            "preserveNodePorts": True,
            "excludedNamespaces": list(excluded_namespaces),
        },
    }


def create_backup_storage_location_manifest(
    name: str,
    namespace: str,
    bucket: str,
    s3_url: str,
    region: str = "minio"
) -> Dict:
    """BackupStorageLocation pointing the backup system at the in-cluster store."""
    return {
        "apiVersion": BACKUP_API_VERSION,
        "kind": "BackupStorageLocation",
        "metadata": {
            "name": name,
            "namespace": namespace,
        },
        "spec": {
            "provider": "aws",
            "objectStorage": {
                "bucket": bucket,
            },
            "config": {
                "region": region,
                "s3ForcePathStyle": "true",
                "s3Url": s3_url,
            },
        },
    }


def create_stager_job_manifest(
    namespace: str,
    image: str,
    config_json: str,
    service_account: str = "snapshot",
    backoff_limit: int = 5
) -> client.V1Job:
    """
    Job running the snapshot stager inside the destination cluster.

    The stager reads its whole configuration from the CONFIG env var.
    """
    container = client.V1Container(
        name="snapshot-stage",
        image=image,
        command=list(STAGER_COMMAND),
        env=[client.V1EnvVar(name="CONFIG", value=config_json)],
    )

    return client.V1Job(
        api_version="batch/v1",
        kind="Job",
        metadata=client.V1ObjectMeta(
            generate_name=STAGER_JOB_PREFIX,
            namespace=namespace,
            labels={"app.kubernetes.io/managed-by": "devenv", "app.kubernetes.io/component": "snapshot-stage"},
        ),
        spec=client.V1JobSpec(
            completions=1,
            backoff_limit=backoff_limit,
            template=client.V1PodTemplateSpec(
                spec=client.V1PodSpec(
                    service_account_name=service_account,
                    restart_policy="OnFailure",
                    containers=[container],
                )
            ),
        ),
    )
