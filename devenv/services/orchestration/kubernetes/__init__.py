"""
Kubernetes Orchestration Module

- KubernetesClient: Low-level Kubernetes API interactions (typed, custom objects, dynamic, watch)
- helpers: Manifest builders for backup-system resources and the staging Job
- readiness: Cluster-wide pod readiness with per-pod diagnostics
"""

from .client import KubernetesClient, WatchSubscription, get_k8s_client
from .helpers import (
    NON_TERMINAL_PHASES,
    generate_backup_name,
    create_backup_manifest,
    create_restore_manifest,
    create_backup_storage_location_manifest,
    create_stager_job_manifest,
)
from .readiness import (
    ContainerDiagnostic,
    PodDiagnostic,
    find_unready_pods,
    is_pod_ready,
    wait_for_all_pods_ready,
)

__all__ = [
    # Client
    "KubernetesClient",
    "WatchSubscription",
    "get_k8s_client",
    # Manifest Helpers
    "NON_TERMINAL_PHASES",
    "generate_backup_name",
    "create_backup_manifest",
    "create_restore_manifest",
    "create_backup_storage_location_manifest",
    "create_stager_job_manifest",
    # Readiness
    "ContainerDiagnostic",
    "PodDiagnostic",
    "find_unready_pods",
    "is_pod_ready",
    "wait_for_all_pods_ready",
]
