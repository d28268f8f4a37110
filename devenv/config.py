from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List


class Settings(BaseSettings):
    # Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = "INFO"

    # ==========================================================================
    # Developer Environment Namespaces
    # ==========================================================================
    devenv_namespace: str = "devenv"
    snapshot_configmap_name: str = "snapshot"  # Hand-off record written by the stager
    apps_configmap_name: str = "apps"  # Application registry store

    # ==========================================================================
    # Backup System (Velero)
    # ==========================================================================
    backup_namespace: str = "velero"
    backup_storage_location_name: str = "devenv"

    # Namespaces/resources never captured by a generated backup.
    # Velero is installed before the backup runs and minio is the snapshot backend.
    backup_excluded_namespaces: List[str] = ["velero", "minio"]
    # Helm chart resources have already been rendered at backup time
    backup_excluded_resources: List[str] = ["HelmChart"]

    # Infrastructure namespaces a restore must never touch
    restore_excluded_namespaces: List[str] = [
        "nginx-ingress",
        "kube-system",
        "cert-manager",
        "velero",
        "minio",
        "vault-secrets-operator",
        "local-path-storage",
        "monitoring",
        "resourcer--bento1a",
    ]
    restore_delete_poll_interval_seconds: float = 5.0

    # Init containers injected by the backup system while volumes restore
    restore_wait_init_containers: List[str] = ["restic-wait", "restore-wait"]

    # ==========================================================================
    # Snapshot Object Storage (source, S3-compatible)
    # ==========================================================================
    snapshot_bucket: str = "devenv-snapshots"
    snapshot_region: str = "us-east-1"
    snapshot_endpoint: str = ""  # Empty for AWS S3, set for MinIO/DO Spaces
    snapshot_access_key_id: str = ""  # Empty to rely on the default credential chain
    snapshot_secret_access_key: str = ""
    snapshot_prefix: str = "automated-snapshots/v2"
    snapshot_lock_key: str = "automated-snapshots/v2/latest.yaml"

    snapshot_default_target: str = "base"
    snapshot_default_channel: str = "stable"

    # ==========================================================================
    # In-cluster object store (MinIO)
    # ==========================================================================
    # The generator reaches the cluster store through a kubectl port-forward
    local_store_namespace: str = "minio"
    local_store_service: str = "minio"
    local_store_port: int = 9000
    local_store_forward_port: int = 61002
    kubectl_command: str = "kubectl"
    # Host the staging job reaches the cluster store on
    local_store_cluster_host: str = "minio.minio:9000"
    local_store_access_key: str = "minioaccess"
    local_store_secret_key: str = "miniosecret"
    local_store_region: str = "minio"
    local_store_snapshot_bucket: str = "velero"  # Backup data written during generation
    local_store_restore_bucket: str = "velero-restore"  # Staged snapshot contents

    # ==========================================================================
    # Staging Job
    # ==========================================================================
    stager_image: str = "ghcr.io/devenv/devenv:latest"
    stager_service_account: str = "snapshot"
    stager_backoff_limit: int = 5
    stager_poll_interval_seconds: float = 5.0

    # ==========================================================================
    # Snapshot Generation
    # ==========================================================================
    deploy_command: str = "devenv"  # Binary that implements `deploy-app`
    generation_runtime: str = "kind"
    snapshot_definitions_file: str = "snapshots.yaml"

    # ==========================================================================
    # Readiness
    # ==========================================================================
    readiness_poll_interval_seconds: float = 30.0
    generation_readiness_timeout_seconds: float = 600.0  # 10 minutes
    provision_readiness_timeout_seconds: float = 1200.0  # 20 minutes
    readiness_exempt_pod_prefixes: List[str] = ["strimzi-topic-operator"]

    # ==========================================================================
    # Retry Policy
    # ==========================================================================
    post_restore_max_attempts: int = 5
    post_restore_retry_interval_seconds: float = 1.0
    certificate_renew_retry_seconds: float = 5.0
    backup_storage_verify_attempts: int = 10
    backup_storage_verify_interval_seconds: float = 10.0

    alerts_enabled: bool = True

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields from .env file
        case_sensitive = False  # Allow lowercase env vars to match uppercase field names


@lru_cache()
def get_settings():
    return Settings()
