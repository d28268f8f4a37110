"""
Unit tests for manifest builders and Kubernetes error classification.
"""

from datetime import datetime, timedelta, timezone

import pytest
from kubernetes import client

from devenv.errors import is_already_exists, is_conflict, is_not_found
from devenv.services.orchestration.kubernetes.helpers import (
    create_backup_manifest,
    create_backup_storage_location_manifest,
    create_stager_job_manifest,
    generate_backup_name,
)

from conftest import api_exception


@pytest.mark.unit
@pytest.mark.kubernetes
class TestManifests:

    def test_backup_name_is_dns_compliant(self):
        now = datetime(2024, 3, 1, 10, 22, 5, tzinfo=timezone(timedelta(hours=2)))
        assert generate_backup_name(now) == "2024-03-01t08-22-05z"

    def test_backup_manifest(self):
        manifest = create_backup_manifest("b1", "velero", ["velero", "minio"], ["HelmChart"])

        assert manifest["kind"] == "Backup"
        assert manifest["spec"]["excludedNamespaces"] == ["velero", "minio"]
        assert manifest["spec"]["excludedResources"] == ["HelmChart"]
        assert manifest["spec"]["defaultVolumesToRestic"] is True

    def test_storage_location_manifest(self):
        manifest = create_backup_storage_location_manifest("devenv", "velero", "velero-restore", "http://minio.minio:9000")

        assert manifest["spec"]["objectStorage"]["bucket"] == "velero-restore"
        assert manifest["spec"]["config"]["s3ForcePathStyle"] == "true"
        assert manifest["spec"]["config"]["s3Url"] == "http://minio.minio:9000"

    def test_stager_job(self):
        job = create_stager_job_manifest("devenv", "image:tag", '{"source": {}}', service_account="snapshot", backoff_limit=5)

        assert isinstance(job, client.V1Job)
        assert job.metadata.generate_name == "snapshot-stage-"
        assert job.spec.backoff_limit == 5
        pod = job.spec.template.spec
        assert pod.service_account_name == "snapshot"
        assert pod.restart_policy == "OnFailure"
        assert pod.containers[0].env[0].name == "CONFIG"
        assert pod.containers[0].env[0].value == '{"source": {}}'


@pytest.mark.unit
class TestErrorClassification:

    def test_conflict_vs_already_exists(self):
        conflict = api_exception(409, "Conflict")
        exists = api_exception(409, "AlreadyExists")

        assert is_conflict(conflict) and not is_already_exists(conflict)
        assert is_already_exists(exists) and not is_conflict(exists)

    def test_not_found(self):
        assert is_not_found(api_exception(404, "NotFound"))
        assert not is_not_found(api_exception(500))
        assert not is_conflict(ValueError("409"))

    def test_body_without_status(self):
        exc = api_exception(409)
        exc.body = "not json"
        assert is_conflict(exc)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
