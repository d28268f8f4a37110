"""
Tests for the post-restore steps: manifest templates, restore-wait pod
cleanup and certificate renewal.
"""

from unittest.mock import AsyncMock, patch

import pytest

from devenv.errors import CommandError, MalformedDocumentError, RetryAttemptsExhausted
from devenv.services.snapshot.post_restore import (
    CertificateRenewer,
    apply_post_restore,
    build_template_context,
    mark_for_renewal,
    parse_manifests,
    purge_restore_wait_pods,
    render_manifest,
)
from devenv.services.snapshot.stager import compress_manifest
from devenv.utils.async_subprocess import SubprocessResult

from conftest import FakeRuntime, api_exception, make_pod

TEMPLATE = """\
apiVersion: v1
kind: ConfigMap
metadata:
  name: owner
  namespace: devenv
data:
  user: "[[ User ]]"
  email: "[[ Email ]]"
  runtime: "[[ ClusterRuntime.name ]]"
  helm: "{{ .Values.kept }}"
---
---
apiVersion: v1
kind: Secret
metadata:
  name: token
  namespace: devenv
"""

CONTEXT = {"User": "jdoe", "Email": "jdoe@example.com", "ClusterRuntime": FakeRuntime("kind").get_config()}


def certificate(name, issuing=None):
    cert = {"metadata": {"name": name, "namespace": "apps", "generation": 2}, "status": {"conditions": []}}
    if issuing is not None:
        cert["status"]["conditions"].append({"type": "Issuing", "status": issuing})
    return cert


@pytest.mark.unit
class TestTemplates:

    def test_render_uses_square_bracket_delimiters(self):
        rendered = render_manifest(TEMPLATE, CONTEXT)

        assert 'user: "jdoe"' in rendered
        assert 'email: "jdoe@example.com"' in rendered
        assert 'runtime: "kind"' in rendered
        assert '"{{ .Values.kept }}"' in rendered

    def test_undefined_variable_is_an_error(self):
        with pytest.raises(MalformedDocumentError):
            render_manifest("name: [[ Missing ]]", CONTEXT)

    def test_parse_skips_empty_documents(self):
        manifests = parse_manifests(render_manifest(TEMPLATE, CONTEXT))
        assert [m["kind"] for m in manifests] == ["ConfigMap", "Secret"]

    def test_parse_rejects_non_objects(self):
        with pytest.raises(MalformedDocumentError):
            parse_manifests("- just\n- a list\n")

    @pytest.mark.asyncio
    async def test_template_context(self):
        result = SubprocessResult(returncode=0, stdout="jdoe@example.com\n", stderr="", args=[])
        with patch("devenv.services.snapshot.post_restore.run_async", AsyncMock(return_value=result)), \
                patch("devenv.services.snapshot.post_restore.getpass.getuser", return_value="jdoe"):
            context = await build_template_context(FakeRuntime("kind"))

        assert context["User"] == "jdoe"
        assert context["Email"] == "jdoe@example.com"
        assert context["ClusterRuntime"].name == "kind"

    @pytest.mark.asyncio
    async def test_missing_git_email_is_an_error(self):
        result = SubprocessResult(returncode=1, stdout="", stderr="", args=[])
        with patch("devenv.services.snapshot.post_restore.run_async", AsyncMock(return_value=result)):
            with pytest.raises(CommandError):
                await build_template_context(FakeRuntime("kind"))


@pytest.mark.unit
class TestApplyPostRestore:

    @pytest.mark.asyncio
    async def test_applies_every_document(self, fake_k8s):
        applied = await apply_post_restore(fake_k8s, compress_manifest(TEMPLATE.encode()), CONTEXT, interval=0)

        assert applied == 2
        assert fake_k8s.applied[0]["data"]["user"] == "jdoe"

    @pytest.mark.asyncio
    async def test_conflicts_are_retried(self):
        k8s = AsyncMock()
        k8s.apply_manifest.side_effect = [api_exception(409, "Conflict"), None, None]

        await apply_post_restore(k8s, compress_manifest(TEMPLATE.encode()), CONTEXT, interval=0)

        assert k8s.apply_manifest.await_count == 3

    @pytest.mark.asyncio
    async def test_conflict_budget_is_bounded(self):
        k8s = AsyncMock()
        k8s.apply_manifest.side_effect = api_exception(409, "Conflict")

        with pytest.raises(RetryAttemptsExhausted):
            await apply_post_restore(k8s, compress_manifest(TEMPLATE.encode()), CONTEXT, max_attempts=3, interval=0)

        assert k8s.apply_manifest.await_count == 3

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self):
        k8s = AsyncMock()
        k8s.apply_manifest.side_effect = api_exception(422, "Invalid")

        with pytest.raises(Exception) as exc_info:
            await apply_post_restore(k8s, compress_manifest(TEMPLATE.encode()), CONTEXT, interval=0)

        assert exc_info.value.status == 422
        assert k8s.apply_manifest.await_count == 1


@pytest.mark.unit
@pytest.mark.kubernetes
class TestPurgeRestoreWaitPods:

    @pytest.mark.asyncio
    async def test_only_restore_wait_pods_are_deleted(self, fake_k8s):
        fake_k8s.pods = [
            make_pod("db-0", namespace="apps", init_containers=["restic-wait"]),
            make_pod("api", namespace="apps", init_containers=["migrate"]),
            make_pod("web", namespace="apps"),
        ]

        deleted = await purge_restore_wait_pods(fake_k8s, ["restic-wait"])

        assert deleted == ["apps/db-0"]
        assert [p.metadata.name for p in fake_k8s.pods] == ["api", "web"]

    @pytest.mark.asyncio
    async def test_delete_failures_are_tolerated(self):
        k8s = AsyncMock()
        k8s.list_all_pods.return_value = [
            make_pod("db-0", init_containers=["restic-wait"]),
            make_pod("db-1", init_containers=["restic-wait"]),
        ]
        k8s.delete_pod.side_effect = [api_exception(500, "InternalError"), None]

        deleted = await purge_restore_wait_pods(k8s, ["restic-wait"])

        assert deleted == ["default/db-1"]


@pytest.mark.unit
@pytest.mark.kubernetes
class TestCertificateRenewer:

    def test_mark_for_renewal_replaces_issuing_condition(self):
        marked = mark_for_renewal(certificate("web", issuing="False"))
        conditions = marked["status"]["conditions"]

        assert len(conditions) == 1
        assert conditions[0]["status"] == "True"
        assert conditions[0]["reason"] == "ManuallyTriggered"
        assert conditions[0]["observedGeneration"] == 2

    @pytest.mark.asyncio
    async def test_renews_certificates_not_already_issuing(self, fake_k8s):
        fake_k8s.cluster_objects["certificates"] = [
            certificate("web"),
            certificate("api", issuing="True"),
            certificate("grpc", issuing="False"),
        ]

        renewed = await CertificateRenewer(fake_k8s, retry_interval=0).renew_all()

        assert renewed == 2
        assert [c[2] for c in fake_k8s.calls if c[0] == "replace_status"] == ["web", "grpc"]

    @pytest.mark.asyncio
    async def test_conflicts_restart_the_pass(self):
        k8s = AsyncMock()
        k8s.list_cluster_custom_objects.return_value = [certificate("web")]
        k8s.replace_custom_object_status.side_effect = [api_exception(409, "Conflict"), api_exception(409, "Conflict"), {}]

        assert await CertificateRenewer(k8s, retry_interval=0).renew_all() == 1
        assert k8s.replace_custom_object_status.await_count == 3

    @pytest.mark.asyncio
    async def test_other_errors_are_fatal(self):
        k8s = AsyncMock()
        k8s.list_cluster_custom_objects.side_effect = api_exception(403, "Forbidden")

        with pytest.raises(Exception) as exc_info:
            await CertificateRenewer(k8s, retry_interval=0).renew_all()

        assert exc_info.value.status == 403


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
