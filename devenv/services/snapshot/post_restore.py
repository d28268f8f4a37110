"""
Steps run after a restore finishes.

- Post-restore manifests: decoded from the hand-off record, rendered as a
  template with user and cluster-runtime context, then server-side applied
- Restore-wait pod purge: pods still carrying the backup system's restore
  init container would block on restart, so they are deleted
- Certificate renewal: every cert-manager Certificate is marked for
  re-issuance so it is signed by the local CA
"""

import getpass
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import yaml
from jinja2 import Environment, StrictUndefined, TemplateError
from kubernetes.client.rest import ApiException

from ...errors import CommandError, MalformedDocumentError, is_conflict
from ...utils.async_subprocess import run_async
from ...utils.backoff import backoff, retry_forever
from ..runtime import ClusterRuntime
from .stager import decompress_manifest

logger = logging.getLogger(__name__)

CERT_MANAGER_GROUP = "cert-manager.io"
CERT_MANAGER_VERSION = "v1"
CERTIFICATES_PLURAL = "certificates"

# Templates use [[ ]] so they can contain Helm/Go style {{ }} untouched
_template_env = Environment(
    variable_start_string="[[",
    variable_end_string="]]",
    block_start_string="[%",
    block_end_string="%]",
    comment_start_string="[#",
    comment_end_string="#]",
    undefined=StrictUndefined,
    keep_trailing_newline=True,
)


def render_manifest(template: str, context: Dict[str, Any]) -> str:
    try:
        return _template_env.from_string(template).render(**context)
    except TemplateError as e:
        raise MalformedDocumentError(f"failed to render post-restore manifests: {e}") from e


def parse_manifests(rendered: str) -> List[Dict[str, Any]]:
    """Split a multi-document YAML stream, dropping empty documents."""
    try:
        docs = list(yaml.safe_load_all(rendered))
    except yaml.YAMLError as e:
        raise MalformedDocumentError(f"failed to parse post-restore manifests: {e}") from e

    manifests = []
    for doc in docs:
        if not doc:
            continue
        if not isinstance(doc, dict) or "apiVersion" not in doc or "kind" not in doc:
            raise MalformedDocumentError(f"post-restore document is not a Kubernetes object: {doc!r}")
        manifests.append(doc)
    return manifests


async def get_user_email() -> str:
    result = await run_async(["git", "config", "user.email"], timeout=10)
    if not result.success:
        raise CommandError(
            f"failed to get user email via git: {result.stderr.strip()}",
            returncode=result.returncode,
            stderr=result.stderr,
        )
    return result.stdout.strip()


async def build_template_context(runtime: ClusterRuntime) -> Dict[str, Any]:
    return {
        "User": getpass.getuser(),
        "Email": await get_user_email(),
        "ClusterRuntime": runtime.get_config(),
    }


async def apply_post_restore(
    k8s,
    encoded: str,
    context: Dict[str, Any],
    max_attempts: int = 5,
    interval: float = 1.0,
) -> int:
    """
    Decode, render and apply the post-restore manifests.

    Each document is applied under its own retry budget; only optimistic
    concurrency conflicts are retried.

    Returns:
        Number of applied documents
    """
    template = decompress_manifest(encoded).decode("utf-8")
    manifests = parse_manifests(render_manifest(template, context))

    logger.info(f"[RESTORE] Applying {len(manifests)} post-restore manifest(s)")
    for manifest in manifests:
        name = f"{manifest['kind']}/{(manifest.get('metadata') or {}).get('name')}"
        await backoff(
            lambda m=manifest: k8s.apply_manifest(m),
            interval=interval,
            max_attempts=max_attempts,
            retry_on=is_conflict,
            description=f"apply {name}",
        )
    return len(manifests)


def _has_init_container(pod, names: Iterable[str]) -> bool:
    wanted = set(names)
    return any(c.name in wanted for c in (pod.spec.init_containers or []))


async def purge_restore_wait_pods(k8s, init_container_names: Iterable[str]) -> List[str]:
    """
    Delete every pod that runs one of the restore-wait init containers.

    Best effort: failures are logged and the remaining pods are still processed.

    Returns:
        "namespace/name" of the deleted pods
    """
    logger.info("[RESTORE] Cleaning up snapshot restore artifacts")
    names = list(init_container_names)
    try:
        pods = await k8s.list_all_pods()
    except ApiException as e:
        logger.warning(f"[RESTORE] Failed to list pods for cleanup: {e.reason}")
        return []

    deleted = []
    for pod in pods:
        if pod.spec is None or not _has_init_container(pod, names):
            continue
        key = f"{pod.metadata.namespace}/{pod.metadata.name}"
        try:
            await k8s.delete_pod(pod.metadata.name, pod.metadata.namespace)
            deleted.append(key)
        except ApiException as e:
            logger.warning(f"[RESTORE] Failed to delete pod {key}: {e.reason}")
    return deleted


def _issuing_condition(certificate: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    for condition in (certificate.get("status") or {}).get("conditions") or []:
        if condition.get("type") == "Issuing":
            return condition
    return None


def mark_for_renewal(certificate: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Return certificate with its Issuing condition set to True."""
    now = now or datetime.now(timezone.utc)
    status = dict(certificate.get("status") or {})
    conditions = [c for c in status.get("conditions") or [] if c.get("type") != "Issuing"]
    conditions.append({
        "type": "Issuing",
        "status": "True",
        "reason": "ManuallyTriggered",
        "message": "Certificate re-issuance manually triggered",
        "lastTransitionTime": now.strftime("%Y-%m-%dT%H:%M:%SZ"),
        "observedGeneration": (certificate.get("metadata") or {}).get("generation"),
    })
    status["conditions"] = conditions
    return {**certificate, "status": status}


class CertificateRenewer:
    """Triggers re-issuance of every cert-manager Certificate in the cluster."""

    def __init__(self, k8s, retry_interval: float = 5.0):
        self.k8s = k8s
        self.retry_interval = retry_interval

    async def renew_all_once(self) -> int:
        """
        One pass over all certificates. Certificates already issuing are skipped.

        Raises:
            ApiException: On any API error, conflicts included
        """
        renewed = 0
        for certificate in await self.k8s.list_cluster_custom_objects(
            CERT_MANAGER_GROUP, CERT_MANAGER_VERSION, CERTIFICATES_PLURAL
        ):
            condition = _issuing_condition(certificate)
            if condition is not None and condition.get("status") == "True":
                continue

            metadata = certificate["metadata"]
            await self.k8s.replace_custom_object_status(
                CERT_MANAGER_GROUP,
                CERT_MANAGER_VERSION,
                metadata["namespace"],
                CERTIFICATES_PLURAL,
                metadata["name"],
                mark_for_renewal(certificate),
            )
            logger.debug(f"[RESTORE] Manually triggered issuance of {metadata['namespace']}/{metadata['name']}")
            renewed += 1
        return renewed

    async def renew_all(self) -> int:
        """
        Renew every certificate, starting over on resource conflicts.

        Any other error is raised immediately.
        """
        logger.info("[RESTORE] Regenerating certificates with local CA")
        renewed = await retry_forever(
            self.renew_all_once,
            interval=self.retry_interval,
            retry_on=is_conflict,
            description="certificate regeneration",
        )
        logger.info(f"[RESTORE] ✅ Triggered re-issuance of {renewed} certificate(s)")
        return renewed
