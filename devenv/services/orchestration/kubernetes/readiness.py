"""
Cluster-wide pod readiness.

A pod counts as ready when it has Succeeded or carries a Ready condition with
status "True". Pods matching an exempt name prefix are ignored. When the wait
times out, the error carries a diagnostic per unready pod so the operator
sees why provisioning stalled, not just that it did.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from ....errors import PodsNotReadyError

logger = logging.getLogger(__name__)


@dataclass
class ContainerDiagnostic:
    name: str
    ready: bool
    restart_count: int = 0
    state: str = "unknown"
    reason: Optional[str] = None
    exit_code: Optional[int] = None

    def describe(self) -> str:
        parts = [f"container {self.name}: ready={self.ready} restarts={self.restart_count} state={self.state}"]
        if self.reason:
            parts.append(f"reason={self.reason}")
        if self.exit_code is not None:
            parts.append(f"exit_code={self.exit_code}")
        return " ".join(parts)


@dataclass
class PodDiagnostic:
    namespace: str
    name: str
    phase: Optional[str] = None
    message: Optional[str] = None
    containers: List[ContainerDiagnostic] = field(default_factory=list)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    def describe(self) -> str:
        line = f"pod {self.key}: phase={self.phase}"
        if self.message:
            line += f" message={self.message}"
        lines = [line] + [f"  {c.describe()}" for c in self.containers]
        return "\n".join(lines)


def is_pod_ready(pod: client.V1Pod) -> bool:
    """Check if a pod is ready (Ready condition is True)."""
    if pod.status is None or not pod.status.conditions:
        return False

    for condition in pod.status.conditions:
        if condition.type == "Ready":
            return condition.status == "True"
    return False


def _diagnose_container(status: client.V1ContainerStatus) -> ContainerDiagnostic:
    diagnostic = ContainerDiagnostic(
        name=status.name,
        ready=bool(status.ready),
        restart_count=status.restart_count or 0,
    )

    state = status.state
    if state is None:
        return diagnostic

    if state.waiting is not None:
        diagnostic.state = "waiting"
        diagnostic.reason = state.waiting.reason
    elif state.running is not None:
        diagnostic.state = "running"
    elif state.terminated is not None:
        diagnostic.state = "terminated"
        diagnostic.reason = state.terminated.reason
        diagnostic.exit_code = state.terminated.exit_code

    return diagnostic


def diagnose_pod(pod: client.V1Pod) -> PodDiagnostic:
    status = pod.status or client.V1PodStatus()
    return PodDiagnostic(
        namespace=pod.metadata.namespace,
        name=pod.metadata.name,
        phase=status.phase,
        message=status.message,
        containers=[_diagnose_container(cs) for cs in (status.container_statuses or [])],
    )


def find_unready_pods(pods: Iterable[client.V1Pod], exempt_prefixes: Iterable[str] = ()) -> List[PodDiagnostic]:
    """Return diagnostics for every pod that is neither ready, succeeded nor exempt."""
    exempt = tuple(exempt_prefixes)
    unready = []

    for pod in pods:
        # Completed pods never become ready
        if pod.status is not None and pod.status.phase == "Succeeded":
            continue

        if exempt and pod.metadata.name.startswith(exempt):
            continue

        if is_pod_ready(pod):
            continue

        unready.append(diagnose_pod(pod))

    return unready


async def wait_for_all_pods_ready(
    k8s,
    timeout: float = 600,
    interval: float = 30,
    exempt_prefixes: Iterable[str] = ()
) -> None:
    """
    Poll every pod in the cluster until all are ready.

    Args:
        k8s: KubernetesClient
        timeout: Seconds before giving up
        interval: Seconds between polls
        exempt_prefixes: Pod name prefixes to ignore

    Raises:
        PodsNotReadyError: On timeout, with a diagnostic per unready pod
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    exempt = list(exempt_prefixes)
    unready: List[PodDiagnostic] = []
    list_error: Optional[ApiException] = None

    while True:
        try:
            pods = await k8s.list_all_pods()
            list_error = None
            unready = find_unready_pods(pods, exempt)
            if not unready:
                logger.info("[READINESS] ✅ All pods were ready")
                return
            logger.info(
                f"[READINESS] Waiting for {len(unready)} pod(s) to be ready: "
                f"{', '.join(d.key for d in unready)}"
            )
        except ApiException as e:
            list_error = e
            logger.warning(f"[READINESS] Failed to list pods: {e.reason}")

        remaining = deadline - loop.time()
        if remaining <= 0:
            break
        await asyncio.sleep(min(interval, remaining))

    logger.error(f"[READINESS] Timed out waiting for pods to be ready after {timeout:.0f}s")
    for diagnostic in unready:
        logger.error(f"[READINESS] {diagnostic.describe()}")

    if list_error is not None:
        raise PodsNotReadyError(
            f"timed out after {timeout:.0f}s, listing pods failed: {list_error.reason}",
            diagnostics=unready,
        ) from list_error

    raise PodsNotReadyError(
        f"timed out after {timeout:.0f}s waiting for {len(unready)} pod(s) to be ready",
        diagnostics=unready,
    )
