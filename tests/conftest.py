"""
Test configuration and fixtures for pytest.

Fixtures include in-memory stand-ins for the collaborators the snapshot
lifecycle talks to: an object store bucket, the Kubernetes API (config maps,
custom objects with scripted watch events, pods, jobs) and a cluster runtime.
"""

import base64
import copy
import hashlib
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from devenv.errors import ObjectIntegrityError, ObjectNotFoundError
from devenv.services.object_store import ObjectInfo
from devenv.services.runtime import ClusterRuntime, RuntimeConfig, RuntimeStatus, RuntimeType


def pytest_configure(config):
    """
    Pytest hook called before test collection.
    Sets up test environment variables and registers custom markers.
    """
    os.environ.setdefault("ALERTS_ENABLED", "false")

    from devenv.config import get_settings
    get_settings.cache_clear()

    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "kubernetes: mark test as exercising Kubernetes API shapes")


def md5_b64(data: bytes) -> str:
    return base64.b64encode(hashlib.md5(data).digest()).decode("ascii")


def api_exception(status: int, reason: Optional[str] = None) -> ApiException:
    """ApiException carrying a Kubernetes Status body."""
    exc = ApiException(status=status, reason=reason or "Error")
    exc.body = '{"kind": "Status", "reason": "%s"}' % (reason or "")
    return exc


# =============================================================================
# OBJECT STORE
# =============================================================================

class FakeObjectStore:
    """In-memory bucket with the ObjectStore interface."""

    def __init__(self, bucket: str = "bucket", objects: Optional[Dict[str, bytes]] = None):
        self.bucket = bucket
        self.objects: Dict[str, bytes] = dict(objects or {})
        self.modified = datetime(2024, 3, 1, 10, 22, 5, tzinfo=timezone.utc)
        self.calls: List[Tuple[str, str]] = []

    async def get_object(self, key: str) -> bytes:
        self.calls.append(("get", key))
        if key not in self.objects:
            raise ObjectNotFoundError(self.bucket, key)
        return self.objects[key]

    async def download_object(self, key, fileobj, on_chunk=None) -> int:
        self.calls.append(("download", key))
        if key not in self.objects:
            raise ObjectNotFoundError(self.bucket, key)
        data = self.objects[key]
        if on_chunk:
            on_chunk(data)
        fileobj.write(data)
        return len(data)

    async def put_object(self, key: str, body, content_md5: Optional[str] = None) -> None:
        self.calls.append(("put", key))
        data = body if isinstance(body, bytes) else body.read()
        if content_md5 is not None and md5_b64(data) != content_md5:
            raise ObjectIntegrityError(f"object store rejected '{key}'")
        self.objects[key] = data

    async def list_objects(self, prefix: str = "") -> List[ObjectInfo]:
        self.calls.append(("list", prefix))
        return [
            ObjectInfo(key=k, size=len(v), last_modified=self.modified)
            for k, v in sorted(self.objects.items())
            if k.startswith(prefix)
        ]

    async def remove_object(self, key: str) -> None:
        self.calls.append(("remove", key))
        self.objects.pop(key, None)

    async def object_exists(self, key: str) -> bool:
        return key in self.objects

    def mutations(self) -> List[Tuple[str, str]]:
        return [c for c in self.calls if c[0] in ("put", "remove")]


# =============================================================================
# KUBERNETES
# =============================================================================

class FakeSubscription:
    """Scripted watch subscription."""

    def __init__(self, events: List[Dict[str, Any]], name: Optional[str]):
        self._events = [e for e in events if name is None or (e.get("object") or {}).get("metadata", {}).get("name") == name]
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.closed = True
        return False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._events:
            raise StopAsyncIteration
        return self._events.pop(0)


class FakeKubernetes:
    """In-memory subset of KubernetesClient."""

    def __init__(self):
        self.config_maps: Dict[Tuple[str, str], Dict[str, str]] = {}
        self.custom_objects: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self.cluster_objects: Dict[str, List[Dict[str, Any]]] = {}
        self.watch_events: Dict[str, List[Dict[str, Any]]] = {}
        self.on_create: Dict[str, Callable[[Dict[str, Any]], Any]] = {}
        self.pods: List[client.V1Pod] = []
        self.jobs: Dict[str, client.V1Job] = {}
        # Status given to created Jobs; on_job simulates the Job running
        self.job_status = client.V1JobStatus(succeeded=1)
        self.on_job: Optional[Callable[[client.V1Job], Any]] = None
        self.applied: List[Dict[str, Any]] = []
        self.calls: List[Tuple[str, ...]] = []
        self.subscriptions: List[FakeSubscription] = []
        self._resource_version = 100

    # Pods
    async def list_all_pods(self):
        return list(self.pods)

    async def delete_pod(self, name, namespace):
        self.calls.append(("delete_pod", namespace, name))
        self.pods = [p for p in self.pods if not (p.metadata.name == name and p.metadata.namespace == namespace)]

    # Config maps
    async def read_config_map(self, name, namespace):
        data = self.config_maps.get((namespace, name))
        if data is None:
            return None
        return client.V1ConfigMap(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace),
            data=dict(data),
        )

    async def create_or_replace_config_map(self, name, namespace, data, labels=None):
        self.calls.append(("write_config_map", namespace, name))
        self.config_maps[(namespace, name)] = dict(data)

    async def delete_config_map(self, name, namespace):
        self.calls.append(("delete_config_map", namespace, name))
        self.config_maps.pop((namespace, name), None)

    # Jobs
    async def create_job(self, namespace, body):
        name = "snapshot-stage-abcde"
        body.metadata.name = name
        self.jobs[name] = body
        self.calls.append(("create_job", namespace, name))
        if self.on_job is not None:
            await self.on_job(body)
        body.status = self.job_status
        return body

    async def read_job(self, name, namespace):
        return self.jobs[name]

    async def get_job_logs(self, name, namespace):
        return "stager logs"

    # Custom objects
    async def get_custom_object(self, group, version, namespace, plural, name):
        obj = self.custom_objects.get((plural, namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    async def create_custom_object(self, group, version, namespace, plural, body):
        name = body["metadata"]["name"]
        self.calls.append(("create", plural, name))
        if (plural, namespace, name) in self.custom_objects:
            raise api_exception(409, "AlreadyExists")
        self._resource_version += 1
        obj = copy.deepcopy(body)
        obj["metadata"]["resourceVersion"] = str(self._resource_version)
        self.custom_objects[(plural, namespace, name)] = obj
        hook = self.on_create.get(plural)
        if hook is not None:
            result = hook(obj)
            if hasattr(result, "__await__"):
                await result
        return copy.deepcopy(obj)

    async def delete_custom_object(self, group, version, namespace, plural, name):
        self.calls.append(("delete", plural, name))
        self.custom_objects.pop((plural, namespace, name), None)

    async def list_cluster_custom_objects(self, group, version, plural):
        return copy.deepcopy(self.cluster_objects.get(plural, []))

    async def replace_custom_object_status(self, group, version, namespace, plural, name, body):
        self.calls.append(("replace_status", plural, name))
        return body

    def watch_custom_objects(self, group, version, namespace, plural, name=None, resource_version=None):
        self.calls.append(("watch", plural, name, resource_version))
        subscription = FakeSubscription(list(self.watch_events.get(plural, [])), name)
        self.subscriptions.append(subscription)
        return subscription

    # Dynamic
    async def apply_manifest(self, manifest):
        self.applied.append(manifest)

    def created(self, plural: str) -> List[str]:
        return [c[2] for c in self.calls if c[0] == "create" and c[1] == plural]


def resource_event(event_type: str, name: str, phase: Optional[str]) -> Dict[str, Any]:
    obj: Dict[str, Any] = {"metadata": {"name": name}}
    if phase is not None:
        obj["status"] = {"phase": phase}
    return {"type": event_type, "object": obj}


def make_pod(
    name: str,
    namespace: str = "default",
    ready: bool = True,
    phase: str = "Running",
    init_containers: Optional[List[str]] = None,
) -> client.V1Pod:
    return client.V1Pod(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace),
        spec=client.V1PodSpec(
            containers=[client.V1Container(name="main", image="busybox")],
            init_containers=[client.V1Container(name=n, image="busybox") for n in (init_containers or [])] or None,
        ),
        status=client.V1PodStatus(
            phase=phase,
            conditions=[client.V1PodCondition(type="Ready", status="True" if ready else "False")],
        ),
    )


# =============================================================================
# RUNTIME
# =============================================================================

class FakeRuntime(ClusterRuntime):
    def __init__(self, name: str = "kind"):
        self.name = name
        self.calls: List[str] = []
        self.state = RuntimeStatus.UNPROVISIONED

    def get_config(self) -> RuntimeConfig:
        return RuntimeConfig(name=self.name, type=RuntimeType.LOCAL, cluster_name="dev-environment")

    async def status(self) -> RuntimeStatus:
        return self.state

    async def pre_create(self) -> None:
        self.calls.append("pre_create")

    async def create(self) -> None:
        self.calls.append("create")
        self.state = RuntimeStatus.RUNNING

    async def destroy(self) -> None:
        self.calls.append("destroy")
        self.state = RuntimeStatus.UNPROVISIONED

    async def get_kube_config(self) -> str:
        return "/tmp/kubeconfig"


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def settings():
    """Settings with retry and poll intervals shrunk for tests."""
    from devenv.config import Settings
    return Settings(
        alerts_enabled=False,
        readiness_poll_interval_seconds=0.01,
        generation_readiness_timeout_seconds=1,
        provision_readiness_timeout_seconds=1,
        restore_delete_poll_interval_seconds=0.01,
        stager_poll_interval_seconds=0.01,
        post_restore_retry_interval_seconds=0,
        certificate_renew_retry_seconds=0,
        backup_storage_verify_interval_seconds=0,
        snapshot_access_key_id="AKIATEST",
        snapshot_secret_access_key="secret",
    )


@pytest.fixture
def fake_k8s():
    return FakeKubernetes()


@pytest.fixture
def fake_runtime():
    return FakeRuntime()


@pytest.fixture
def source_store():
    return FakeObjectStore("devenv-snapshots")


@pytest.fixture
def dest_store():
    return FakeObjectStore("velero-restore")
