"""
Kubernetes Client for the Developer Environment

Async facade over the official Kubernetes client used by snapshot generation,
staging and restore:
- Typed API: pods, config maps, jobs
- Custom objects: backup-system resources, cert-manager certificates
- Dynamic client: server-side apply of arbitrary manifests
- Watch: name-filtered change subscriptions delivered to the event loop

Blocking client calls run in worker threads via asyncio.to_thread.
"""

from kubernetes import client, config, dynamic, watch
from kubernetes.client.rest import ApiException
import logging
import asyncio
import functools
import threading
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

FIELD_MANAGER = "devenv"


class WatchSubscription:
    """
    A change subscription on a list endpoint.

    The underlying watch stream blocks, so it runs on a daemon thread that
    pushes every event into an asyncio.Queue owned by the event loop. The
    subscription is consumed with ``async for`` inside ``async with``;
    leaving the block shuts down the open response so the thread stops
    without waiting for another event, then joins it.

    Iteration ends when the server closes the stream. Errors raised by the
    stream are re-raised to the consumer.
    """

    _CLOSED = object()
    JOIN_TIMEOUT_SECONDS = 5

    def __init__(self, list_fn: Callable[..., Any], **kwargs):
        self._list_fn = list_fn
        self._kwargs = kwargs
        self._watch = watch.Watch()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._thread: Optional[threading.Thread] = None
        self._response = None
        self._closing = False

    async def __aenter__(self) -> "WatchSubscription":
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._thread = threading.Thread(target=self._run, name="k8s-watch", daemon=True)
        self._thread.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self.close()
        if self._thread is not None:
            await asyncio.to_thread(self._thread.join, self.JOIN_TIMEOUT_SECONDS)
            if self._thread.is_alive():
                logger.warning("Watch thread did not stop after the subscription closed")
        return False

    def close(self) -> None:
        self._closing = True
        self._watch.stop()
        response = self._response
        if response is not None:
            # Unblocks a read waiting on an idle connection
            response.shutdown()

    def _publish(self, item: Any) -> None:
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)
        except RuntimeError:
            # Event loop already closed, nobody is listening
            pass

    def _run(self) -> None:
        # Watch.stream reads the list function's docstring, keep it visible
        @functools.wraps(self._list_fn)
        def open_stream(*args, **kwargs):
            self._response = self._list_fn(*args, **kwargs)
            if self._closing:
                self._response.shutdown()
            return self._response

        try:
            for event in self._watch.stream(open_stream, **self._kwargs):
                self._publish(event)
        except Exception as e:
            if not self._closing:
                self._publish(e)
        finally:
            self._publish(self._CLOSED)

    def __aiter__(self) -> "WatchSubscription":
        return self

    async def __anext__(self) -> Dict[str, Any]:
        item = await self._queue.get()
        if item is self._CLOSED:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item


class KubernetesClient:
    """
    Manages the Kubernetes resources the snapshot lifecycle touches.
    """

    def __init__(self, api_client: Optional[client.ApiClient] = None, kubeconfig: Optional[str] = None):
        """
        Initialize Kubernetes client.

        Args:
            api_client: Preconfigured ApiClient (takes precedence)
            kubeconfig: Path to a kubeconfig file, e.g. from a cluster runtime
        """
        if api_client is None:
            if kubeconfig:
                api_client = config.new_client_from_config(config_file=kubeconfig)
                logger.info(f"Loaded kubeconfig from {kubeconfig}")
            else:
                try:
                    # Try in-cluster config first (staging job)
                    config.load_incluster_config()
                    logger.info("Loaded in-cluster Kubernetes configuration")
                except config.ConfigException:
                    try:
                        # Fall back to kubeconfig (developer machine)
                        config.load_kube_config()
                        logger.info("Loaded kubeconfig for development")
                    except config.ConfigException as e:
                        logger.error(f"Failed to load Kubernetes config: {e}")
                        raise RuntimeError("Cannot load Kubernetes configuration") from e
                api_client = client.ApiClient()

        self.api_client = api_client
        self.core_v1 = client.CoreV1Api(api_client)
        self.batch_v1 = client.BatchV1Api(api_client)
        self.custom_objects = client.CustomObjectsApi(api_client)
        self._dynamic: Optional[dynamic.DynamicClient] = None

    # =========================================================================
    # PODS
    # =========================================================================

    async def list_all_pods(self) -> List[client.V1Pod]:
        """List pods across all namespaces."""
        pods = await asyncio.to_thread(self.core_v1.list_pod_for_all_namespaces)
        return list(pods.items)

    async def list_pods(self, namespace: str, label_selector: Optional[str] = None) -> List[client.V1Pod]:
        pods = await asyncio.to_thread(
            self.core_v1.list_namespaced_pod,
            namespace=namespace,
            label_selector=label_selector
        )
        return list(pods.items)

    async def delete_pod(self, name: str, namespace: str) -> None:
        try:
            await asyncio.to_thread(
                self.core_v1.delete_namespaced_pod,
                name=name,
                namespace=namespace
            )
            logger.info(f"[K8S] Deleted pod: {namespace}/{name}")
        except ApiException as e:
            if e.status != 404:
                raise

    async def read_pod_log(self, name: str, namespace: str) -> str:
        return await asyncio.to_thread(
            self.core_v1.read_namespaced_pod_log,
            name=name,
            namespace=namespace
        )

    # =========================================================================
    # CONFIG MAPS
    # =========================================================================

    async def read_config_map(self, name: str, namespace: str) -> Optional[client.V1ConfigMap]:
        """
        Read a config map.

        Returns:
            The config map, or None if it does not exist
        """
        try:
            return await asyncio.to_thread(
                self.core_v1.read_namespaced_config_map,
                name=name,
                namespace=namespace
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    async def create_or_replace_config_map(
        self,
        name: str,
        namespace: str,
        data: Dict[str, str],
        labels: Optional[Dict[str, str]] = None
    ) -> None:
        """Create a config map, replacing its data if it already exists."""
        body = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace, labels=labels),
            data=data
        )

        try:
            await asyncio.to_thread(
                self.core_v1.create_namespaced_config_map,
                namespace=namespace,
                body=body
            )
            logger.info(f"[K8S] ✅ Created config map: {namespace}/{name}")
        except ApiException as e:
            if e.status != 409:
                raise
            await asyncio.to_thread(
                self.core_v1.replace_namespaced_config_map,
                name=name,
                namespace=namespace,
                body=body
            )
            logger.info(f"[K8S] ✅ Replaced config map: {namespace}/{name}")

    async def delete_config_map(self, name: str, namespace: str) -> None:
        try:
            await asyncio.to_thread(
                self.core_v1.delete_namespaced_config_map,
                name=name,
                namespace=namespace
            )
            logger.info(f"[K8S] Deleted config map: {namespace}/{name}")
        except ApiException as e:
            if e.status != 404:
                raise

    # =========================================================================
    # JOBS
    # =========================================================================

    async def create_job(self, namespace: str, body: Any) -> client.V1Job:
        job = await asyncio.to_thread(
            self.batch_v1.create_namespaced_job,
            namespace=namespace,
            body=body
        )
        logger.info(f"[K8S] ✅ Created job: {namespace}/{job.metadata.name}")
        return job

    async def read_job(self, name: str, namespace: str) -> client.V1Job:
        return await asyncio.to_thread(
            self.batch_v1.read_namespaced_job_status,
            name=name,
            namespace=namespace
        )

    async def get_job_logs(self, name: str, namespace: str) -> str:
        """Collect the logs of every pod created by a job."""
        pods = await self.list_pods(namespace, label_selector=f"job-name={name}")
        logs = []
        for pod in pods:
            try:
                logs.append(await self.read_pod_log(pod.metadata.name, namespace))
            except ApiException as e:
                logger.warning(f"[K8S] Could not read logs of {pod.metadata.name}: {e.reason}")
        return "\n".join(logs)

    # =========================================================================
    # CUSTOM OBJECTS
    # =========================================================================

    async def get_custom_object(
        self, group: str, version: str, namespace: str, plural: str, name: str
    ) -> Optional[Dict[str, Any]]:
        """
        Get a namespaced custom object.

        Returns:
            The object, or None if it does not exist
        """
        try:
            return await asyncio.to_thread(
                self.custom_objects.get_namespaced_custom_object,
                group=group,
                version=version,
                namespace=namespace,
                plural=plural,
                name=name
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    async def create_custom_object(
        self, group: str, version: str, namespace: str, plural: str, body: Dict[str, Any]
    ) -> Dict[str, Any]:
        return await asyncio.to_thread(
            self.custom_objects.create_namespaced_custom_object,
            group=group,
            version=version,
            namespace=namespace,
            plural=plural,
            body=body
        )

    async def delete_custom_object(
        self, group: str, version: str, namespace: str, plural: str, name: str
    ) -> None:
        try:
            await asyncio.to_thread(
                self.custom_objects.delete_namespaced_custom_object,
                group=group,
                version=version,
                namespace=namespace,
                plural=plural,
                name=name
            )
        except ApiException as e:
            if e.status != 404:
                raise

    async def list_cluster_custom_objects(self, group: str, version: str, plural: str) -> List[Dict[str, Any]]:
        """List custom objects across all namespaces."""
        result = await asyncio.to_thread(
            self.custom_objects.list_cluster_custom_object,
            group=group,
            version=version,
            plural=plural
        )
        return result.get("items", [])

    async def replace_custom_object_status(
        self, group: str, version: str, namespace: str, plural: str, name: str, body: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Replace the status subresource. Fails with 409 if resourceVersion is stale."""
        return await asyncio.to_thread(
            self.custom_objects.replace_namespaced_custom_object_status,
            group=group,
            version=version,
            namespace=namespace,
            plural=plural,
            name=name,
            body=body
        )

    def watch_custom_objects(
        self,
        group: str,
        version: str,
        namespace: str,
        plural: str,
        name: Optional[str] = None,
        resource_version: Optional[str] = None
    ) -> WatchSubscription:
        """
        Subscribe to changes of namespaced custom objects.

        Args:
            name: Only deliver events for the object with this name
            resource_version: Deliver events that happened after this version
        """
        kwargs: Dict[str, Any] = {
            "group": group,
            "version": version,
            "namespace": namespace,
            "plural": plural,
        }
        if name:
            kwargs["field_selector"] = f"metadata.name={name}"
        if resource_version:
            kwargs["resource_version"] = resource_version

        return WatchSubscription(self.custom_objects.list_namespaced_custom_object, **kwargs)

    # =========================================================================
    # DYNAMIC APPLY
    # =========================================================================

    def _get_dynamic_client(self) -> dynamic.DynamicClient:
        # Discovery runs on construction, so build it only when needed
        if self._dynamic is None:
            self._dynamic = dynamic.DynamicClient(self.api_client)
        return self._dynamic

    async def apply_manifest(self, manifest: Dict[str, Any]) -> None:
        """
        Server-side apply a single manifest.

        Raises:
            ApiException: On API errors (409 conflicts included)
        """
        def _apply():
            dyn = self._get_dynamic_client()
            resource = dyn.resources.get(api_version=manifest["apiVersion"], kind=manifest["kind"])
            metadata = manifest.get("metadata", {})
            return dyn.server_side_apply(
                resource,
                body=manifest,
                name=metadata.get("name"),
                namespace=metadata.get("namespace"),
                field_manager=FIELD_MANAGER,
            )

        await asyncio.to_thread(_apply)
        logger.info(f"[K8S] Applied {manifest['kind']} {manifest.get('metadata', {}).get('name')}")


# Global instance - lazily initialized
_k8s_client_instance: Optional[KubernetesClient] = None


def get_k8s_client() -> KubernetesClient:
    """Get or create the global Kubernetes client instance."""
    global _k8s_client_instance
    if _k8s_client_instance is None:
        _k8s_client_instance = KubernetesClient()
    return _k8s_client_instance
