"""
Kubernetes access for CrateDB clusters: inventory, workloads, health reads and pod restarts.
"""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

from kubernetes import client
from kubernetes.client.exceptions import ApiException
from loguru import logger

from .errors import ConfigurationError, RestartActionError
from .health import TRANSIENT_ERRORS, extract_health_status, nested_get
from .kubeconfig import KubeConfigHandler
from .models import ClusterIdentity, CrateDBResource, HealthStatus, OwnerReference, Workload, WorkloadMember

CRATEDB_GROUP = "cloud.crate.io"
CRATEDB_VERSION = "v1"
CRATEDB_PLURAL = "cratedbs"


def cratedb_from_item(item: Dict[str, Any]) -> CrateDBResource:
    """Build an inventory entry from a raw cratedbs item without trusting its shape."""
    name = nested_get(item, "metadata", "name")
    name = name if isinstance(name, str) else "unknown"
    namespace = nested_get(item, "metadata", "namespace")
    cluster_name = nested_get(item, "spec", "cluster", "name")
    return CrateDBResource(
        name=name,
        namespace=namespace if isinstance(namespace, str) else "unknown",
        cluster_name=cluster_name if isinstance(cluster_name, str) and cluster_name else name,
        health=extract_health_status(item),
    )


def workload_from_statefulset(sts: client.V1StatefulSet) -> Workload:
    """Snapshot the fields of a StatefulSet the planner needs."""
    metadata = sts.metadata
    owners = [
        OwnerReference(kind=ref.kind, name=ref.name)
        for ref in (metadata.owner_references or [])
        if ref.kind and ref.name
    ]
    replicas = sts.spec.replicas if sts.spec is not None and sts.spec.replicas is not None else 0
    return Workload(
        name=metadata.name,
        namespace=metadata.namespace,
        replicas=replicas,
        labels=dict(metadata.labels or {}),
        owner_references=owners,
    )


def is_pod_ready(pod: client.V1Pod) -> bool:
    if pod.status is None or pod.status.phase != "Running":
        return False
    for condition in pod.status.conditions or []:
        if condition.type == "Ready":
            return condition.status == "True"
    return False


class CrateDBKubeClient:
    """
    Async facade over the blocking kubernetes client.

    Every API call runs in a worker thread and holds one slot of a semaphore,
    which caps the number of requests in flight against the API server. Each
    request is bounded by request_timeout so a hung connection cannot block a
    health gate or a restart forever.
    """

    def __init__(
        self,
        api_client: Optional[client.ApiClient] = None,
        max_concurrent_requests: int = 4,
        request_timeout: float = 30.0,
    ):
        self.api_client = api_client or client.ApiClient()
        self.apps_v1 = client.AppsV1Api(self.api_client)
        self.core_v1 = client.CoreV1Api(self.api_client)
        self.custom_api = client.CustomObjectsApi(self.api_client)
        self.max_concurrent_requests = max_concurrent_requests
        self.request_timeout = request_timeout
        self._limiter: Optional[asyncio.Semaphore] = None

    @classmethod
    def from_kubeconfig(
        cls, kubeconfig: Optional[str] = None, context: Optional[str] = None, max_concurrent_requests: int = 4
    ) -> "CrateDBKubeClient":
        """
        Create a client for a kubeconfig context.

        Raises:
            ConfigurationError: Credentials cannot be loaded or the client cannot be built
        """
        KubeConfigHandler(kubeconfig).load_context(context)
        try:
            return cls(client.ApiClient(), max_concurrent_requests=max_concurrent_requests)
        except Exception as e:
            raise ConfigurationError(f"Failed to initialize Kubernetes client: {e}") from e

    async def _call(self, func, *args, **kwargs):
        kwargs.setdefault("_request_timeout", self.request_timeout)
        if self._limiter is None:
            self._limiter = asyncio.Semaphore(self.max_concurrent_requests)
        async with self._limiter:
            return await asyncio.to_thread(func, *args, **kwargs)

    async def list_clusters(self) -> List[CrateDBResource]:
        """List CrateDB resources in all namespaces."""
        response = await self._call(
            self.custom_api.list_cluster_custom_object,
            group=CRATEDB_GROUP,
            version=CRATEDB_VERSION,
            plural=CRATEDB_PLURAL,
        )
        items = response.get("items", []) if isinstance(response, dict) else []
        return [cratedb_from_item(item) for item in items if isinstance(item, dict)]

    async def list_workloads(self, namespace: str) -> List[Workload]:
        """List StatefulSets in a namespace."""
        response = await self._call(self.apps_v1.list_namespaced_stateful_set, namespace=namespace)
        return [workload_from_statefulset(sts) for sts in response.items]

    async def read_health(self, cluster: ClusterIdentity) -> HealthStatus:
        """Read status.crateDBStatus.health of one CrateDB resource."""
        resource = await self._call(
            self.custom_api.get_namespaced_custom_object,
            group=CRATEDB_GROUP,
            version=CRATEDB_VERSION,
            namespace=cluster.namespace,
            plural=CRATEDB_PLURAL,
            name=cluster.name,
        )
        return extract_health_status(resource)

    async def read_pod(self, name: str, namespace: str) -> Optional[client.V1Pod]:
        """Read a pod, None if it does not exist (yet)."""
        try:
            return await self._call(self.core_v1.read_namespaced_pod, name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    async def delete_pod(self, name: str, namespace: str) -> None:
        await self._call(self.core_v1.delete_namespaced_pod, name=name, namespace=namespace)


class KubeHealthSource:
    """HealthSource reading the CrateDB resource through the API server."""

    def __init__(self, kube: CrateDBKubeClient):
        self.kube = kube

    async def read_health(self, cluster: ClusterIdentity) -> HealthStatus:
        return await self.kube.read_health(cluster)


class PodRestartAction:
    """Deletes a member pod and waits for the StatefulSet controller to bring it back Ready."""

    def __init__(self, kube: CrateDBKubeClient, recreate_timeout: float = 600.0, poll_interval: float = 5.0):
        self.kube = kube
        self.recreate_timeout = recreate_timeout
        self.poll_interval = poll_interval

    async def restart(self, cluster: ClusterIdentity, member: WorkloadMember) -> None:
        await self.replace(cluster, member)

    async def replace(self, cluster: ClusterIdentity, member: WorkloadMember) -> Tuple[Optional[str], str]:
        """
        Delete the pod and wait for its replacement.

        Returns:
            uid of the deleted pod (None if it was already gone) and uid of the replacement

        Raises:
            RestartActionError: Deleting failed or the pod did not come back in time
        """
        pod_name = member.pod_name
        try:
            pod = await self.kube.read_pod(pod_name, cluster.namespace)
            old_uid = pod.metadata.uid if pod is not None else None
            if pod is None:
                logger.warning(f"[{cluster}] Pod {pod_name} does not exist, waiting for it to be created")
            else:
                logger.info(f"[{cluster}] Deleting pod {pod_name} (uid={old_uid})")
                await self.kube.delete_pod(pod_name, cluster.namespace)
            new_uid = await asyncio.wait_for(
                self._wait_for_replacement(cluster, pod_name, old_uid), timeout=self.recreate_timeout
            )
            return old_uid, new_uid
        except asyncio.TimeoutError as e:
            raise RestartActionError(
                pod_name, f"Pod {pod_name} was not recreated and Ready within {self.recreate_timeout:.0f}s"
            ) from e
        except ApiException as e:
            raise RestartActionError(pod_name, f"Error restarting pod {pod_name}: {e.status} {e.reason}") from e
        except TRANSIENT_ERRORS as e:
            raise RestartActionError(pod_name, f"Error restarting pod {pod_name}: {e}") from e

    async def _wait_for_replacement(self, cluster: ClusterIdentity, pod_name: str, old_uid: Optional[str]) -> str:
        while True:
            try:
                pod = await self.kube.read_pod(pod_name, cluster.namespace)
            except TRANSIENT_ERRORS as e:
                logger.warning(f"[{cluster}] Could not read pod {pod_name}, retrying: {e}")
                await asyncio.sleep(self.poll_interval)
                continue

            if pod is None:
                logger.debug(f"[{cluster}] Pod {pod_name} not recreated yet")
            elif pod.metadata.uid == old_uid:
                logger.debug(f"[{cluster}] Pod {pod_name} still terminating")
            elif pod.status is not None and pod.status.phase == "Failed":
                raise RestartActionError(pod_name, f"Pod {pod_name} is in terminal state: Failed")
            elif is_pod_ready(pod):
                logger.info(f"[{cluster}] Pod {pod_name} recreated and Ready (uid={pod.metadata.uid})")
                return pod.metadata.uid
            else:
                phase = pod.status.phase if pod.status else "Unknown"
                logger.debug(f"[{cluster}] Pod {pod_name} is {phase}, waiting for Ready")
            await asyncio.sleep(self.poll_interval)
