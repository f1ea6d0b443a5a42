"""
Temporal activities for health-gated CrateDB restarts.
"""

import asyncio
import time
from typing import Any, Dict, Optional, Tuple

from temporalio import activity
from temporalio.exceptions import ApplicationError

from .errors import ConfigurationError, RestartActionError
from .kube import CrateDBKubeClient, PodRestartAction
from .models import (
    DiscoveryInput,
    DiscoveryResult,
    HealthReadInput,
    HealthReadResult,
    MemberRestartInput,
    MemberRestartResult,
)
from .orchestrator import discover_plans
from .resolver import WorkloadResolver

HEARTBEAT_INTERVAL = 20.0


def _heartbeat(details: Dict[str, Any]) -> None:
    try:
        activity.heartbeat(details)
    except RuntimeError:
        # Not in activity context (e.g. when called directly from tests)
        pass


class CrateDBActivities:
    """Activities for CrateDB restart operations."""

    def __init__(self, max_concurrent_requests: int = 4):
        self.max_concurrent_requests = max_concurrent_requests
        self._clients: Dict[Tuple[Optional[str], Optional[str]], CrateDBKubeClient] = {}

    def _kube(self, kubeconfig: Optional[str] = None, context: Optional[str] = None) -> CrateDBKubeClient:
        """Get the client for a kubeconfig context, creating it on first use."""
        key = (kubeconfig, context)
        if key not in self._clients:
            try:
                self._clients[key] = CrateDBKubeClient.from_kubeconfig(
                    kubeconfig, context, max_concurrent_requests=self.max_concurrent_requests
                )
            except ConfigurationError as e:
                activity.logger.error(str(e))
                raise ApplicationError(str(e), type="ConfigurationError", non_retryable=True) from e
        return self._clients[key]

    @activity.defn
    async def discover_restart_plans(self, input_data: DiscoveryInput) -> DiscoveryResult:
        """
        Discover CrateDB clusters and build a restart plan for each.

        Args:
            input_data: Restart options carrying the cluster filter and resolver settings

        Returns:
            DiscoveryResult with one ClusterPlan per selected cluster
        """
        options = input_data.options
        activity.logger.info(f"Discovering CrateDB clusters: {options.cluster_names or 'all'}")

        kube = self._kube(options.kubeconfig, options.context)
        resolver = WorkloadResolver(owner_label=options.owner_label, name_prefix=options.name_prefix)
        clusters = await discover_plans(kube, resolver, options.cluster_names, options.skip_clusters)

        errors = [f"{c.cluster}: {c.error}" for c in clusters if c.error]
        for error in errors:
            activity.logger.warning(f"Discovery: {error}")
        activity.logger.info(f"Discovery completed: {len(clusters)} cluster(s), {len(errors)} without plan")
        return DiscoveryResult(clusters=clusters, errors=errors)

    @activity.defn
    async def read_cluster_health(self, input_data: HealthReadInput) -> HealthReadResult:
        """Read the health of one cluster once. Errors propagate to the caller's retry budget."""
        kube = self._kube(input_data.kubeconfig, input_data.context)
        status = await kube.read_health(input_data.cluster)
        activity.logger.debug(f"[{input_data.cluster}] health {status.value}")
        return HealthReadResult(cluster=input_data.cluster, status=status)

    @activity.defn
    async def restart_member(self, input_data: MemberRestartInput) -> MemberRestartResult:
        """
        Delete one member pod and wait until its replacement is Ready.

        Args:
            input_data: Cluster, member and recreate timeout

        Returns:
            MemberRestartResult with the old and new pod uid

        Raises:
            ApplicationError: Non-retryable, the pod was not restarted cleanly
        """
        cluster, member = input_data.cluster, input_data.member
        kube = self._kube(input_data.kubeconfig, input_data.context)
        action = PodRestartAction(kube, recreate_timeout=input_data.recreate_timeout)
        started = time.monotonic()

        activity.logger.info(f"[{cluster}] Restarting pod {member.pod_name}")
        _heartbeat({"status": "starting", "pod": member.pod_name})

        task = asyncio.ensure_future(action.replace(cluster, member))
        try:
            while True:
                done, _ = await asyncio.wait({task}, timeout=HEARTBEAT_INTERVAL)
                if done:
                    break
                _heartbeat({"status": "waiting_for_ready", "pod": member.pod_name})
            old_uid, new_uid = task.result()
        except RestartActionError as e:
            activity.logger.error(f"[{cluster}] {e}")
            raise ApplicationError(str(e), type="RestartActionError", non_retryable=True) from e
        finally:
            if not task.done():
                task.cancel()

        duration = time.monotonic() - started
        activity.logger.info(f"[{cluster}] Pod {member.pod_name} restarted in {duration:.2f}s")
        _heartbeat({"status": "completed", "pod": member.pod_name})
        return MemberRestartResult(
            pod_name=member.pod_name,
            namespace=cluster.namespace,
            duration=duration,
            old_uid=old_uid,
            new_uid=new_uid,
        )
