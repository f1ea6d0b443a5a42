"""
In-memory collaborators for restart tests.
"""

import asyncio
from typing import Dict, Iterable, List, Optional

from rollgate.errors import RestartActionError
from rollgate.models import (
    ClusterIdentity,
    CrateDBResource,
    HealthStatus,
    PollPolicy,
    RestartPlan,
    Workload,
    WorkloadMember,
)


def fast_policy(**kwargs) -> PollPolicy:
    """A policy that polls and backs off without real delays."""
    kwargs.setdefault("interval", 0.01)
    kwargs.setdefault("backoff_initial", 0)
    return PollPolicy(**kwargs)


def make_plan(cluster: ClusterIdentity, workload: str = "crate-data-hot-x", replicas: int = 3) -> RestartPlan:
    return RestartPlan.for_workload(cluster, Workload(name=workload, namespace=cluster.namespace, replicas=replicas))


class FakeHealthSource:
    """
    Replays scripted health readings per cluster name.

    Scripted exceptions are raised instead of returned. Once a script is used
    up the default status is returned.
    """

    def __init__(self, script: Optional[Dict[str, list]] = None, default=HealthStatus.GREEN, events=None):
        self.script = {name: list(values) for name, values in (script or {}).items()}
        self.default = default
        self.events = events if events is not None else []
        self.reads: List[ClusterIdentity] = []

    async def read_health(self, cluster: ClusterIdentity) -> HealthStatus:
        self.reads.append(cluster)
        self.events.append(("health", cluster.name))
        queue = self.script.get(cluster.name)
        value = queue.pop(0) if queue else self.default
        if isinstance(value, BaseException):
            raise value
        return value


class RecordingAction:
    """Records restarts; pods in fail_on raise RestartActionError."""

    def __init__(self, events=None, fail_on: Iterable[str] = (), delay: float = 0):
        self.events = events if events is not None else []
        self.fail_on = set(fail_on)
        self.delay = delay
        self.restarted: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def restart(self, cluster: ClusterIdentity, member: WorkloadMember) -> None:
        self.events.append(("restart", member.pod_name))
        self.restarted.append(member.pod_name)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if member.pod_name in self.fail_on:
                raise RestartActionError(member.pod_name, f"Error restarting pod {member.pod_name}")
        finally:
            self.in_flight -= 1


class FakeInventory:
    """Static CrateDB resources and workloads."""

    def __init__(self, clusters: List[CrateDBResource], workloads: List[Workload], failing_namespaces=()):
        self.clusters = clusters
        self.workloads = workloads
        self.failing_namespaces = set(failing_namespaces)
        self.workload_queries: List[str] = []

    async def list_clusters(self) -> List[CrateDBResource]:
        return list(self.clusters)

    async def list_workloads(self, namespace: str) -> List[Workload]:
        self.workload_queries.append(namespace)
        if namespace in self.failing_namespaces:
            raise OSError(f"connection refused listing {namespace}")
        return [w for w in self.workloads if w.namespace == namespace]
