"""
Top-level driver for a maintenance run over many CrateDB clusters.
"""

import asyncio
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple, Union

from loguru import logger

from .errors import GateCancelledError, NoOwnerError, SequenceError
from .health import TRANSIENT_ERRORS
from .models import (
    ClusterIdentity,
    ClusterPlan,
    ClusterRestartResult,
    ClusterState,
    CrateDBResource,
    MemberOutcome,
    MemberState,
    MultiClusterRestartResult,
    PollPolicy,
    RestartOptions,
    RestartPlan,
    Workload,
)
from .resolver import WorkloadResolver
from .sequencer import RestartSequencer


class Inventory(Protocol):
    """Lists CrateDB resources and the workloads next to them."""

    async def list_clusters(self) -> List[CrateDBResource]:
        ...

    async def list_workloads(self, namespace: str) -> List[Workload]:
        ...


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RestartOrchestrator:
    """
    Builds one restart plan per cluster and runs the sequencer for each.

    Clusters are independent: a failing cluster is recorded and the run moves
    on. Up to max_parallel clusters are restarted at the same time; members of
    one cluster are always restarted one after the other.
    """

    def __init__(
        self,
        sequencer: RestartSequencer,
        resolver: Optional[WorkloadResolver] = None,
        policy: Optional[PollPolicy] = None,
        cluster_policies: Optional[Dict[str, PollPolicy]] = None,
        max_parallel: int = 1,
        run_timeout: Optional[float] = None,
        dry_run: bool = False,
        clock: Callable[[], datetime] = utcnow,
        log=None,
    ):
        self.sequencer = sequencer
        self.log = log or logger
        self.resolver = resolver or WorkloadResolver()
        self.policy = policy or PollPolicy()
        self.cluster_policies = cluster_policies or {}
        self.max_parallel = max(max_parallel, 1)
        self.run_timeout = run_timeout
        self.dry_run = dry_run
        self.clock = clock

    @classmethod
    def from_options(
        cls,
        sequencer: RestartSequencer,
        options: RestartOptions,
        clock: Callable[[], datetime] = utcnow,
        log=None,
    ) -> "RestartOrchestrator":
        """Create an orchestrator for the settings of one restart run."""
        return cls(
            sequencer,
            resolver=WorkloadResolver(owner_label=options.owner_label, name_prefix=options.name_prefix),
            policy=options.policy,
            cluster_policies=options.cluster_policies,
            max_parallel=options.max_parallel,
            run_timeout=options.run_timeout,
            dry_run=options.dry_run,
            clock=clock,
            log=log,
        )

    @property
    def cancel_event(self) -> asyncio.Event:
        return self.sequencer.monitor.cancel_event

    def cancel(self, reason: str = "operator request") -> None:
        """Interrupt running health gates and skip clusters that have not started."""
        if not self.cancel_event.is_set():
            self.log.warning(f"Cancelling restart run: {reason}")
            self.cancel_event.set()

    async def build_plans(
        self,
        inventory: Inventory,
        cluster_names: Optional[Iterable[str]] = None,
        skip_clusters: Iterable[str] = (),
    ) -> List[ClusterPlan]:
        """Discover clusters and attach their workloads as restart plans, see discover_plans."""
        return await discover_plans(inventory, self.resolver, cluster_names, skip_clusters)

    async def run(
        self,
        inventory: Inventory,
        cluster_names: Optional[Iterable[str]] = None,
        skip_clusters: Iterable[str] = (),
    ) -> MultiClusterRestartResult:
        """Discover clusters and restart all of them."""
        plans = await self.build_plans(inventory, cluster_names, skip_clusters)
        return await self.run_all(plans)

    async def run_all(
        self, clusters: Sequence[Union[ClusterPlan, Tuple[ClusterIdentity, RestartPlan]]]
    ) -> MultiClusterRestartResult:
        """
        Restart every cluster, continuing past per-cluster failures.

        Args:
            clusters: ClusterPlans, or (ClusterIdentity, RestartPlan) pairs

        Returns:
            Summary with one result per cluster, in input order
        """
        loop = asyncio.get_running_loop()
        entries = self._normalize(clusters)
        started_at = self.clock()
        started = loop.time()
        slots = asyncio.Semaphore(self.max_parallel)

        deadline = None
        if self.run_timeout is not None:
            deadline = loop.call_later(self.run_timeout, self.cancel, f"run timeout of {self.run_timeout:.0f}s reached")

        self.log.info(
            f"Restarting {len(entries)} cluster(s), up to {self.max_parallel} at a time"
            + (" [DRY RUN]" if self.dry_run else "")
        )
        try:
            results = await asyncio.gather(*(self._run_cluster(entry, slots) for entry in entries))
        finally:
            if deadline is not None:
                deadline.cancel()

        summary = MultiClusterRestartResult(
            results=list(results),
            total_clusters=len(results),
            successful_clusters=sum(1 for r in results if r.state == ClusterState.DONE),
            failed_clusters=sum(1 for r in results if r.state == ClusterState.FAILED),
            total_duration=loop.time() - started,
            dry_run=self.dry_run,
            started_at=started_at,
            completed_at=self.clock(),
        )
        self.log.info(
            f"Restart run finished: {summary.successful_clusters} completed, "
            f"{summary.failed_clusters} abandoned out of {summary.total_clusters} in {summary.total_duration:.2f}s"
        )
        return summary

    async def _run_cluster(self, entry: ClusterPlan, slots: asyncio.Semaphore) -> ClusterRestartResult:
        async with slots:
            loop = asyncio.get_running_loop()
            started = loop.time()
            result = ClusterRestartResult(
                cluster=entry.cluster,
                state=ClusterState.FAILED,
                workloads=[plan.workload for plan in entry.plans],
                total_members=sum(len(plan) for plan in entry.plans),
                started_at=self.clock(),
            )
            members: List[MemberOutcome] = []

            if entry.error is not None:
                self.log.error(f"[{entry.cluster}] Not restarting: {entry.error}")
                result.error, result.error_kind = entry.error, entry.error_kind
            elif self.cancel_event.is_set():
                self.log.warning(f"[{entry.cluster}] Not started, run was cancelled")
                result.error, result.error_kind = "Run cancelled before start", GateCancelledError.kind
            else:
                policy = self.cluster_policies.get(entry.cluster.name, self.policy)
                self.log.info(f"[{entry.cluster}] Starting restart of {entry.cluster_name}")
                try:
                    for plan in entry.plans:
                        outcome = await self.sequencer.run(entry.cluster, plan, policy)
                        members.extend(outcome.members)
                    result.state = ClusterState.DONE
                except SequenceError as e:
                    members.extend(e.outcomes)
                    self.log.error(f"[{entry.cluster}] {e}")
                    result.error, result.error_kind = str(e), e.kind
                except Exception as e:
                    self.log.exception(f"[{entry.cluster}] Unexpected error during restart: {e}")
                    result.error, result.error_kind = f"Unexpected error during restart: {e}", "Unexpected"

            result.members = members
            result.restarted_pods = [o.member.pod_name for o in members if o.state == MemberState.DONE]
            result.health_checks = sum(o.health_checks for o in members)
            result.duration = loop.time() - started
            result.completed_at = self.clock()
            if result.state == ClusterState.DONE:
                self.log.info(f"[{entry.cluster}] Restarted {len(result.restarted_pods)} member(s) in {result.duration:.2f}s")
            return result

    @staticmethod
    def _normalize(clusters) -> List[ClusterPlan]:
        entries: List[ClusterPlan] = []
        by_cluster: Dict[ClusterIdentity, ClusterPlan] = {}
        for item in clusters:
            if isinstance(item, ClusterPlan):
                entries.append(item)
                continue
            cluster, plan = item
            entry = by_cluster.get(cluster)
            if entry is None:
                entry = by_cluster[cluster] = ClusterPlan(cluster=cluster, cluster_name=cluster.name)
                entries.append(entry)
            entry.plans.append(plan)
        return entries


async def discover_plans(
    inventory: Inventory,
    resolver: WorkloadResolver,
    cluster_names: Optional[Iterable[str]] = None,
    skip_clusters: Iterable[str] = (),
) -> List[ClusterPlan]:
    """
    Discover clusters and attach their workloads as restart plans.

    Workloads are listed once per namespace and resolved to their owning cluster.

    Args:
        inventory: Source of CrateDB resources and workloads
        resolver: Maps workloads to clusters
        cluster_names: Only these clusters (metadata or spec.cluster name); None for all
        skip_clusters: Clusters to leave out

    Returns:
        One ClusterPlan per selected cluster; clusters without workload carry an error
    """
    wanted = set(cluster_names) if cluster_names else None
    skipped = set(skip_clusters)

    resources = await inventory.list_clusters()
    logger.info(f"There are {len(resources)} CrateDB clusters")

    entries: List[ClusterPlan] = []
    by_alias: Dict[Tuple[str, str], ClusterPlan] = {}
    for resource in resources:
        names = {resource.name, resource.cluster_name}
        if wanted is not None and not names & wanted:
            continue
        if names & skipped:
            logger.info(f"[{resource.identity}] Skipped by configuration")
            continue
        entry = ClusterPlan(cluster=resource.identity, cluster_name=resource.cluster_name, health=resource.health)
        entries.append(entry)
        for alias in names:
            by_alias.setdefault((resource.namespace, alias), entry)

    for namespace in sorted({e.cluster.namespace for e in entries}):
        try:
            workloads = await inventory.list_workloads(namespace)
        except TRANSIENT_ERRORS as e:
            logger.error(f"Error listing workloads in namespace {namespace}: {e}")
            for entry in entries:
                if entry.cluster.namespace == namespace:
                    entry.error = f"Could not list workloads in namespace {namespace}: {e}"
                    entry.error_kind = "Unavailable"
            continue

        for workload in workloads:
            try:
                owner = resolver.resolve(workload)
            except NoOwnerError as e:
                logger.warning(f"Skipping workload {namespace}/{workload.name}: {e}")
                continue
            entry = by_alias.get((owner.namespace, owner.name))
            if entry is None:
                logger.debug(f"Workload {namespace}/{workload.name} belongs to unselected cluster {owner}")
                continue
            entry.plans.append(RestartPlan.for_workload(entry.cluster, workload))
            logger.info(
                f"[{entry.cluster}] {entry.cluster_name} (replicas={workload.replicas}) "
                f"{entry.health.value} via {workload.name}"
            )

    for entry in entries:
        if not entry.plans and entry.error is None:
            entry.error = f"No workload found for cluster {entry.cluster}"
            entry.error_kind = NoOwnerError.kind
    return entries
