"""
Temporal workflow for health-gated rolling restarts.

The workflow runs the same RestartOrchestrator, RestartSequencer and
HealthMonitor as a local run. Only the collaborators differ: health reads and
pod restarts are activities, and timestamps come from workflow.now().
"""

from datetime import timedelta
from typing import List, Optional

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ActivityError

# Use unsafe imports for temporal server start-dev compatibility
with workflow.unsafe.imports_passed_through():
    from .activities import CrateDBActivities
    from .errors import RestartActionError, TransientError
    from .health import HealthMonitor
    from .models import (
        ClusterIdentity,
        ClusterPlan,
        DiscoveryInput,
        HealthReadInput,
        HealthStatus,
        MemberRestartInput,
        MultiClusterRestartResult,
        RestartOptions,
        RollingRestartInput,
        WorkloadMember,
    )
    from .orchestrator import RestartOrchestrator
    from .sequencer import DryRunRestartAction, RestartSequencer

HEALTH_READ_TIMEOUT = timedelta(seconds=30)


class ActivityHealthSource:
    """Reads cluster health through the read_cluster_health activity."""

    def __init__(self, options: RestartOptions):
        self.options = options

    async def read_health(self, cluster: ClusterIdentity) -> HealthStatus:
        try:
            result = await workflow.execute_activity(
                CrateDBActivities.read_cluster_health,
                HealthReadInput(cluster=cluster, kubeconfig=self.options.kubeconfig, context=self.options.context),
                start_to_close_timeout=HEALTH_READ_TIMEOUT,
                # The health gate owns the retry budget
                retry_policy=RetryPolicy(maximum_attempts=1),
            )
        except ActivityError as e:
            raise TransientError(f"Health read for {cluster} failed: {e.cause or e}") from e
        return result.status


class ActivityRestartAction:
    """Restarts a member through the restart_member activity."""

    def __init__(self, options: RestartOptions):
        self.options = options

    async def restart(self, cluster: ClusterIdentity, member: WorkloadMember) -> None:
        try:
            await workflow.execute_activity(
                CrateDBActivities.restart_member,
                MemberRestartInput(
                    cluster=cluster,
                    member=member,
                    recreate_timeout=self.options.recreate_timeout,
                    kubeconfig=self.options.kubeconfig,
                    context=self.options.context,
                ),
                start_to_close_timeout=timedelta(seconds=self.options.recreate_timeout + 60),
                heartbeat_timeout=timedelta(seconds=60),
                retry_policy=RetryPolicy(maximum_attempts=1),
            )
        except ActivityError as e:
            raise RestartActionError(member.pod_name, f"Restart of pod {member.pod_name} failed: {e.cause or e}") from e


@workflow.defn(sandboxed=False)
class RollingRestartWorkflow:
    """Discovers CrateDB clusters and restarts them one member at a time."""

    def __init__(self):
        self._plans: List[ClusterPlan] = []
        self._orchestrator: Optional[RestartOrchestrator] = None
        self._cancel_reason: Optional[str] = None

    @workflow.signal
    def cancel(self, reason: str = "operator request") -> None:
        """Stop the run: the active gate aborts and clusters not started are skipped."""
        workflow.logger.warning(f"Cancel requested: {reason}")
        self._cancel_reason = reason
        if self._orchestrator is not None:
            self._orchestrator.cancel(reason)

    @workflow.query
    def plan(self) -> List[ClusterPlan]:
        return self._plans

    @workflow.run
    async def run(self, input_data: RollingRestartInput) -> MultiClusterRestartResult:
        """
        Restart the selected clusters.

        Args:
            input_data: Restart options

        Returns:
            MultiClusterRestartResult with one entry per discovered cluster
        """
        options = input_data.options
        workflow.logger.info(
            f"Starting rolling restart for: {options.cluster_names or 'all clusters'}"
            + (" [DRY RUN]" if options.dry_run else "")
        )

        discovery = await workflow.execute_activity(
            CrateDBActivities.discover_restart_plans,
            DiscoveryInput(options=options),
            start_to_close_timeout=timedelta(seconds=120),
            retry_policy=RetryPolicy(
                initial_interval=timedelta(seconds=2),
                maximum_interval=timedelta(seconds=10),
                maximum_attempts=3,
                non_retryable_error_types=["ConfigurationError"],
            ),
        )
        self._plans = discovery.clusters
        workflow.logger.info(f"Found {len(discovery.clusters)} cluster(s) to restart")

        # Shared components log through workflow.logger, which stays quiet during replay
        log = workflow.logger
        monitor = HealthMonitor(ActivityHealthSource(options), log=log)
        action = DryRunRestartAction(log=log) if options.dry_run else ActivityRestartAction(options)
        self._orchestrator = RestartOrchestrator.from_options(
            RestartSequencer(monitor, action, log=log), options, clock=workflow.now, log=log
        )
        if self._cancel_reason is not None:
            self._orchestrator.cancel(self._cancel_reason)

        result = await self._orchestrator.run_all(discovery.clusters)
        workflow.logger.info(
            f"Rolling restart completed: {result.successful_clusters} completed, "
            f"{result.failed_clusters} abandoned out of {result.total_clusters} clusters"
        )
        return result
