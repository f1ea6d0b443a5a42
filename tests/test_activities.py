"""
Tests for the Temporal activities and the workflow's activity-backed collaborators.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock, patch

import pytest
from kubernetes.client import V1ObjectMeta, V1Pod, V1PodCondition, V1PodStatus
from kubernetes.client.exceptions import ApiException
from temporalio.exceptions import ActivityError, ApplicationError, RetryState
from temporalio.testing import ActivityEnvironment

from rollgate.activities import CrateDBActivities
from rollgate.errors import ConfigurationError, RestartActionError, TransientError
from rollgate.models import (
    ClusterIdentity,
    ClusterPlan,
    CrateDBResource,
    DiscoveryInput,
    DiscoveryResult,
    HealthReadInput,
    HealthReadResult,
    HealthStatus,
    MemberRestartInput,
    RestartOptions,
    RestartPlan,
    RollingRestartInput,
    Workload,
    WorkloadMember,
)
from rollgate.workflows import ActivityHealthSource, ActivityRestartAction, RollingRestartWorkflow

CLUSTER = ClusterIdentity(name="orders", namespace="prod")
MEMBER = WorkloadMember(ordinal=1, pod_name="crate-data-hot-orders-1")


def ready_pod(uid: str) -> V1Pod:
    return V1Pod(
        metadata=V1ObjectMeta(name=MEMBER.pod_name, namespace="prod", uid=uid),
        status=V1PodStatus(phase="Running", conditions=[V1PodCondition(type="Ready", status="True")]),
    )


def activity_error() -> ActivityError:
    return ActivityError(
        "activity failed",
        scheduled_event_id=1,
        started_event_id=2,
        identity="test",
        activity_type="read_cluster_health",
        activity_id="1",
        retry_state=RetryState.MAXIMUM_ATTEMPTS_REACHED,
    )


class TestCrateDBActivities:
    def setup_method(self):
        self.kube = Mock()
        self.activities = CrateDBActivities()
        self.activities._clients[(None, None)] = self.kube
        self.env = ActivityEnvironment()

    @pytest.mark.asyncio
    async def test_discover_restart_plans(self):
        self.kube.list_clusters = AsyncMock(
            return_value=[
                CrateDBResource(name="orders", namespace="prod", cluster_name="orders"),
                CrateDBResource(name="empty", namespace="prod", cluster_name="empty"),
            ]
        )
        self.kube.list_workloads = AsyncMock(return_value=[Workload(name="crate-data-hot-orders", namespace="prod", replicas=2)])

        result = await self.env.run(self.activities.discover_restart_plans, DiscoveryInput(options=RestartOptions()))

        assert [c.cluster.name for c in result.clusters] == ["orders", "empty"]
        assert [m.pod_name for m in result.clusters[0].plans[0].members] == [
            "crate-data-hot-orders-0",
            "crate-data-hot-orders-1",
        ]
        assert len(result.errors) == 1
        assert result.clusters[1].error_kind == "NoOwner"

    @pytest.mark.asyncio
    async def test_read_cluster_health(self):
        self.kube.read_health = AsyncMock(return_value=HealthStatus.YELLOW)

        result = await self.env.run(self.activities.read_cluster_health, HealthReadInput(cluster=CLUSTER))

        assert result == HealthReadResult(cluster=CLUSTER, status=HealthStatus.YELLOW)

    @pytest.mark.asyncio
    async def test_read_cluster_health_errors_propagate(self):
        self.kube.read_health = AsyncMock(side_effect=ApiException(status=503))

        with pytest.raises(ApiException):
            await self.env.run(self.activities.read_cluster_health, HealthReadInput(cluster=CLUSTER))

    @pytest.mark.asyncio
    async def test_restart_member(self):
        self.kube.read_pod = AsyncMock(side_effect=[ready_pod("old"), ready_pod("new")])
        self.kube.delete_pod = AsyncMock()

        result = await self.env.run(
            self.activities.restart_member, MemberRestartInput(cluster=CLUSTER, member=MEMBER)
        )

        assert result.pod_name == MEMBER.pod_name
        assert (result.old_uid, result.new_uid) == ("old", "new")
        self.kube.delete_pod.assert_awaited_once_with(MEMBER.pod_name, "prod")

    @pytest.mark.asyncio
    async def test_restart_member_failure_is_not_retryable(self):
        self.kube.read_pod = AsyncMock(return_value=ready_pod("old"))
        self.kube.delete_pod = AsyncMock(side_effect=ApiException(status=403, reason="Forbidden"))

        with pytest.raises(ApplicationError) as exc_info:
            await self.env.run(self.activities.restart_member, MemberRestartInput(cluster=CLUSTER, member=MEMBER))

        assert exc_info.value.non_retryable
        assert exc_info.value.type == "RestartActionError"

    @pytest.mark.asyncio
    async def test_configuration_errors_are_not_retryable(self):
        activities = CrateDBActivities()
        with patch("rollgate.activities.CrateDBKubeClient.from_kubeconfig", side_effect=ConfigurationError("bad")):
            with pytest.raises(ApplicationError) as exc_info:
                await self.env.run(activities.read_cluster_health, HealthReadInput(cluster=CLUSTER, context="x"))

        assert exc_info.value.type == "ConfigurationError"
        assert exc_info.value.non_retryable

    def test_clients_are_cached_per_context(self):
        activities = CrateDBActivities()
        with patch("rollgate.activities.CrateDBKubeClient.from_kubeconfig", side_effect=lambda *a, **k: Mock()) as create:
            first = activities._kube(None, "a")
            assert activities._kube(None, "a") is first
            assert activities._kube(None, "b") is not first

        assert create.call_count == 2


class TestActivityCollaborators:
    """The workflow reaches Kubernetes only through activities."""

    @pytest.mark.asyncio
    async def test_health_source_returns_status(self):
        execute = AsyncMock(return_value=HealthReadResult(cluster=CLUSTER, status=HealthStatus.GREEN))
        with patch("rollgate.workflows.workflow.execute_activity", execute):
            status = await ActivityHealthSource(RestartOptions(context="prod")).read_health(CLUSTER)

        assert status == HealthStatus.GREEN
        assert execute.call_args.args[1] == HealthReadInput(cluster=CLUSTER, context="prod")
        assert execute.call_args.kwargs["retry_policy"].maximum_attempts == 1

    @pytest.mark.asyncio
    async def test_health_source_failures_are_transient(self):
        with patch("rollgate.workflows.workflow.execute_activity", AsyncMock(side_effect=activity_error())):
            with pytest.raises(TransientError):
                await ActivityHealthSource(RestartOptions()).read_health(CLUSTER)

    @pytest.mark.asyncio
    async def test_restart_action_failure(self):
        with patch("rollgate.workflows.workflow.execute_activity", AsyncMock(side_effect=activity_error())):
            with pytest.raises(RestartActionError) as exc_info:
                await ActivityRestartAction(RestartOptions()).restart(CLUSTER, MEMBER)

        assert exc_info.value.pod_name == MEMBER.pod_name


class TestRollingRestartWorkflow:
    """The workflow run, with activities and workflow APIs replaced."""

    @staticmethod
    async def execute_activity(activity_fn, arg, **kwargs):
        if activity_fn.__name__ == "discover_restart_plans":
            plan = RestartPlan.for_workload(CLUSTER, Workload(name="crate-data-hot-orders", namespace="prod", replicas=2))
            return DiscoveryResult(clusters=[ClusterPlan(cluster=CLUSTER, cluster_name="orders", plans=[plan])])
        return HealthReadResult(cluster=arg.cluster, status=HealthStatus.GREEN)

    @pytest.mark.asyncio
    async def test_shared_components_log_through_workflow_logger(self):
        workflow_log = Mock()
        loguru_logs = [Mock(), Mock(), Mock()]
        with patch("rollgate.workflows.workflow.execute_activity", side_effect=self.execute_activity), patch(
            "rollgate.workflows.workflow.logger", workflow_log
        ), patch("rollgate.workflows.workflow.now", return_value=datetime(2024, 3, 1, tzinfo=timezone.utc)), patch(
            "rollgate.health.logger", loguru_logs[0]
        ), patch("rollgate.sequencer.logger", loguru_logs[1]), patch("rollgate.orchestrator.logger", loguru_logs[2]):
            result = await RollingRestartWorkflow().run(
                RollingRestartInput(options=RestartOptions(cluster_names=["orders"], dry_run=True))
            )

        assert result.successful_clusters == 1
        messages = [c.args[0] for c in workflow_log.info.call_args_list]
        assert any("health GREEN" in m for m in messages)
        assert any("[DRY RUN] Would delete pod crate-data-hot-orders-1" in m for m in messages)
        for log in loguru_logs:
            assert log.method_calls == []
