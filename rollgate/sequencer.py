"""
Gated restart sequencing for the members of one cluster.

Every member walks PENDING_PRE_HEALTH -> RESTARTING -> PENDING_POST_HEALTH -> DONE.
The cluster has to be GREEN right before and right after each member is
disrupted, and the next member is only touched once the post gate has passed.
The first failure moves the member to FAILED and abandons the rest of the plan.
"""

from typing import List, Protocol

from loguru import logger
from pydantic import BaseModel, Field

from .errors import RestartActionError, SequenceError
from .health import HealthMonitor
from .models import ClusterIdentity, MemberOutcome, MemberState, PollPolicy, RestartPlan, WorkloadMember


class RestartAction(Protocol):
    """The disruptive step applied to one member."""

    async def restart(self, cluster: ClusterIdentity, member: WorkloadMember) -> None:
        ...


class DryRunRestartAction:
    """Logs the pod that would be deleted and leaves it alone."""

    def __init__(self, log=None):
        self.log = log or logger
        self.restarted: List[str] = []

    async def restart(self, cluster: ClusterIdentity, member: WorkloadMember) -> None:
        self.log.info(f"[{cluster}] [DRY RUN] Would delete pod {member.pod_name}")
        self.restarted.append(member.pod_name)


class SequenceResult(BaseModel):
    """A plan that ran to completion."""

    cluster: ClusterIdentity
    members: List[MemberOutcome] = Field(default_factory=list)

    @property
    def restarted_pods(self) -> List[str]:
        return [o.member.pod_name for o in self.members if o.state == MemberState.DONE]

    @property
    def health_checks(self) -> int:
        return sum(o.health_checks for o in self.members)


class RestartSequencer:
    """Drives one cluster's plan through the gated state machine, strictly one member at a time."""

    def __init__(self, monitor: HealthMonitor, action: RestartAction, log=None):
        self.monitor = monitor
        self.action = action
        self.log = log or logger

    async def run(self, cluster: ClusterIdentity, plan: RestartPlan, policy: PollPolicy) -> SequenceResult:
        """
        Restart every member of the plan in order.

        Raises:
            SequenceError: A gate, the restart action or an unexpected error stopped the plan at a member
        """
        outcomes: List[MemberOutcome] = []
        total = len(plan.members)
        self.log.info(f"[{cluster}] Restart plan for {plan.workload}: {total} member(s)")

        for position, member in enumerate(plan.members, 1):
            outcome = MemberOutcome(member=member)
            outcomes.append(outcome)
            self.log.info(f"[{cluster}] Member {position}/{total}: {member.pod_name}")

            try:
                outcome.health_checks += await self.monitor.await_healthy(cluster, policy)
                self._transition(cluster, outcome, MemberState.RESTARTING)

                await self._restart(cluster, member)
                self._transition(cluster, outcome, MemberState.PENDING_POST_HEALTH)

                outcome.health_checks += await self.monitor.await_healthy(cluster, policy)
                self._transition(cluster, outcome, MemberState.DONE)
            except Exception as e:
                outcome.failed_in = outcome.state
                outcome.error = str(e)
                self._transition(cluster, outcome, MemberState.FAILED)
                raise SequenceError(cluster, member, outcome.failed_in, e, outcomes) from e

        self.log.info(f"[{cluster}] Restart plan for {plan.workload} completed")
        return SequenceResult(cluster=cluster, members=outcomes)

    async def _restart(self, cluster: ClusterIdentity, member: WorkloadMember) -> None:
        try:
            await self.action.restart(cluster, member)
        except RestartActionError:
            raise
        except Exception as e:
            raise RestartActionError(member.pod_name, f"Restart of pod {member.pod_name} failed: {e}") from e

    def _transition(self, cluster: ClusterIdentity, outcome: MemberOutcome, state: MemberState) -> None:
        log = self.log.error if state == MemberState.FAILED else self.log.info
        log(f"[{cluster}] {outcome.member.pod_name}: {outcome.state.value} -> {state.value}")
        outcome.state = state
