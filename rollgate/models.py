"""
Data models for health-gated restarts and the Temporal workflow that runs them.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class HealthStatus(str, Enum):
    """Health reported by a CrateDB resource in status.crateDBStatus.health."""

    GREEN = "GREEN"
    YELLOW = "YELLOW"
    RED = "RED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: Any) -> "HealthStatus":
        """Map a raw status value to a HealthStatus, UNKNOWN for anything unexpected."""
        if not isinstance(value, str):
            return cls.UNKNOWN
        value = value.strip()
        if value in (cls.GREEN.value, cls.YELLOW.value, cls.RED.value):
            return cls(value)
        return cls.UNKNOWN


class ClusterIdentity(BaseModel):
    """One CrateDB resource (metadata.name) in its namespace."""

    model_config = ConfigDict(frozen=True)

    name: str
    namespace: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class OwnerReference(BaseModel):
    """The parts of a Kubernetes owner reference the resolver looks at."""

    kind: str
    name: str


class Workload(BaseModel):
    """Snapshot of a StatefulSet-style workload."""

    name: str
    namespace: str
    replicas: int = 0  # spec.replicas
    labels: Dict[str, str] = Field(default_factory=dict)
    owner_references: List[OwnerReference] = Field(default_factory=list)


class CrateDBResource(BaseModel):
    """Inventory entry for a cratedbs.cloud.crate.io resource."""

    name: str
    namespace: str
    cluster_name: str  # spec.cluster.name, falls back to metadata.name
    health: HealthStatus = HealthStatus.UNKNOWN

    @property
    def identity(self) -> ClusterIdentity:
        return ClusterIdentity(name=self.name, namespace=self.namespace)


class WorkloadMember(BaseModel):
    """One disruptable pod of a workload."""

    model_config = ConfigDict(frozen=True)

    ordinal: int
    pod_name: str


class RestartPlan(BaseModel):
    """Ordered members of one workload to restart for one cluster."""

    cluster: ClusterIdentity
    workload: str
    members: List[WorkloadMember] = Field(default_factory=list)

    @classmethod
    def for_workload(cls, cluster: ClusterIdentity, workload: Workload) -> "RestartPlan":
        """Snapshot a StatefulSet's members as <workload>-<ordinal>, lowest ordinal first."""
        members = [
            WorkloadMember(ordinal=ordinal, pod_name=f"{workload.name}-{ordinal}")
            for ordinal in range(max(workload.replicas, 0))
        ]
        return cls(cluster=cluster, workload=workload.name, members=members)

    def __len__(self) -> int:
        return len(self.members)


class PollPolicy(BaseModel):
    """Cadence and limits of a health gate. All durations are in seconds."""

    interval: float = Field(default=10.0, gt=0)
    timeout: Optional[float] = Field(default=None, gt=0)  # None waits forever
    max_retries: int = Field(default=3, ge=0)  # consecutive failed queries tolerated
    backoff_initial: float = Field(default=1.0, ge=0)
    backoff_max: float = Field(default=30.0, ge=0)
    backoff_coefficient: float = Field(default=2.0, ge=1.0)

    def backoff_delay(self, failures: int) -> float:
        """Delay before retrying after the given number of consecutive failures."""
        exponent = max(failures - 1, 0)
        return min(self.backoff_initial * (self.backoff_coefficient ** exponent), self.backoff_max)


class MemberState(str, Enum):
    """Restart state of one member."""

    PENDING_PRE_HEALTH = "PENDING_PRE_HEALTH"
    RESTARTING = "RESTARTING"
    PENDING_POST_HEALTH = "PENDING_POST_HEALTH"
    DONE = "DONE"
    FAILED = "FAILED"


class MemberOutcome(BaseModel):
    """Where one member ended up in the state machine."""

    member: WorkloadMember
    state: MemberState = MemberState.PENDING_PRE_HEALTH
    failed_in: Optional[MemberState] = None
    error: Optional[str] = None
    health_checks: int = 0


class ClusterState(str, Enum):
    """Final state of one cluster in a run."""

    DONE = "DONE"
    FAILED = "FAILED"


class ClusterRestartResult(BaseModel):
    """Outcome of restarting one cluster."""

    cluster: ClusterIdentity
    state: ClusterState
    workloads: List[str] = Field(default_factory=list)
    members: List[MemberOutcome] = Field(default_factory=list)
    restarted_pods: List[str] = Field(default_factory=list)
    total_members: int = 0
    health_checks: int = 0
    error: Optional[str] = None
    error_kind: Optional[str] = None
    duration: float = 0.0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.state == ClusterState.DONE


class MultiClusterRestartResult(BaseModel):
    """Summary of a whole maintenance run."""

    results: List[ClusterRestartResult] = Field(default_factory=list)
    total_clusters: int = 0
    successful_clusters: int = 0
    failed_clusters: int = 0
    total_duration: float = 0.0
    dry_run: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def completed(self) -> List[ClusterRestartResult]:
        return [r for r in self.results if r.state == ClusterState.DONE]

    @property
    def abandoned(self) -> List[ClusterRestartResult]:
        return [r for r in self.results if r.state == ClusterState.FAILED]


class RestartOptions(BaseModel):
    """Options of one restart run, as collected by the CLI and the config file."""

    kubeconfig: Optional[str] = None
    context: Optional[str] = None
    cluster_names: Optional[List[str]] = None  # None means every cluster
    dry_run: bool = False
    policy: PollPolicy = Field(default_factory=PollPolicy)
    cluster_policies: Dict[str, PollPolicy] = Field(default_factory=dict)
    skip_clusters: List[str] = Field(default_factory=list)
    max_parallel: int = Field(default=1, ge=1)
    run_timeout: Optional[float] = Field(default=None, gt=0)
    owner_label: str = "crate-cluster"
    name_prefix: Optional[str] = "crate-data-hot-"
    recreate_timeout: float = 600.0
    output_format: str = "text"
    log_level: str = "INFO"


class ClusterPlan(BaseModel):
    """A discovered cluster with its restart plans, or the reason it has none."""

    cluster: ClusterIdentity
    cluster_name: str
    health: HealthStatus = HealthStatus.UNKNOWN
    plans: List[RestartPlan] = Field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[str] = None


# Temporal activity and workflow payloads


class DiscoveryInput(BaseModel):
    """Input for the discovery activity."""

    options: RestartOptions


class DiscoveryResult(BaseModel):
    """Clusters found by the discovery activity."""

    clusters: List[ClusterPlan] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class HealthReadInput(BaseModel):
    """Input for a single health read."""

    cluster: ClusterIdentity
    kubeconfig: Optional[str] = None
    context: Optional[str] = None


class HealthReadResult(BaseModel):
    """Result of a single health read."""

    cluster: ClusterIdentity
    status: HealthStatus


class MemberRestartInput(BaseModel):
    """Input for restarting one member."""

    cluster: ClusterIdentity
    member: WorkloadMember
    recreate_timeout: float = 600.0
    kubeconfig: Optional[str] = None
    context: Optional[str] = None


class MemberRestartResult(BaseModel):
    """Result of restarting one member."""

    pod_name: str
    namespace: str
    duration: float
    old_uid: Optional[str] = None
    new_uid: Optional[str] = None


class RollingRestartInput(BaseModel):
    """Input for the rolling restart workflow."""

    options: RestartOptions
