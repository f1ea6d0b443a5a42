"""
Health-gated rolling restarts for CrateDB clusters on Kubernetes.

Members of a cluster are restarted one at a time, and only while the cluster
reports GREEN before and after each restart. Runs execute in-process or as
Temporal workflows.
"""

__version__ = "0.1.0"

# Package metadata
__title__ = "rollgate"
__description__ = "Health-gated rolling restarts for CrateDB clusters on Kubernetes"
__license__ = "Apache License 2.0"

from .health import HealthMonitor
from .models import (
    ClusterIdentity,
    ClusterRestartResult,
    HealthStatus,
    MultiClusterRestartResult,
    PollPolicy,
    RestartOptions,
    RestartPlan,
)
from .orchestrator import RestartOrchestrator
from .resolver import WorkloadResolver
from .sequencer import RestartSequencer

__all__ = [
    "ClusterIdentity",
    "ClusterRestartResult",
    "HealthMonitor",
    "HealthStatus",
    "MultiClusterRestartResult",
    "PollPolicy",
    "RestartOptions",
    "RestartOrchestrator",
    "RestartPlan",
    "RestartSequencer",
    "WorkloadResolver",
    "__version__",
]
