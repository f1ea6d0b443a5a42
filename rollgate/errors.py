"""
Exception hierarchy for health-gated restarts.

Errors fall in three groups:

- fatal configuration errors that stop the whole process (no API connection),
- transient query errors that the health gate retries within its budget,
- per-cluster errors that abandon one cluster's plan while the run continues.
"""

from typing import List, Optional


class RollgateError(Exception):
    """Base class for all rollgate errors."""

    kind = "Unexpected"


class ConfigurationError(RollgateError):
    """Credentials, client construction or configuration file are unusable."""

    kind = "Configuration"


class TransientError(RollgateError):
    """A query failed in a way that may succeed when retried."""

    kind = "Transient"


class HealthError(RollgateError):
    """A health gate did not pass."""

    def __init__(self, cluster, message: str, last_status=None):
        self.cluster = cluster
        self.last_status = last_status
        super().__init__(message)


class HealthUnavailableError(HealthError):
    """The health signal could not be read within the retry budget."""

    kind = "Unavailable"

    def __init__(self, cluster, attempts: int, cause: Optional[BaseException] = None, last_status=None):
        self.attempts = attempts
        self.cause = cause
        super().__init__(
            cluster,
            f"Health of {cluster} unavailable after {attempts} failed queries: {cause}",
            last_status=last_status,
        )


class HealthTimeoutError(HealthError):
    """The cluster did not report GREEN before the gate timeout elapsed."""

    kind = "Timeout"

    def __init__(self, cluster, timeout: float, last_status=None):
        self.timeout = timeout
        status = last_status.value if last_status is not None else "no reading"
        super().__init__(
            cluster,
            f"Cluster {cluster} not GREEN within {timeout:.0f}s (last status: {status})",
            last_status=last_status,
        )


class GateCancelledError(HealthError):
    """The gate was interrupted by an operator cancel or a run deadline."""

    kind = "Cancelled"

    def __init__(self, cluster, last_status=None):
        super().__init__(cluster, f"Health gate for {cluster} cancelled", last_status=last_status)


class ResolutionError(RollgateError):
    """A workload could not be attributed to a cluster."""

    kind = "Resolution"


class NoOwnerError(ResolutionError):
    """The workload carries no ownership metadata and does not follow the naming convention."""

    kind = "NoOwner"

    def __init__(self, workload_name: str, message: Optional[str] = None):
        self.workload_name = workload_name
        super().__init__(message or f"Workload {workload_name} has no owning CrateDB cluster")


class RestartActionError(RollgateError):
    """The disruptive action on a member failed."""

    kind = "ActionFailed"

    def __init__(self, pod_name: str, message: str):
        self.pod_name = pod_name
        super().__init__(message)


class SequenceError(RollgateError):
    """A cluster's restart plan was abandoned at one member."""

    def __init__(self, cluster, member, failed_in, cause: BaseException, outcomes: Optional[List] = None):
        self.cluster = cluster
        self.member = member
        self.failed_in = failed_in
        self.cause = cause
        self.outcomes = outcomes or []
        state = getattr(failed_in, "value", failed_in)
        super().__init__(f"Restart of {cluster} abandoned at {member.pod_name} ({state}): {cause}")

    @property
    def kind(self) -> str:
        return getattr(self.cause, "kind", "Unexpected")
