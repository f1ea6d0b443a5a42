"""
Attribute StatefulSets to the CrateDB cluster that owns them.
"""

from typing import Optional, Union

from loguru import logger

from .errors import NoOwnerError
from .models import ClusterIdentity, Workload

CRATEDB_KIND = "CrateDB"
DEFAULT_OWNER_LABEL = "crate-cluster"
DEFAULT_NAME_PREFIX = "crate-data-hot-"


class WorkloadResolver:
    """
    Map a workload to its owning ClusterIdentity.

    Explicit metadata wins: an owner reference of kind CrateDB, then the owner
    label. Only when neither exists is the cluster name derived from the
    workload name, by removing a literal prefix.
    """

    def __init__(
        self,
        owner_label: Optional[str] = DEFAULT_OWNER_LABEL,
        name_prefix: Optional[str] = DEFAULT_NAME_PREFIX,
        default_namespace: str = "default",
    ):
        self.owner_label = owner_label
        self.name_prefix = name_prefix
        self.default_namespace = default_namespace

    def resolve(self, workload: Union[str, Workload]) -> ClusterIdentity:
        """
        Resolve the owning cluster of a workload.

        Args:
            workload: Workload snapshot, or a bare workload name in the default namespace

        Returns:
            ClusterIdentity in the workload's namespace

        Raises:
            NoOwnerError: No ownership metadata and the name does not carry the prefix
        """
        if isinstance(workload, str):
            workload = Workload(name=workload, namespace=self.default_namespace)

        for owner in workload.owner_references:
            if owner.kind == CRATEDB_KIND and owner.name:
                return ClusterIdentity(name=owner.name, namespace=workload.namespace)

        if self.owner_label:
            owner_name = workload.labels.get(self.owner_label)
            if owner_name:
                return ClusterIdentity(name=owner_name, namespace=workload.namespace)

        derived = self.strip_prefix(workload.name)
        if derived is None:
            raise NoOwnerError(workload.name)

        logger.warning(
            f"Workload {workload.namespace}/{workload.name} has no owner metadata, "
            f"assuming cluster {derived!r} from its name"
        )
        return ClusterIdentity(name=derived, namespace=workload.namespace)

    def strip_prefix(self, workload_name: str) -> Optional[str]:
        """Remove the literal name prefix, or None when the name does not follow the convention."""
        if not self.name_prefix or not workload_name.startswith(self.name_prefix):
            return None
        remainder = workload_name[len(self.name_prefix):]
        return remainder or None
