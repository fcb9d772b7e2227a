"""Interfaces to the orchestration platform used by the auto-resize reconciler."""

from abc import ABC, abstractmethod
from typing import List, Optional

from pgautoresize.models.models import (
    ClusterSpec,
    ClusterStatus,
    InstanceDiskStatus,
    VolumeClaim,
)


class VolumePatcher(ABC):
    """Requests a new size for a persistent volume claim."""

    @abstractmethod
    async def set_requested_size(self, namespace: str, pvc_name: str, size_bytes: int) -> None:
        """Set the requested storage of a claim.

        The call is idempotent and does not wait for the expansion to
        complete.

        Raises:
            PatchFailed: If the platform rejects the request.
        """
        pass


class ClusterStatusStore(ABC):
    """Reads cluster specs and persists the auto-resize status."""

    @abstractmethod
    async def list_clusters(self) -> List[ClusterSpec]:
        """List the clusters to reconcile."""
        pass

    @abstractmethod
    async def get_cluster(self, name: str) -> Optional[ClusterSpec]:
        """Read one cluster spec, or None if it no longer exists."""
        pass

    @abstractmethod
    async def read_status(self, name: str) -> ClusterStatus:
        """Read the persisted event history and conditions."""
        pass

    @abstractmethod
    async def write_status(self, name: str, status: ClusterStatus) -> None:
        """Persist the event history and conditions."""
        pass

    @abstractmethod
    async def read_instance_statuses(self, name: str) -> List[InstanceDiskStatus]:
        """Read the latest disk and WAL status reported by each instance."""
        pass

    @abstractmethod
    async def publish_instance_status(self, name: str, status: InstanceDiskStatus) -> None:
        """Store the disk and WAL status of one instance."""
        pass

    @abstractmethod
    async def list_volume_claims(self, cluster: ClusterSpec) -> List[VolumeClaim]:
        """List the claims backing the cluster's volumes."""
        pass
