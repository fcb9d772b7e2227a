"""Per-instance disk and WAL status collection."""

import logging
from typing import Optional

from pgautoresize.disk.probe import VolumeProbe
from pgautoresize.disk.walhealth import WALHealthChecker, connect
from pgautoresize.infrastructure.interfaces import ClusterStatusStore
from pgautoresize.models.models import (
    ClusterSpec,
    InstanceDiskStatus,
    VolumeDiskStatus,
    VolumeRole,
)
from pgautoresize.reconciler.errors import ProbeError

logger = logging.getLogger(__name__)


class InstanceStatusCollector:
    """Samples the volumes and WAL health of the local database instance.

    A failed sample keeps the previous value, whose sampled_at then ages
    past the freshness window so the reconciler stops acting on it.
    """

    def __init__(self, pod_name: str, probe: VolumeProbe,
                 wal_checker: WALHealthChecker,
                 database_dsn: Optional[str] = None):
        self.pod_name = pod_name
        self.probe = probe
        self.wal_checker = wal_checker
        self.database_dsn = database_dsn
        self.last_status = InstanceDiskStatus(pod_name=pod_name)

    async def _sample(self, role: VolumeRole, tablespace: str,
                      previous: Optional[VolumeDiskStatus]) -> Optional[VolumeDiskStatus]:
        try:
            return await self.probe.probe_volume(role, tablespace)
        except ProbeError as e:
            logger.error(f"Keeping previous {role.value} status for {self.pod_name}: {e}")
            return previous

    async def collect(self, cluster: ClusterSpec) -> InstanceDiskStatus:
        previous = self.last_status
        status = InstanceDiskStatus(pod_name=self.pod_name)

        status.data = await self._sample(VolumeRole.DATA, "", previous.data)
        if cluster.has_separate_wal:
            status.wal = await self._sample(VolumeRole.WAL, "", previous.wal)
        for name in sorted(cluster.tablespaces):
            sample = await self._sample(
                VolumeRole.TABLESPACE, name, previous.tablespaces.get(name)
            )
            if sample is not None:
                status.tablespaces[name] = sample

        conn = await connect(self.database_dsn, self.wal_checker.timeout) \
            if self.database_dsn else None
        try:
            status.wal_health = await self.wal_checker.check(conn)
        finally:
            if conn is not None:
                await conn.close()

        self.last_status = status
        return status

    async def publish(self, cluster: ClusterSpec, store: ClusterStatusStore) -> InstanceDiskStatus:
        """Collect and store the status of this instance on its cluster."""
        status = await self.collect(cluster)
        await store.publish_instance_status(cluster.name, status)
        logger.debug(f"Published disk status for {self.pod_name}")
        return status
