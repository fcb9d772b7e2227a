"""Filesystem statistics for the volumes mounted into a database instance."""

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Optional

import psutil

from pgautoresize.models.models import VolumeDiskStatus, VolumeRole, utcnow
from pgautoresize.reconciler.errors import ProbeError

logger = logging.getLogger(__name__)

DEFAULT_PGDATA_PATH = "/var/lib/postgresql/data"
DEFAULT_PGWAL_PATH = "/var/lib/postgresql/wal"
DEFAULT_TABLESPACES_PATH = "/var/lib/postgresql/tablespaces"


@dataclass
class VolumeStats:
    path: str
    total_bytes: int
    used_bytes: int
    available_bytes: int
    percent_used: float
    inodes_total: int
    inodes_used: int
    inodes_free: int

    def to_status(self) -> VolumeDiskStatus:
        return VolumeDiskStatus(
            total_bytes=self.total_bytes,
            used_bytes=self.used_bytes,
            available_bytes=self.available_bytes,
            percent_used=self.percent_used,
            inodes_total=self.inodes_total,
            inodes_used=self.inodes_used,
            inodes_free=self.inodes_free,
            path=self.path,
            sampled_at=utcnow(),
        )


def percent_used(used_bytes: int, total_bytes: int) -> float:
    if total_bytes <= 0:
        return 0.0
    return used_bytes / total_bytes * 100


def read_volume_stats(path: str) -> VolumeStats:
    """Read statistics for the filesystem mounted at path.

    Available bytes are those usable by an unprivileged process; used
    bytes include the root reservation.

    Raises:
        ProbeError: If the path is missing or cannot be stat'ed.
    """
    try:
        usage = psutil.disk_usage(path)
        inodes = os.statvfs(path)
    except OSError as e:
        raise ProbeError(path, str(e))

    return VolumeStats(
        path=path,
        total_bytes=usage.total,
        used_bytes=usage.used,
        available_bytes=usage.free,
        percent_used=percent_used(usage.used, usage.total),
        inodes_total=inodes.f_files,
        inodes_used=inodes.f_files - inodes.f_ffree,
        inodes_free=inodes.f_ffree,
    )


class VolumeProbe:
    """Samples data, WAL and tablespace mounts with a bounded timeout."""

    def __init__(self,
                 data_path: str = DEFAULT_PGDATA_PATH,
                 wal_path: str = DEFAULT_PGWAL_PATH,
                 tablespaces_path: str = DEFAULT_TABLESPACES_PATH,
                 timeout: float = 10.0):
        self.data_path = data_path
        self.wal_path = wal_path
        self.tablespaces_path = tablespaces_path
        self.timeout = timeout

    def mount_for(self, role: VolumeRole, tablespace: str = "") -> str:
        if role == VolumeRole.DATA:
            return self.data_path
        if role == VolumeRole.WAL:
            return self.wal_path
        return os.path.join(self.tablespaces_path, tablespace)

    async def probe(self, path: str) -> VolumeDiskStatus:
        """Sample one mount. A hung filesystem surfaces as a ProbeError."""
        try:
            stats = await asyncio.wait_for(
                asyncio.to_thread(read_volume_stats, path), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            raise ProbeError(path, f"timed out after {self.timeout}s")
        return stats.to_status()

    async def probe_volume(self, role: VolumeRole,
                           tablespace: str = "") -> VolumeDiskStatus:
        return await self.probe(self.mount_for(role, tablespace))

    async def probe_wal(self, separate_wal: bool) -> Optional[VolumeDiskStatus]:
        if not separate_wal:
            return None
        return await self.probe(self.wal_path)
