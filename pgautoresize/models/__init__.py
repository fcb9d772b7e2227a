"""Models package for storage auto-resize."""
from .models import (
    AutoResizeEvent,
    ClusterCondition,
    ClusterSpec,
    ClusterStatus,
    EventResult,
    InstanceDiskStatus,
    ResizePolicy,
    VolumeClaim,
    VolumeDiskStatus,
    VolumeIdentity,
    VolumeRole,
    WALHealthInfo,
)

from .quantity import format_bytes, humanize_bytes, to_bytes
