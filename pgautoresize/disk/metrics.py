from typing import Iterable, Optional

from prometheus_client import Gauge

from pgautoresize.models.models import (
    AutoResizeEvent,
    UNVERIFIED_TAG,
    EventResult,
    VolumeDiskStatus,
    VolumeIdentity,
    WALHealthInfo,
)
from pgautoresize.reconciler.ratelimit import events_for_identity

VOLUME_LABELS = ['cluster', 'volume_type', 'tablespace']

# Volume usage
DISK_TOTAL_BYTES = Gauge(
    'cnpg_disk_total_bytes',
    'Total capacity of the volume in bytes',
    VOLUME_LABELS
)

DISK_USED_BYTES = Gauge(
    'cnpg_disk_used_bytes',
    'Used space on the volume in bytes',
    VOLUME_LABELS
)

DISK_AVAILABLE_BYTES = Gauge(
    'cnpg_disk_available_bytes',
    'Available space on the volume in bytes (non-root)',
    VOLUME_LABELS
)

DISK_PERCENT_USED = Gauge(
    'cnpg_disk_percent_used',
    'Percentage of the volume in use (0-100)',
    VOLUME_LABELS
)

DISK_INODES_TOTAL = Gauge(
    'cnpg_disk_inodes_total',
    'Total number of inodes on the volume',
    VOLUME_LABELS
)

DISK_INODES_USED = Gauge(
    'cnpg_disk_inodes_used',
    'Number of inodes in use on the volume',
    VOLUME_LABELS
)

DISK_INODES_FREE = Gauge(
    'cnpg_disk_inodes_free',
    'Number of free inodes on the volume',
    VOLUME_LABELS
)

# Auto-resize decisions
DISK_AT_LIMIT = Gauge(
    'cnpg_disk_at_limit',
    '1 if the volume is at its configured expansion limit, 0 otherwise',
    VOLUME_LABELS
)

DISK_RESIZE_BLOCKED = Gauge(
    'cnpg_disk_resize_blocked',
    '1 if auto-resize is blocked, with reason label',
    VOLUME_LABELS + ['reason']
)

DISK_RESIZES_TOTAL = Gauge(
    'cnpg_disk_resizes_total',
    'Auto-resize operations in the retained event history',
    VOLUME_LABELS + ['result']
)

DISK_RESIZE_BUDGET_REMAINING = Gauge(
    'cnpg_disk_resize_budget_remaining',
    'Remaining auto-resize operations in the current 24h budget',
    VOLUME_LABELS
)

DISK_RESIZE_UNVERIFIED = Gauge(
    'cnpg_disk_resize_unverified_total',
    'Resizes in the retained history performed while WAL health was unknown',
    VOLUME_LABELS
)

# WAL health
WAL_ARCHIVE_HEALTHY = Gauge(
    'cnpg_wal_archive_healthy',
    '1 if WAL archiving is healthy, 0 if failing, -1 if unknown',
    ['cluster', 'instance']
)

WAL_PENDING_FILES = Gauge(
    'cnpg_wal_pending_archive_files',
    'Number of WAL files pending archiving (-1 if unknown)',
    ['cluster', 'instance']
)

WAL_INACTIVE_SLOTS = Gauge(
    'cnpg_wal_inactive_slots',
    'Number of inactive physical replication slots (-1 if unknown)',
    ['cluster', 'instance']
)

WAL_SLOT_RETENTION_BYTES = Gauge(
    'cnpg_wal_slot_retention_bytes',
    'WAL retained in bytes by inactive physical replication slots',
    ['cluster', 'instance', 'slot_name']
)

BLOCK_REASONS = (
    'rate_limit',
    'at_limit',
    'archive_unhealthy',
    'pending_wal_files',
    'slot_retention',
    'config_invalid',
)


class DiskMetricsCollector:
    """Projects volume status and event history onto Prometheus gauges.

    Every value is derived from VolumeDiskStatus, WALHealthInfo or the
    persisted event history; nothing is accumulated here.
    """

    def __init__(self, cluster: str):
        self.cluster = cluster

    def _volume_labels(self, identity: VolumeIdentity):
        return dict(
            cluster=self.cluster,
            volume_type=identity.role.value,
            tablespace=identity.tablespace
        )

    def set_volume_stats(self, identity: VolumeIdentity, status: VolumeDiskStatus):
        """Update usage gauges for one volume"""
        labels = self._volume_labels(identity)
        DISK_TOTAL_BYTES.labels(**labels).set(status.total_bytes)
        DISK_USED_BYTES.labels(**labels).set(status.used_bytes)
        DISK_AVAILABLE_BYTES.labels(**labels).set(status.available_bytes)
        DISK_PERCENT_USED.labels(**labels).set(status.percent_used)
        DISK_INODES_TOTAL.labels(**labels).set(status.inodes_total)
        DISK_INODES_USED.labels(**labels).set(status.inodes_used)
        DISK_INODES_FREE.labels(**labels).set(status.inodes_free)

    def set_wal_health(self, instance: str, health: Optional[WALHealthInfo]):
        """Update WAL gauges; unknown values are exported as -1"""
        labels = dict(cluster=self.cluster, instance=instance)
        health = health or WALHealthInfo()

        if health.archive_healthy is None:
            WAL_ARCHIVE_HEALTHY.labels(**labels).set(-1)
        else:
            WAL_ARCHIVE_HEALTHY.labels(**labels).set(1 if health.archive_healthy else 0)

        pending = health.pending_archive_files
        WAL_PENDING_FILES.labels(**labels).set(-1 if pending is None else pending)

        if health.inactive_slots is None:
            WAL_INACTIVE_SLOTS.labels(**labels).set(-1)
            return
        WAL_INACTIVE_SLOTS.labels(**labels).set(len(health.inactive_slots))
        for slot in health.inactive_slots:
            if slot.retained_bytes is not None:
                WAL_SLOT_RETENTION_BYTES.labels(
                    slot_name=slot.name, **labels
                ).set(slot.retained_bytes)

    def set_decision(self, identity: VolumeIdentity, at_limit: bool,
                     blocked_reason: Optional[str], budget_remaining: int):
        """Record the outcome of the latest decision for a volume"""
        labels = self._volume_labels(identity)
        DISK_AT_LIMIT.labels(**labels).set(1 if at_limit else 0)
        for reason in BLOCK_REASONS:
            DISK_RESIZE_BLOCKED.labels(reason=reason, **labels).set(
                1 if reason == blocked_reason else 0
            )
        DISK_RESIZE_BUDGET_REMAINING.labels(**labels).set(budget_remaining)

    def set_event_counts(self, identity: VolumeIdentity,
                         events: Iterable[AutoResizeEvent]):
        """Derive per-result counts from the event history"""
        labels = self._volume_labels(identity)
        matching = events_for_identity(events, identity)
        for result in EventResult:
            DISK_RESIZES_TOTAL.labels(result=result.value, **labels).set(
                sum(1 for e in matching if e.result == result)
            )
        DISK_RESIZE_UNVERIFIED.labels(**labels).set(
            sum(
                1 for e in matching
                if e.result == EventResult.SUCCESS and UNVERIFIED_TAG in e.reason
            )
        )
