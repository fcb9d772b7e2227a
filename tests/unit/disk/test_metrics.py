"""Unit tests for the disk and WAL Prometheus gauges."""

from dataclasses import replace
from datetime import timedelta

from prometheus_client import REGISTRY

from pgautoresize.disk.metrics import DiskMetricsCollector
from pgautoresize.models.models import (
    UNVERIFIED_TAG,
    EventResult,
    VolumeIdentity,
    VolumeRole,
    WALHealthInfo,
)
from tests.common.factories import GI, disk_status, healthy_wal, inactive_slot, resize_event

CLUSTER = "pg-gauges"


def sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels)


def volume_labels(role=VolumeRole.DATA, tablespace=""):
    return dict(cluster=CLUSTER, volume_type=role.value, tablespace=tablespace)


def test_volume_stats():
    collector = DiskMetricsCollector(CLUSTER)
    identity = VolumeIdentity(CLUSTER, VolumeRole.TABLESPACE, "idx")

    collector.set_volume_stats(identity, disk_status(25.0, total_bytes=4 * GI))

    labels = volume_labels(VolumeRole.TABLESPACE, "idx")
    assert sample('cnpg_disk_total_bytes', **labels) == 4 * GI
    assert sample('cnpg_disk_used_bytes', **labels) == GI
    assert sample('cnpg_disk_available_bytes', **labels) == 3 * GI
    assert sample('cnpg_disk_percent_used', **labels) == 25.0


def test_unknown_wal_health_exported_as_minus_one():
    collector = DiskMetricsCollector(CLUSTER)
    collector.set_wal_health("pg-gauges-1", WALHealthInfo())

    labels = dict(cluster=CLUSTER, instance="pg-gauges-1")
    assert sample('cnpg_wal_archive_healthy', **labels) == -1
    assert sample('cnpg_wal_pending_archive_files', **labels) == -1
    assert sample('cnpg_wal_inactive_slots', **labels) == -1


def test_wal_health():
    health = healthy_wal()
    health.archive_healthy = False
    health.pending_archive_files = 7
    health.inactive_slots = [inactive_slot("lost", 2048)]
    collector = DiskMetricsCollector(CLUSTER)
    collector.set_wal_health("pg-gauges-2", health)

    labels = dict(cluster=CLUSTER, instance="pg-gauges-2")
    assert sample('cnpg_wal_archive_healthy', **labels) == 0
    assert sample('cnpg_wal_pending_archive_files', **labels) == 7
    assert sample('cnpg_wal_inactive_slots', **labels) == 1
    assert sample('cnpg_wal_slot_retention_bytes', slot_name="lost", **labels) == 2048


def test_decision_sets_single_block_reason():
    collector = DiskMetricsCollector(CLUSTER)
    identity = VolumeIdentity(CLUSTER, VolumeRole.WAL)

    collector.set_decision(identity, False, 'rate_limit', 0)
    collector.set_decision(identity, False, 'archive_unhealthy', 2)

    labels = volume_labels(VolumeRole.WAL)
    assert sample('cnpg_disk_resize_blocked', reason='archive_unhealthy', **labels) == 1
    assert sample('cnpg_disk_resize_blocked', reason='rate_limit', **labels) == 0
    assert sample('cnpg_disk_resize_budget_remaining', **labels) == 2
    assert sample('cnpg_disk_at_limit', **labels) == 0

    collector.set_decision(identity, True, None, 2)
    assert sample('cnpg_disk_resize_blocked', reason='archive_unhealthy', **labels) == 0
    assert sample('cnpg_disk_at_limit', **labels) == 1


def test_event_counts_derived_from_history():
    identity = VolumeIdentity(CLUSTER, VolumeRole.DATA)
    events = [
        resize_event(EventResult.SUCCESS, age=timedelta(hours=3)),
        resize_event(EventResult.SUCCESS, age=timedelta(hours=2),
                     reason=f"usage 90.0% >= threshold 80% {UNVERIFIED_TAG}"),
        resize_event(EventResult.FAILED, age=timedelta(hours=1)),
        resize_event(EventResult.SUCCESS, role=VolumeRole.WAL),
    ]
    events = [replace(e, cluster=CLUSTER) for e in events]
    collector = DiskMetricsCollector(CLUSTER)
    collector.set_event_counts(identity, events)

    labels = volume_labels()
    assert sample('cnpg_disk_resizes_total', result='success', **labels) == 2
    assert sample('cnpg_disk_resizes_total', result='failed', **labels) == 1
    assert sample('cnpg_disk_resizes_total', result='blocked', **labels) == 0
    assert sample('cnpg_disk_resize_unverified_total', **labels) == 1
