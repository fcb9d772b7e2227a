"""Unit tests for auto-resize models and quantity helpers."""

from datetime import timedelta

import pytest

from pgautoresize.models.models import (
    AutoResizeEvent,
    ClusterCondition,
    ClusterSpec,
    ClusterStatus,
    EventResult,
    InstanceDiskStatus,
    ResizePolicy,
    VolumeIdentity,
    VolumeRole,
    WALHealthInfo,
    parse_timestamp,
)
from pgautoresize.models.quantity import format_bytes, humanize_bytes, parse_duration, to_bytes
from tests.common.factories import (
    CLUSTER,
    GI,
    MI,
    NOW,
    disk_status,
    healthy_wal,
    inactive_slot,
    resize_event,
)


class TestQuantity:
    @pytest.mark.parametrize("quantity,expected", [
        ("2Gi", 2 * GI),
        ("500Mi", 500 * MI),
        ("100M", 100 * 1000 * 1000),
        ("1.5Gi", 3 * GI // 2),
        (1024, 1024),
        ("1", 1),
    ])
    def test_to_bytes(self, quantity, expected):
        assert to_bytes(quantity) == expected

    def test_fractional_bytes_round_up(self):
        assert to_bytes("1.5") == 2

    @pytest.mark.parametrize("quantity", ["", "two gigs", True])
    def test_invalid(self, quantity):
        with pytest.raises(ValueError):
            to_bytes(quantity)

    def test_format_bytes(self):
        assert format_bytes(3 * GI) == "3Gi"
        assert format_bytes(10 * 1024 * GI + 500 * GI) == "10740Gi"
        assert format_bytes(1536 * MI) == "1536Mi"
        assert format_bytes(1000) == "1000"
        assert format_bytes(0) == "0"

    def test_humanize_bytes(self):
        assert humanize_bytes(3 * GI) == "3.00Gi"
        assert humanize_bytes(512) == "512B"


class TestVolumeIdentity:
    def test_key(self):
        assert VolumeIdentity(CLUSTER, VolumeRole.DATA).key == "pg-main/data"
        assert VolumeIdentity(CLUSTER, VolumeRole.WAL).key == "pg-main/wal"
        assert (VolumeIdentity(CLUSTER, VolumeRole.TABLESPACE, "idx").key
                == "pg-main/tablespace:idx")

    def test_event_identity_ignores_claim_name(self):
        first = resize_event(EventResult.SUCCESS, pvc_name="pg-main-1")
        second = resize_event(EventResult.SUCCESS, pvc_name="pg-main-3")
        assert first.identity() == second.identity() == VolumeIdentity(CLUSTER, VolumeRole.DATA)


class TestWALHealthInfo:
    def test_slot_retention_sums_inactive_slots(self):
        health = healthy_wal()
        health.inactive_slots = [inactive_slot("a", 100), inactive_slot("b", 50)]
        assert health.slot_retention_bytes == 150
        assert health.inactive_replication_slots == ["a", "b"]

    def test_unmeasured_slot_makes_retention_unknown(self):
        health = healthy_wal()
        health.inactive_slots = [inactive_slot("a", 100), inactive_slot("b", None)]
        assert health.slot_retention_bytes is None
        assert health.measured_slot_retention_bytes == 100
        assert not health.slot_retention_complete

    def test_unknown(self):
        assert WALHealthInfo().is_unknown
        assert not healthy_wal().is_unknown

    def test_unknown_fields_survive_serialization(self):
        health = WALHealthInfo(pending_archive_files=4, checked_at=NOW)
        restored = WALHealthInfo.from_dict(health.to_dict())
        assert restored.archive_healthy is None
        assert restored.inactive_slots is None
        assert restored.pending_archive_files == 4
        assert restored.checked_at == NOW


class TestResizePolicy:
    def test_from_dict(self):
        policy = ResizePolicy.from_dict({
            "enabled": True,
            "triggers": {"usageThreshold": 85, "minAvailable": "5Gi"},
            "expansion": {"step": "25%", "minStep": "1Gi", "maxStep": "100Gi", "limit": "1Ti"},
            "strategy": {
                "maxActionsPerDay": 2,
                "cooldownPeriod": "1h30m",
                "walSafetyPolicy": {
                    "requireArchiveHealthy": False,
                    "maxPendingWALFiles": 50,
                    "maxSlotRetentionBytes": "10Gi",
                    "acknowledgeWALRisk": True,
                },
            },
        })
        assert policy.enabled
        assert policy.triggers.usage_threshold == 85
        assert policy.expansion.limit == "1Ti"
        assert policy.strategy.max_actions_per_day == 2
        assert policy.strategy.cooldown_period == timedelta(minutes=90)
        safety = policy.strategy.wal_safety_policy
        assert not safety.require_archive_healthy
        assert safety.max_pending_wal_files == 50
        assert safety.max_slot_retention_bytes == 10 * GI
        assert safety.acknowledge_wal_risk

    def test_defaults(self):
        policy = ResizePolicy.from_dict({"enabled": True, "strategy": {"maxActionsPerDay": None}})
        assert policy.triggers.usage_threshold is None
        assert policy.expansion.step is None
        assert policy.strategy.max_actions_per_day == 3
        assert policy.strategy.cooldown_period == timedelta(hours=1)
        assert policy.strategy.wal_safety_policy is None
        assert ResizePolicy.from_dict(None) is None


class TestClusterSpec:
    def test_from_dict(self):
        spec = ClusterSpec.from_dict("pg-main", "databases", {
            "storage": {"size": "10Gi", "resize": {"enabled": True}},
            "walStorage": {"size": "5Gi"},
            "tablespaces": [
                {"name": "idx", "storage": {"size": "1Gi", "resize": {"enabled": True}}},
            ],
        })
        assert spec.has_separate_wal
        identities = [identity for identity, _ in spec.volume_policies()]
        assert identities == [
            VolumeIdentity("pg-main", VolumeRole.DATA),
            VolumeIdentity("pg-main", VolumeRole.WAL),
            VolumeIdentity("pg-main", VolumeRole.TABLESPACE, "idx"),
        ]
        assert dict(spec.volume_policies())[identities[1]] is None

    def test_single_volume(self):
        spec = ClusterSpec.from_dict("pg-main", "default", {"storage": {"size": "10Gi"}})
        assert not spec.has_separate_wal
        assert len(spec.volume_policies()) == 1


class TestClusterStatus:
    def test_append_event_drops_oldest(self):
        status = ClusterStatus()
        for hours in (3, 2, 1):
            status.append_event(
                resize_event(EventResult.SUCCESS, age=timedelta(hours=hours)), history_limit=2
            )
        assert [e.timestamp for e in status.auto_resize_events] == [
            NOW - timedelta(hours=2), NOW - timedelta(hours=1)
        ]

    def test_append_event_keeps_protected_events(self):
        success = resize_event(EventResult.SUCCESS, age=timedelta(hours=5))
        status = ClusterStatus(auto_resize_events=[
            success,
            resize_event(EventResult.BLOCKED, age=timedelta(hours=4), reason="at_limit: full"),
            resize_event(EventResult.BLOCKED, age=timedelta(hours=3), reason="at_limit: full"),
        ])
        latest = resize_event(EventResult.BLOCKED, age=timedelta(hours=1), reason="rate_limit: x")

        status.append_event(latest, history_limit=2,
                            keep=lambda e: e.result == EventResult.SUCCESS)

        assert status.auto_resize_events == [success, latest]

    def test_append_event_may_exceed_limit_for_protected_events(self):
        events = [resize_event(EventResult.SUCCESS, age=timedelta(hours=h)) for h in (3, 2)]
        status = ClusterStatus(auto_resize_events=list(events))
        latest = resize_event(EventResult.BLOCKED, reason="rate_limit: x")

        status.append_event(latest, history_limit=1, keep=lambda e: True)

        assert status.auto_resize_events == events + [latest]

    def test_merged_onto_newer_status(self):
        shared = resize_event(EventResult.SUCCESS, age=timedelta(hours=3))
        concurrent = resize_event(EventResult.SUCCESS, age=timedelta(hours=2), pvc_name="pg-main-2")
        ours = resize_event(EventResult.SUCCESS, age=timedelta(hours=1))
        latest = ClusterStatus(auto_resize_events=[shared, concurrent], resource_version="42")
        mine = ClusterStatus(auto_resize_events=[shared, ours], resource_version="41")
        mine.set_condition(ClusterCondition("AutoResizeBlocked", "True", "at_limit", "", "a"))

        merged = mine.merged_onto(latest)

        assert merged.auto_resize_events == [shared, concurrent, ours]
        assert merged.resource_version == "42"
        assert [c.volume for c in merged.conditions] == ["a"]

    def test_conditions_are_per_volume(self):
        status = ClusterStatus()
        status.set_condition(ClusterCondition("AutoResizeBlocked", "True", "at_limit", "", "a"))
        status.set_condition(ClusterCondition("AutoResizeBlocked", "True", "rate_limit", "", "b"))
        status.set_condition(ClusterCondition("AutoResizeBlocked", "True", "slot_retention", "", "a"))

        assert len(status.conditions) == 2
        assert status.get_condition("AutoResizeBlocked", "a").reason == "slot_retention"
        assert status.remove_condition("AutoResizeBlocked", "a")
        assert not status.remove_condition("AutoResizeBlocked", "a")

    def test_round_trip_through_status_document(self):
        status = ClusterStatus()
        status.append_event(resize_event(EventResult.BLOCKED, reason="at_limit: full"), 10)
        status.set_condition(ClusterCondition(
            "AutoResizeBlocked", "True", "at_limit", "full", "pg-main/data", NOW
        ))

        restored = ClusterStatus.from_dict(status.to_dict())

        assert restored.auto_resize_events == status.auto_resize_events
        assert restored.conditions[0].last_transition_time == NOW

    def test_event_sizes_stored_as_quantities(self):
        event = resize_event(EventResult.SUCCESS)
        data = event.to_dict()
        assert data["oldSize"] == "10Gi"
        assert data["newSize"] == "12Gi"
        assert data["timestamp"] == "2024-06-01T11:00:00Z"
        assert AutoResizeEvent.from_dict(data) == event


def test_instance_status_round_trip():
    status = InstanceDiskStatus(
        pod_name="pg-main-1",
        data=disk_status(42.0),
        tablespaces={"idx": disk_status(10.0)},
        wal_health=healthy_wal(),
    )
    restored = InstanceDiskStatus.from_dict(status.to_dict())
    assert restored.wal is None
    assert restored.data.percent_used == 42.0
    assert restored.volume(VolumeRole.TABLESPACE, "idx").sampled_at == NOW
    assert restored.wal_health.archive_healthy is True


def test_parse_timestamp():
    assert parse_timestamp("2024-06-01T12:00:00Z") == NOW
    assert parse_timestamp(None) is None


@pytest.mark.parametrize("value,expected", [
    ("1h", timedelta(hours=1)),
    ("30m", timedelta(minutes=30)),
    ("1h30m15s", timedelta(hours=1, minutes=30, seconds=15)),
    ("1.5h", timedelta(minutes=90)),
    ("250ms", timedelta(milliseconds=250)),
    ("0s", timedelta(0)),
    (600, timedelta(minutes=10)),
])
def test_parse_duration(value, expected):
    assert parse_duration(value) == expected


@pytest.mark.parametrize("value", ["", "1d", "h", "-1h", "10", True])
def test_parse_duration_rejects_invalid(value):
    with pytest.raises(ValueError):
        parse_duration(value)
