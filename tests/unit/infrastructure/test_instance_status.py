"""Unit tests for the per-instance status collector."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from pgautoresize.disk.probe import VolumeProbe
from pgautoresize.disk.walhealth import WALHealthChecker
from pgautoresize.infrastructure.instance_status import InstanceStatusCollector
from pgautoresize.infrastructure.interfaces import ClusterStatusStore
from pgautoresize.models.models import VolumeRole
from pgautoresize.reconciler.errors import ProbeError
from tests.common.factories import cluster_spec, disk_status, healthy_wal, resize_policy

pytestmark = pytest.mark.asyncio


@pytest.fixture
def probe():
    mock_probe = MagicMock(spec=VolumeProbe)
    mock_probe.probe_volume = AsyncMock(
        side_effect=lambda role, tablespace="": disk_status(
            {VolumeRole.DATA: 40.0, VolumeRole.WAL: 20.0}.get(role, 10.0)
        )
    )
    return mock_probe


@pytest.fixture
def wal_checker():
    checker = MagicMock(spec=WALHealthChecker)
    checker.timeout = 5.0
    checker.check = AsyncMock(return_value=healthy_wal())
    return checker


async def test_collects_every_declared_volume(probe, wal_checker):
    cluster = cluster_spec(tablespaces={"idx": resize_policy(), "archive": resize_policy()})
    collector = InstanceStatusCollector("pg-main-1", probe, wal_checker)

    status = await collector.collect(cluster)

    assert status.pod_name == "pg-main-1"
    assert status.data.percent_used == 40.0
    assert status.wal.percent_used == 20.0
    assert sorted(status.tablespaces) == ["archive", "idx"]
    assert status.wal_health.archive_healthy is True
    wal_checker.check.assert_awaited_once_with(None)


async def test_single_volume_cluster_has_no_wal_status(probe, wal_checker):
    collector = InstanceStatusCollector("pg-main-1", probe, wal_checker)
    status = await collector.collect(cluster_spec(separate_wal=False))
    assert status.wal is None


async def test_failed_probe_keeps_previous_sample(probe, wal_checker):
    cluster = cluster_spec()
    collector = InstanceStatusCollector("pg-main-1", probe, wal_checker)
    first = await collector.collect(cluster)

    probe.probe_volume.side_effect = ProbeError("/var/lib/postgresql/data", "timed out")
    second = await collector.collect(cluster)

    assert second.data is first.data
    assert second.wal is first.wal


async def test_database_connection_is_closed(probe, wal_checker):
    conn = MagicMock()
    conn.close = AsyncMock()
    collector = InstanceStatusCollector("pg-main-1", probe, wal_checker,
                                        database_dsn="postgresql://localhost/postgres")

    with patch("pgautoresize.infrastructure.instance_status.connect",
               AsyncMock(return_value=conn)) as mock_connect:
        await collector.collect(cluster_spec())

    mock_connect.assert_awaited_once_with("postgresql://localhost/postgres", 5.0)
    wal_checker.check.assert_awaited_once_with(conn)
    conn.close.assert_awaited_once()


async def test_publish(probe, wal_checker):
    store = MagicMock(spec=ClusterStatusStore)
    store.publish_instance_status = AsyncMock()
    collector = InstanceStatusCollector("pg-main-1", probe, wal_checker)

    status = await collector.publish(cluster_spec(), store)

    store.publish_instance_status.assert_awaited_once_with("pg-main", status)
