"""Unit tests for the reconciliation and status reporting loops."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import kubernetes
import pytest

from pgautoresize.infrastructure.instance_status import InstanceStatusCollector
from pgautoresize.infrastructure.interfaces import ClusterStatusStore
from pgautoresize.infrastructure.manager import AutoResizeManager, InstanceStatusReporter
from pgautoresize.models.models import ClusterStatus, EventResult, VolumeRole
from pgautoresize.reconciler.errors import PatchFailed, StatusUpdateError
from pgautoresize.reconciler.reconciler import ResizeFailed, Resized
from tests.common.factories import (
    GI,
    cluster_spec,
    disk_status,
    instance_status,
    resize_policy,
    volume_claim,
)

pytestmark = pytest.mark.asyncio


@pytest.fixture
def store():
    mock_store = MagicMock(spec=ClusterStatusStore)
    mock_store.list_clusters = AsyncMock(return_value=[cluster_spec(data_policy=resize_policy())])
    mock_store.get_cluster = AsyncMock(return_value=cluster_spec(data_policy=resize_policy()))
    mock_store.read_status = AsyncMock(return_value=ClusterStatus())
    mock_store.write_status = AsyncMock()
    mock_store.read_instance_statuses = AsyncMock(
        return_value=[instance_status(data=disk_status(90.0))]
    )
    mock_store.list_volume_claims = AsyncMock(
        return_value=[volume_claim(VolumeRole.DATA, 10 * GI)]
    )
    return mock_store


async def test_reconcile_cluster_persists_status(store, reconciler, patcher):
    manager = AutoResizeManager(store, reconciler)
    cluster = cluster_spec(data_policy=resize_policy())

    outcomes = await manager.reconcile_cluster(cluster)

    assert any(isinstance(o, Resized) for o in outcomes)
    patcher.set_requested_size.assert_awaited_once_with("databases", "pg-main-1", 12 * GI)
    name, status = store.write_status.await_args.args
    assert name == "pg-main"
    assert status.auto_resize_events[0].result == EventResult.SUCCESS


async def test_status_persisted_when_volumes_fail(store, reconciler, patcher):
    patcher.set_requested_size.side_effect = PatchFailed("pg-main-1", "quota exceeded")
    manager = AutoResizeManager(store, reconciler)

    results = await manager.run_once()

    assert any(isinstance(o, ResizeFailed) for o in results["pg-main"])
    _, status = store.write_status.await_args.args
    assert status.auto_resize_events[0].result == EventResult.FAILED


async def test_status_update_failure_does_not_stop_other_clusters(store, reconciler):
    store.list_clusters.return_value = [
        cluster_spec(data_policy=resize_policy(), name="pg-a"),
        cluster_spec(data_policy=resize_policy(), name="pg-b"),
    ]
    store.write_status.side_effect = [StatusUpdateError("conflict"), None]
    manager = AutoResizeManager(store, reconciler)

    results = await manager.run_once()

    assert list(results) == ["pg-b"]
    assert store.write_status.await_count == 2


async def test_api_error_on_one_cluster_does_not_stop_others(store, reconciler, patcher):
    store.list_clusters.return_value = [
        cluster_spec(data_policy=resize_policy(), name="pg-a"),
        cluster_spec(data_policy=resize_policy(), name="pg-b"),
    ]

    async def read_status(name):
        if name == "pg-a":
            raise kubernetes.client.rest.ApiException(status=500, reason="Internal Server Error")
        return ClusterStatus()

    store.read_status.side_effect = read_status
    manager = AutoResizeManager(store, reconciler)

    results = await manager.run_once()

    assert list(results) == ["pg-b"]
    patcher.set_requested_size.assert_awaited_once_with("databases", "pg-main-1", 12 * GI)
    name, _ = store.write_status.await_args.args
    assert name == "pg-b"


async def test_loop_survives_errors_and_stops(store, reconciler):
    store.list_clusters.side_effect = [RuntimeError("api unavailable"), []]
    manager = AutoResizeManager(store, reconciler, interval=0.01)

    await manager.start()
    await asyncio.sleep(0.05)
    await manager.stop()

    assert store.list_clusters.await_count >= 2
    assert manager._task is None


async def test_instance_reporter_publishes(store):
    collector = MagicMock(spec=InstanceStatusCollector)
    collector.publish = AsyncMock()
    reporter = InstanceStatusReporter("pg-main", store, collector)

    await reporter.run_once()

    collector.publish.assert_awaited_once_with(store.get_cluster.return_value, store)


async def test_instance_reporter_skips_missing_cluster(store):
    store.get_cluster.return_value = None
    collector = MagicMock(spec=InstanceStatusCollector)
    collector.publish = AsyncMock()
    reporter = InstanceStatusReporter("pg-main", store, collector)

    assert await reporter.run_once() is None
    collector.publish.assert_not_awaited()
