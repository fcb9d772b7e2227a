"""Fixed-interval loops driving status collection and reconciliation."""

import asyncio
import logging
from typing import Dict, List, Optional

from pgautoresize.infrastructure.instance_status import InstanceStatusCollector
from pgautoresize.infrastructure.interfaces import ClusterStatusStore
from pgautoresize.models.models import ClusterSpec
from pgautoresize.reconciler.errors import ReconcileErrors, StatusUpdateError
from pgautoresize.reconciler.reconciler import AutoResizeReconciler, Outcome

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs run_once every interval seconds until stopped."""

    name = "periodic task"

    def __init__(self, interval: float):
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def run_once(self):
        raise NotImplementedError

    async def start(self):
        if self._running:
            return
        self._running = True
        logger.info(f"Starting {self.name} every {self.interval}s")
        self._task = asyncio.create_task(self._loop())

    async def stop(self):
        logger.info(f"Stopping {self.name}")
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self):
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in {self.name}: {e}")
            await asyncio.sleep(self.interval)


class AutoResizeManager(PeriodicTask):
    """Reconciles the auto-resize state of every cluster in a namespace."""

    name = "auto-resize reconciliation"

    def __init__(self, store: ClusterStatusStore, reconciler: AutoResizeReconciler,
                 interval: float = 30.0):
        super().__init__(interval)
        self.store = store
        self.reconciler = reconciler

    async def reconcile_cluster(self, cluster: ClusterSpec) -> List[Outcome]:
        """Run one pass for a cluster and persist its status.

        The status is written even when some volumes failed, so events
        recorded by the other volumes are never lost.

        Raises:
            ReconcileErrors: Per-volume failures from the pass.
            StatusUpdateError: If the status could not be persisted.
        """
        status = await self.store.read_status(cluster.name)
        instances = await self.store.read_instance_statuses(cluster.name)
        claims = await self.store.list_volume_claims(cluster)

        try:
            outcomes = await self.reconciler.reconcile(cluster, status, instances, claims)
        finally:
            await self.store.write_status(cluster.name, status)
        return outcomes

    async def run_once(self) -> Dict[str, List[Outcome]]:
        results = {}
        for cluster in await self.store.list_clusters():
            try:
                results[cluster.name] = await self.reconcile_cluster(cluster)
            except ReconcileErrors as e:
                for error in e.errors:
                    logger.error(f"Cluster {cluster.name}: {error}")
                results[cluster.name] = e.outcomes
            except StatusUpdateError as e:
                logger.error(str(e))
            except Exception as e:
                logger.error(f"Failed to reconcile cluster {cluster.name}: {e}")
        return results


class InstanceStatusReporter(PeriodicTask):
    """Publishes the local instance's disk and WAL status on its cluster."""

    name = "instance status reporting"

    def __init__(self, cluster_name: str, store: ClusterStatusStore,
                 collector: InstanceStatusCollector, interval: float = 30.0):
        super().__init__(interval)
        self.cluster_name = cluster_name
        self.store = store
        self.collector = collector

    async def run_once(self):
        cluster = await self.store.get_cluster(self.cluster_name)
        if cluster is None:
            logger.warning(f"Cluster {self.cluster_name} not found, skipping status report")
            return None
        return await self.collector.publish(cluster, self.store)
