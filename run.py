#!/usr/bin/env python3
"""Entry point for the auto-resize operator and the per-instance status reporter."""

import argparse
import asyncio
import logging
import os
import signal

from prometheus_client import start_http_server

from pgautoresize.config.operator_config import load_operator_config, setup_logging
from pgautoresize.disk.probe import VolumeProbe
from pgautoresize.disk.walhealth import WALHealthChecker
from pgautoresize.infrastructure.instance_status import InstanceStatusCollector
from pgautoresize.infrastructure.kube_client import (
    KubeClusterStatusStore,
    KubeVolumePatcher,
    load_kube_config,
)
from pgautoresize.infrastructure.manager import AutoResizeManager, InstanceStatusReporter
from pgautoresize.reconciler.reconciler import AutoResizeReconciler

logger = logging.getLogger(__name__)


def build_task(mode: str, config):
    store = KubeClusterStatusStore(namespace=config.namespace)
    if mode == 'operator':
        reconciler = AutoResizeReconciler(
            KubeVolumePatcher(),
            freshness_window=config.status_freshness,
            min_event_history=config.min_event_history,
            metrics_enabled=config.metrics.enabled,
        )
        return AutoResizeManager(store, reconciler, interval=config.reconcile_interval)

    cluster_name = os.environ['AUTORESIZE_CLUSTER_NAME']
    pod_name = os.environ.get('POD_NAME', os.environ.get('HOSTNAME', 'localhost'))
    collector = InstanceStatusCollector(
        pod_name,
        VolumeProbe(
            data_path=config.probe.pgdata_path,
            wal_path=config.probe.pgwal_path,
            tablespaces_path=config.probe.tablespaces_path,
            timeout=config.probe.timeout,
        ),
        WALHealthChecker(
            archive_status_path=config.probe.archive_status_path,
            timeout=config.probe.timeout,
        ),
        database_dsn=config.database_dsn,
    )
    return InstanceStatusReporter(cluster_name, store, collector,
                                  interval=config.reconcile_interval)


async def run(mode: str):
    config = load_operator_config()
    setup_logging(config.log_level)
    load_kube_config()

    if config.metrics.enabled and mode == 'operator':
        start_http_server(config.metrics.port)
        logger.info(f"Serving metrics on port {config.metrics.port}")

    task = build_task(mode, config)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await task.start()
    try:
        await stop_event.wait()
    finally:
        await task.stop()


def main():
    parser = argparse.ArgumentParser(description='PostgreSQL storage auto-resize')
    parser.add_argument('mode', choices=['operator', 'instance'], default='operator', nargs='?',
                        help='Reconcile clusters, or report the local instance status')
    args = parser.parse_args()
    asyncio.run(run(args.mode))


if __name__ == '__main__':
    main()
