#!/usr/bin/env python3
"""
Storage auto-resize inspection tools.
Shows per-volume usage, resize budget and recent events, and validates policy files.
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from typing import Dict, List, Optional

from tabulate import tabulate

from pgautoresize.config.operator_config import setup_logging
from pgautoresize.config.policy_loader import PolicyLoadError, load_clusters_file
from pgautoresize.models.models import (
    ClusterSpec,
    ClusterStatus,
    InstanceDiskStatus,
    format_timestamp,
    utcnow,
)
from pgautoresize.models.quantity import humanize_bytes
from pgautoresize.reconciler.ratelimit import compute_budget, last_event
from pgautoresize.reconciler.reconciler import BLOCKED_CONDITION, DEFAULT_USAGE_THRESHOLD
from pgautoresize.reconciler.validation import validate_cluster


def parse_args(argv: Optional[List[str]] = None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Storage auto-resize tools')
    subparsers = parser.add_subparsers(dest='command', help='Command to execute')

    status_parser = subparsers.add_parser('status', help='Show auto-resize state of a cluster')
    status_parser.add_argument('cluster', help='Cluster name')
    status_parser.add_argument('--namespace', default='default',
                               help='Kubernetes namespace of the cluster')
    status_parser.add_argument('--output', choices=['table', 'json'], default='table',
                               help='Output format')

    validate_parser = subparsers.add_parser('validate', help='Validate a cluster policy file')
    validate_parser.add_argument('file', help='Path to cluster definition YAML')

    return parser.parse_args(argv)


def build_status_rows(cluster: ClusterSpec, status: ClusterStatus,
                      instances: List[InstanceDiskStatus],
                      now: Optional[datetime] = None) -> List[Dict]:
    """One row per instance and volume."""
    now = now or utcnow()
    rows = []
    for identity, policy in cluster.volume_policies():
        enabled = policy is not None and policy.enabled
        budget = None
        if enabled:
            budget = compute_budget(
                status.auto_resize_events, identity,
                policy.strategy.max_actions_per_day, now
            )
        latest = last_event(status.auto_resize_events, identity)
        condition = status.get_condition(BLOCKED_CONDITION, identity.key)

        for instance in instances or [InstanceDiskStatus(pod_name="-")]:
            volume = instance.volume(identity.role, identity.tablespace)
            threshold = None
            if enabled:
                threshold = policy.triggers.usage_threshold
                if threshold is None and not policy.triggers.min_available:
                    threshold = DEFAULT_USAGE_THRESHOLD
            rows.append({
                'instance': instance.pod_name,
                'volume': identity.role.value,
                'tablespace': identity.tablespace or '-',
                'enabled': enabled,
                'used': f"{volume.percent_used:.1f}%" if volume else 'unknown',
                'size': humanize_bytes(volume.total_bytes) if volume else 'unknown',
                'threshold': f"{threshold}%" if threshold is not None else '-',
                'limit': (policy.expansion.limit or '-') if enabled else '-',
                'budget': f"{budget.remaining}" if budget else '-',
                'blocked': condition.reason if condition else '-',
                'last_event': (
                    f"{latest.result.value} {format_timestamp(latest.timestamp)}"
                    if latest else '-'
                ),
            })
    return rows


def print_rows_table(rows: List[Dict]):
    """Print rows in table format."""
    if not rows:
        print("No volumes found")
        return

    headers = rows[0].keys()
    print(tabulate([r.values() for r in rows], headers=headers, tablefmt='grid'))


async def show_status(args) -> int:
    from pgautoresize.infrastructure.kube_client import KubeClusterStatusStore, load_kube_config

    load_kube_config()
    store = KubeClusterStatusStore(namespace=args.namespace)
    cluster = await store.get_cluster(args.cluster)
    if cluster is None:
        logging.error(f"Cluster {args.namespace}/{args.cluster} not found")
        return 1
    status = await store.read_status(args.cluster)
    instances = await store.read_instance_statuses(args.cluster)
    rows = build_status_rows(cluster, status, instances)

    if args.output == 'table':
        print_rows_table(rows)
        events = status.auto_resize_events[-10:]
        if events:
            print()
            print(tabulate(
                [[format_timestamp(e.timestamp), e.pvc_name, e.result.value,
                  humanize_bytes(e.old_size), humanize_bytes(e.new_size), e.reason]
                 for e in events],
                headers=['time', 'pvc', 'result', 'old', 'new', 'reason'],
                tablefmt='grid'
            ))
    else:
        print(json.dumps({'volumes': rows, 'status': status.to_dict()}, indent=2))
    return 0


def validate_file(args) -> int:
    try:
        clusters = load_clusters_file(args.file)
    except (OSError, PolicyLoadError) as e:
        logging.error(f"Failed to load {args.file}: {e}")
        return 1

    exit_code = 0
    for cluster in clusters:
        result = validate_cluster(cluster)
        for warning in result.warnings:
            print(f"{cluster.name}: warning: {warning}")
        for error in result.errors:
            print(f"{cluster.name}: error: {error}")
        if result.valid:
            print(f"{cluster.name}: valid")
        else:
            exit_code = 1
    return exit_code


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for storage status tools."""
    setup_logging()
    args = parse_args(argv)

    try:
        if args.command == 'status':
            return asyncio.run(show_status(args))
        elif args.command == 'validate':
            return validate_file(args)
        logging.error("No command specified. Use --help for usage information.")
        return 1
    except KeyboardInterrupt:
        logging.info("Operation stopped by user")
        return 130


if __name__ == '__main__':
    sys.exit(main())
