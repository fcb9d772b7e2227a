"""Operator configuration management."""

import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from dotenv import load_dotenv

from pgautoresize.disk.probe import (
    DEFAULT_PGDATA_PATH,
    DEFAULT_PGWAL_PATH,
    DEFAULT_TABLESPACES_PATH,
)
from pgautoresize.disk.walhealth import DEFAULT_ARCHIVE_STATUS_PATH
from pgautoresize.reconciler.ratelimit import DEFAULT_MIN_EVENT_HISTORY

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


@dataclass
class ProbeConfig:
    pgdata_path: str
    pgwal_path: str
    tablespaces_path: str
    archive_status_path: str
    timeout: float


@dataclass
class MetricsConfig:
    enabled: bool
    port: int


@dataclass
class OperatorConfig:
    namespace: str
    reconcile_interval: float
    status_freshness: timedelta
    min_event_history: int
    probe: ProbeConfig
    metrics: MetricsConfig
    database_dsn: Optional[str]
    log_level: str


def _get_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == 'true'


def load_operator_config(env_file: Optional[str] = None) -> OperatorConfig:
    """Load operator configuration from environment variables.

    Values from an optional .env file are loaded first and never override
    variables already present in the environment.
    """
    load_dotenv(env_file)

    probe_config = ProbeConfig(
        pgdata_path=os.getenv('AUTORESIZE_PGDATA_PATH', DEFAULT_PGDATA_PATH),
        pgwal_path=os.getenv('AUTORESIZE_PGWAL_PATH', DEFAULT_PGWAL_PATH),
        tablespaces_path=os.getenv('AUTORESIZE_TABLESPACES_PATH', DEFAULT_TABLESPACES_PATH),
        archive_status_path=os.getenv(
            'AUTORESIZE_ARCHIVE_STATUS_PATH', DEFAULT_ARCHIVE_STATUS_PATH
        ),
        timeout=float(os.getenv('AUTORESIZE_PROBE_TIMEOUT', '10'))
    )

    metrics_config = MetricsConfig(
        enabled=_get_bool('AUTORESIZE_METRICS_ENABLED', 'true'),
        port=int(os.getenv('AUTORESIZE_METRICS_PORT', '9187'))
    )

    return OperatorConfig(
        namespace=os.getenv('AUTORESIZE_NAMESPACE', 'default'),
        reconcile_interval=float(os.getenv('AUTORESIZE_RECONCILE_INTERVAL', '30')),
        # Twice the longest probe interval
        status_freshness=timedelta(
            seconds=float(os.getenv('AUTORESIZE_STATUS_FRESHNESS', '120'))
        ),
        min_event_history=int(
            os.getenv('AUTORESIZE_MIN_EVENT_HISTORY', str(DEFAULT_MIN_EVENT_HISTORY))
        ),
        probe=probe_config,
        metrics=metrics_config,
        database_dsn=os.getenv('AUTORESIZE_DATABASE_DSN') or None,
        log_level=os.getenv('LOG_LEVEL', 'INFO').upper()
    )


def setup_logging(level: str = 'INFO'):
    """Configure logging with consistent format."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT
    )
