"""Volume and WAL inspection for database instances"""

from .probe import VolumeProbe, read_volume_stats
from .walhealth import WALHealthChecker
from .metrics import DiskMetricsCollector
