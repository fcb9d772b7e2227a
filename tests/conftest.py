"""Global test configuration and fixtures."""
import logging
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add project root to Python path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from pgautoresize.infrastructure.interfaces import VolumePatcher
from pgautoresize.models.models import ClusterStatus
from pgautoresize.reconciler.reconciler import AutoResizeReconciler
from tests.common.factories import NOW

# Configure logging for tests
logging.basicConfig(level=logging.INFO)


@pytest.fixture
def patcher():
    """Volume patcher whose calls can be inspected."""
    mock_patcher = MagicMock(spec=VolumePatcher)
    mock_patcher.set_requested_size = AsyncMock(return_value=None)
    return mock_patcher


@pytest.fixture
def reconciler(patcher):
    """Reconciler with a frozen clock and metrics disabled."""
    return AutoResizeReconciler(patcher, metrics_enabled=False, clock=lambda: NOW)


@pytest.fixture
def cluster_status():
    return ClusterStatus()
