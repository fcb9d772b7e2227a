"""Resize decision package.

The engine itself lives in pgautoresize.reconciler.reconciler and is not
imported here, since the disk metrics depend on the budget helpers.
"""

from .errors import (
    AutoResizeError,
    ConfigInvalid,
    PatchFailed,
    ProbeError,
    ReconcileErrors,
    StatusUpdateError,
)
