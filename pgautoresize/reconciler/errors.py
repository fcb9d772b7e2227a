"""Error types for the auto-resize subsystem."""
from typing import List, Optional


class AutoResizeError(Exception):
    """Base class for auto-resize errors."""
    pass


class ProbeError(AutoResizeError):
    """Raised when current volume or WAL state cannot be read."""

    def __init__(self, path: str, message: str):
        super().__init__(f"probe of {path} failed: {message}")
        self.path = path


class PatchFailed(AutoResizeError):
    """Raised when the storage platform rejects a volume size request."""

    def __init__(self, pvc_name: str, message: str, status: Optional[int] = None):
        super().__init__(f"failed to resize {pvc_name}: {message}")
        self.pvc_name = pvc_name
        self.status = status


class ConfigInvalid(AutoResizeError):
    """Raised when a resize policy violates the admission rules."""

    def __init__(self, volume: str, errors: List[str]):
        super().__init__(f"invalid resize policy for {volume}: {'; '.join(errors)}")
        self.volume = volume
        self.errors = errors


class StatusUpdateError(AutoResizeError):
    """Raised when the cluster status cannot be persisted."""
    pass


class ReconcileErrors(AutoResizeError):
    """Per-volume failures collected over one reconciliation pass."""

    def __init__(self, errors: List[Exception], outcomes: Optional[list] = None):
        super().__init__(
            f"{len(errors)} volume(s) failed: " + "; ".join(str(e) for e in errors)
        )
        self.errors = errors
        self.outcomes = outcomes or []
