"""Admission rules for resize policies.

Errors make a policy unusable; warnings flag configurations that are
accepted but silently do nothing useful.
"""
from dataclasses import dataclass, field
from typing import List, Optional

from pgautoresize.models.models import ClusterSpec, ResizePolicy, VolumeRole
from pgautoresize.models.quantity import to_bytes
from pgautoresize.reconciler.clamping import is_percentage_step, parse_step


@dataclass
class ValidationResult:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def extend(self, other: "ValidationResult") -> None:
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)


def _parse_quantity(result: ValidationResult, path: str,
                    value: Optional[str]) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        parsed = to_bytes(value)
    except (ValueError, TypeError):
        result.errors.append(f"{path}: invalid quantity {value!r}")
        return None
    if parsed < 0:
        result.errors.append(f"{path}: must not be negative")
        return None
    return parsed


def validate_policy(policy: Optional[ResizePolicy], role: VolumeRole,
                    has_separate_wal: bool, path: str = "resize",
                    current_size: Optional[int] = None) -> ValidationResult:
    """Check one volume's resize policy.

    current_size, when known, enables the limit-below-size warning.
    """
    result = ValidationResult()
    if policy is None or not policy.enabled:
        return result

    threshold = policy.triggers.usage_threshold
    if threshold is not None and not 1 <= threshold <= 99:
        result.errors.append(
            f"{path}.triggers.usageThreshold: must be between 1 and 99, got {threshold}"
        )
    _parse_quantity(result, f"{path}.triggers.minAvailable", policy.triggers.min_available)

    expansion = policy.expansion
    step_path = f"{path}.expansion.step"
    try:
        parse_step(expansion.step)
    except (ValueError, TypeError) as e:
        result.errors.append(f"{step_path}: {e}")

    min_step = _parse_quantity(result, f"{path}.expansion.minStep", expansion.min_step)
    max_step = _parse_quantity(result, f"{path}.expansion.maxStep", expansion.max_step)
    if min_step is not None and max_step is not None and min_step > max_step:
        result.errors.append(
            f"{path}.expansion.minStep: {expansion.min_step} exceeds maxStep {expansion.max_step}"
        )
    if (expansion.step is not None and expansion.step != ""
            and not is_percentage_step(expansion.step)
            and (expansion.min_step or expansion.max_step)):
        result.warnings.append(
            f"{path}.expansion: minStep/maxStep are ignored with an absolute step"
        )

    limit = _parse_quantity(result, f"{path}.expansion.limit", expansion.limit)
    if limit is not None and current_size is not None and limit < current_size:
        result.warnings.append(
            f"{path}.expansion.limit: {expansion.limit} is below the current size, "
            f"the volume will never be resized"
        )

    max_actions = policy.strategy.max_actions_per_day
    if max_actions < 0:
        result.errors.append(f"{path}.strategy.maxActionsPerDay: must not be negative")
    elif max_actions == 0:
        result.warnings.append(
            f"{path}.strategy.maxActionsPerDay: 0 prevents every resize"
        )

    safety = policy.strategy.wal_safety_policy
    if safety is not None:
        if safety.max_pending_wal_files is not None and safety.max_pending_wal_files < 0:
            result.errors.append(
                f"{path}.strategy.walSafetyPolicy.maxPendingWALFiles: must not be negative"
            )
        if safety.max_slot_retention_bytes is not None and safety.max_slot_retention_bytes < 0:
            result.errors.append(
                f"{path}.strategy.walSafetyPolicy.maxSlotRetentionBytes: must not be negative"
            )

    if role == VolumeRole.DATA and not has_separate_wal:
        if safety is None or not safety.acknowledge_wal_risk:
            result.errors.append(
                f"{path}.strategy.walSafetyPolicy.acknowledgeWALRisk: must be true to "
                f"auto-resize a data volume that also holds WAL"
            )

    return result


def validate_cluster(spec: ClusterSpec) -> ValidationResult:
    """Check every resize policy declared by a cluster."""
    result = ValidationResult()
    result.extend(validate_policy(
        spec.storage.resize, VolumeRole.DATA, spec.has_separate_wal,
        path="spec.storage.resize",
        current_size=_declared_size(spec.storage.size),
    ))
    if spec.wal_storage is not None:
        result.extend(validate_policy(
            spec.wal_storage.resize, VolumeRole.WAL, True,
            path="spec.walStorage.resize",
            current_size=_declared_size(spec.wal_storage.size),
        ))
    for name, ts_spec in sorted(spec.tablespaces.items()):
        result.extend(validate_policy(
            ts_spec.resize, VolumeRole.TABLESPACE, spec.has_separate_wal,
            path=f"spec.tablespaces[{name}].storage.resize",
            current_size=_declared_size(ts_spec.size),
        ))
    return result


def _declared_size(size: Optional[str]) -> Optional[int]:
    if not size:
        return None
    try:
        return to_bytes(size)
    except ValueError:
        return None
