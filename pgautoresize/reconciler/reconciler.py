"""
Auto-resize decision engine.

Every (instance, volume) pair is walked through an ordered sequence of
gates; the first gate that stops the evaluation decides the outcome:

    disabled -> trigger -> cooldown -> budget -> ceiling -> WAL safety -> resize

Blocked decisions are persisted as events and conditions in the cluster
status, which is also the only source of the rate-limit budget.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from pgautoresize.disk.metrics import DiskMetricsCollector
from pgautoresize.infrastructure.interfaces import VolumePatcher
from pgautoresize.models.models import (
    UNVERIFIED_TAG,
    AutoResizeEvent,
    ClusterCondition,
    ClusterSpec,
    ClusterStatus,
    EventResult,
    InstanceDiskStatus,
    ResizePolicy,
    ResizeTriggers,
    VolumeClaim,
    VolumeDiskStatus,
    VolumeIdentity,
    VolumeRole,
    WALHealthInfo,
    WALSafetyPolicy,
    utcnow,
)
from pgautoresize.models.quantity import humanize_bytes, to_bytes
from pgautoresize.reconciler.clamping import calculate_new_size
from pgautoresize.reconciler.errors import (
    ConfigInvalid,
    PatchFailed,
    ReconcileErrors,
)
from pgautoresize.reconciler.ratelimit import (
    DEFAULT_MIN_EVENT_HISTORY,
    ResizeBudget,
    charged_at,
    compute_budget,
    counts_toward_budget,
    history_limit,
    in_cooldown,
    last_event,
)
from pgautoresize.reconciler.validation import validate_policy

logger = logging.getLogger(__name__)

DEFAULT_USAGE_THRESHOLD = 80
DEFAULT_FRESHNESS_WINDOW = timedelta(seconds=120)
BLOCKED_CONDITION = "AutoResizeBlocked"

REASON_RATE_LIMIT = "rate_limit"
REASON_AT_LIMIT = "at_limit"
REASON_ARCHIVE_UNHEALTHY = "archive_unhealthy"
REASON_PENDING_WAL_FILES = "pending_wal_files"
REASON_SLOT_RETENTION = "slot_retention"
REASON_CONFIG_INVALID = "config_invalid"


@dataclass(frozen=True)
class Outcome:
    """Terminal state of one volume evaluation."""
    identity: VolumeIdentity
    instance: str
    pvc_name: str = ""

    @property
    def blocked_reason(self) -> Optional[str]:
        return None


@dataclass(frozen=True)
class Skipped(Outcome):
    """No action: disabled, not triggered, unknown status, no claim or no change."""
    reason: str = ""


@dataclass(frozen=True)
class ConfigRejected(Outcome):
    errors: Tuple[str, ...] = ()

    @property
    def blocked_reason(self) -> Optional[str]:
        return REASON_CONFIG_INVALID


@dataclass(frozen=True)
class BudgetExhausted(Outcome):
    budget: Optional[ResizeBudget] = None

    @property
    def blocked_reason(self) -> Optional[str]:
        return REASON_RATE_LIMIT


@dataclass(frozen=True)
class AtLimit(Outcome):
    current_size: int = 0
    limit: int = 0

    @property
    def blocked_reason(self) -> Optional[str]:
        return REASON_AT_LIMIT


@dataclass(frozen=True)
class SafetyBlocked(Outcome):
    reason: str = ""
    message: str = ""

    @property
    def blocked_reason(self) -> Optional[str]:
        return self.reason


@dataclass(frozen=True)
class Resized(Outcome):
    old_size: int = 0
    new_size: int = 0
    unverified: bool = False


@dataclass(frozen=True)
class ResizeFailed(Outcome):
    old_size: int = 0
    new_size: int = 0
    error: str = ""


@dataclass(frozen=True)
class TriggerResult:
    triggered: bool
    reason: str = ""


@dataclass(frozen=True)
class WALSafetyVerdict:
    """Result of the WAL safety gate.

    reason is set when a known check failed. unverified is set when at
    least one check could not be evaluated because its value is unknown.
    """
    reason: Optional[str] = None
    message: str = ""
    unverified: bool = False
    unknown_checks: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def safe(self) -> bool:
        return self.reason is None


def evaluate_trigger(triggers: ResizeTriggers, volume: VolumeDiskStatus) -> TriggerResult:
    """OR-combine the usage and free-space triggers.

    With neither configured, the default usage threshold applies.
    """
    threshold = triggers.usage_threshold
    min_available = to_bytes(triggers.min_available) if triggers.min_available else None
    if threshold is None and min_available is None:
        threshold = DEFAULT_USAGE_THRESHOLD

    if threshold is not None and volume.percent_used >= threshold:
        return TriggerResult(
            True, f"usage {volume.percent_used:.1f}% >= threshold {threshold}%"
        )
    if min_available is not None and volume.available_bytes < min_available:
        return TriggerResult(
            True,
            f"available {humanize_bytes(volume.available_bytes)} < "
            f"minAvailable {triggers.min_available}",
        )
    return TriggerResult(False)


def evaluate_wal_safety(health: Optional[WALHealthInfo],
                        policy: WALSafetyPolicy) -> WALSafetyVerdict:
    """Check archiver, pending files and slot retention against the policy.

    Unknown values never block; they mark the verdict unverified.
    """
    if health is None:
        return WALSafetyVerdict(
            unverified=True,
            unknown_checks=("archive", "pending_files", "slot_retention"),
        )

    unknown = []

    if policy.require_archive_healthy:
        if health.archive_healthy is None:
            unknown.append("archive")
        elif not health.archive_healthy:
            return WALSafetyVerdict(
                reason=REASON_ARCHIVE_UNHEALTHY,
                message=(
                    f"WAL archive unhealthy: last failure {health.last_archive_failure} "
                    f"is more recent than last success {health.last_archive_success}"
                ),
            )

    max_pending = policy.max_pending_wal_files
    if max_pending is not None and max_pending > 0:
        if health.pending_archive_files is None:
            unknown.append("pending_files")
        elif health.pending_archive_files > max_pending:
            return WALSafetyVerdict(
                reason=REASON_PENDING_WAL_FILES,
                message=(
                    f"too many pending WAL files: "
                    f"{health.pending_archive_files} > {max_pending}"
                ),
            )

    max_retention = policy.max_slot_retention_bytes
    if max_retention is not None:
        # Measured slots alone can already prove a violation.
        retained = health.measured_slot_retention_bytes
        if retained is None:
            unknown.append("slot_retention")
        elif retained > max_retention:
            return WALSafetyVerdict(
                reason=REASON_SLOT_RETENTION,
                message=(
                    f"inactive replication slots {health.inactive_replication_slots} "
                    f"retain {humanize_bytes(retained)} > "
                    f"maxSlotRetentionBytes {humanize_bytes(max_retention)}"
                ),
            )
        elif not health.slot_retention_complete:
            unknown.append("slot_retention")

    return WALSafetyVerdict(unverified=bool(unknown), unknown_checks=tuple(unknown))


def wal_safety_applies(identity: VolumeIdentity, cluster: ClusterSpec) -> bool:
    """The WAL volume, or the data volume when it also holds the WAL."""
    if identity.role == VolumeRole.WAL:
        return True
    return identity.role == VolumeRole.DATA and not cluster.has_separate_wal


def find_claim(claims: List[VolumeClaim], instance: str,
               identity: VolumeIdentity) -> Optional[VolumeClaim]:
    for claim in claims:
        if (claim.instance == instance and claim.role == identity.role
                and claim.tablespace == identity.tablespace):
            return claim
    return None


def block_reason_text(reason: str, message: str) -> str:
    return f"{reason}: {message}"


class AutoResizeReconciler:
    """Decides, per volume, whether to grow it, by how much, or why not."""

    def __init__(self,
                 patcher: VolumePatcher,
                 freshness_window: timedelta = DEFAULT_FRESHNESS_WINDOW,
                 min_event_history: int = DEFAULT_MIN_EVENT_HISTORY,
                 metrics_enabled: bool = True,
                 clock: Callable[[], datetime] = utcnow):
        self.patcher = patcher
        self.freshness_window = freshness_window
        self.min_event_history = min_event_history
        self.metrics_enabled = metrics_enabled
        self.clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, identity: VolumeIdentity) -> asyncio.Lock:
        # Budget check and event append must not interleave for one identity.
        return self._locks.setdefault(identity.key, asyncio.Lock())

    def _is_fresh(self, sampled_at: Optional[datetime], now: datetime) -> bool:
        return sampled_at is not None and now - sampled_at <= self.freshness_window

    def history_limit(self, cluster: ClusterSpec) -> int:
        enabled = [
            policy for _, policy in cluster.volume_policies()
            if policy is not None and policy.enabled
        ]
        return history_limit(
            [p.strategy.max_actions_per_day for p in enabled],
            identities=len(enabled),
            minimum=self.min_event_history,
        )

    async def reconcile(self,
                        cluster: ClusterSpec,
                        status: ClusterStatus,
                        instances: List[InstanceDiskStatus],
                        claims: List[VolumeClaim]) -> List[Outcome]:
        """Evaluate every volume of every instance.

        status is updated in place. Failures of individual volumes do not
        stop the others; they are raised together once the pass is done.

        Raises:
            ReconcileErrors: If any volume failed to resize or could not
                be evaluated. The exception carries all outcomes.
        """
        # One timestamp per pass: every claim grown in it is the same action.
        now = self.clock().replace(microsecond=0)
        metrics = DiskMetricsCollector(cluster.name) if self.metrics_enabled else None
        history_cap = self.history_limit(cluster)

        evaluations = []
        for instance in instances:
            if metrics:
                metrics.set_wal_health(instance.pod_name, instance.wal_health)
            for identity, policy in cluster.volume_policies():
                evaluations.append(self._evaluate_guarded(
                    cluster, status, identity, policy, instance, claims, history_cap, metrics, now
                ))

        outcomes: List[Outcome] = []
        errors: List[Exception] = []
        for outcome, error in await asyncio.gather(*evaluations):
            if outcome is not None:
                outcomes.append(outcome)
            if error is not None:
                errors.append(error)

        if errors:
            raise ReconcileErrors(errors, outcomes)
        return outcomes

    async def _evaluate_guarded(self, cluster, status, identity, policy, instance,
                                claims, history_cap, metrics, now):
        try:
            async with self._lock_for(identity):
                outcome = await self.evaluate_volume(
                    cluster, status, identity, policy, instance, claims, history_cap, metrics, now
                )
        except Exception as e:
            logger.error(
                f"Failed to evaluate auto-resize for {identity} on {instance.pod_name}: {e}"
            )
            return None, e

        if isinstance(outcome, ResizeFailed):
            return outcome, PatchFailed(outcome.pvc_name, outcome.error)
        if isinstance(outcome, ConfigRejected):
            return outcome, ConfigInvalid(identity.key, list(outcome.errors))
        return outcome, None

    async def evaluate_volume(self,
                              cluster: ClusterSpec,
                              status: ClusterStatus,
                              identity: VolumeIdentity,
                              policy: Optional[ResizePolicy],
                              instance: InstanceDiskStatus,
                              claims: List[VolumeClaim],
                              history_cap: int,
                              metrics: Optional[DiskMetricsCollector] = None,
                              now: Optional[datetime] = None) -> Outcome:
        if now is None:
            now = self.clock().replace(microsecond=0)
        pod = instance.pod_name

        if policy is None or not policy.enabled:
            return Skipped(identity, pod, reason="disabled")

        validation = validate_policy(policy, identity.role, cluster.has_separate_wal)
        if not validation.valid:
            logger.error(f"Skipping {identity} on {pod}: {'; '.join(validation.errors)}")
            status.set_condition(ClusterCondition(
                type=BLOCKED_CONDITION,
                status="True",
                reason=REASON_CONFIG_INVALID,
                message="; ".join(validation.errors),
                volume=identity.key,
            ))
            if metrics:
                metrics.set_decision(identity, False, REASON_CONFIG_INVALID, 0)
            return ConfigRejected(identity, pod, errors=tuple(validation.errors))

        claim = find_claim(claims, pod, identity)
        if claim is None:
            logger.warning(f"No volume claim found for {identity} on {pod}")
            return Skipped(identity, pod, reason="no_volume")

        volume = instance.volume(identity.role, identity.tablespace)
        if volume is None or not self._is_fresh(volume.sampled_at, now):
            logger.warning(
                f"Disk status for {claim.name} is missing or stale, skipping evaluation"
            )
            return Skipped(identity, pod, claim.name, reason="status_unknown")

        expansion = policy.expansion
        limit_bytes = to_bytes(expansion.limit) if expansion.limit else None
        at_limit = limit_bytes is not None and claim.requested_bytes >= limit_bytes
        volume.at_limit = at_limit
        budget = compute_budget(
            status.auto_resize_events, identity,
            policy.strategy.max_actions_per_day, now
        )
        if metrics:
            metrics.set_volume_stats(identity, volume)

        def observe(blocked_reason: Optional[str] = None) -> None:
            if metrics:
                remaining = compute_budget(
                    status.auto_resize_events, identity,
                    policy.strategy.max_actions_per_day, now
                ).remaining
                metrics.set_decision(identity, at_limit, blocked_reason, remaining)
                metrics.set_event_counts(identity, status.auto_resize_events)

        trigger = evaluate_trigger(policy.triggers, volume)
        if not trigger.triggered:
            observe()
            return Skipped(identity, pod, claim.name, reason="not_triggered")

        logger.info(f"Volume {claim.name} ({identity}) triggered: {trigger.reason}")

        if in_cooldown(status.auto_resize_events, claim.name,
                       policy.strategy.cooldown_period, now):
            logger.info(f"Volume {claim.name} was resized recently, in cooldown")
            observe()
            return Skipped(identity, pod, claim.name, reason="cooldown")

        # Claims of other instances grown earlier in this pass already paid.
        if budget.exhausted and not charged_at(status.auto_resize_events, identity, now):
            self._record_block(
                status, identity, pod, claim, REASON_RATE_LIMIT,
                f"{budget.actions_in_window} resize action(s) in the last 24h, "
                f"maxActionsPerDay is {policy.strategy.max_actions_per_day}",
                history_cap, now,
            )
            observe(REASON_RATE_LIMIT)
            return BudgetExhausted(identity, pod, claim.name, budget=budget)

        if at_limit:
            self._record_block(
                status, identity, pod, claim, REASON_AT_LIMIT,
                f"size {humanize_bytes(claim.requested_bytes)} has reached "
                f"limit {expansion.limit}",
                history_cap, now,
            )
            observe(REASON_AT_LIMIT)
            return AtLimit(identity, pod, claim.name,
                           current_size=claim.requested_bytes, limit=limit_bytes)

        verdict = WALSafetyVerdict()
        if wal_safety_applies(identity, cluster):
            health = instance.wal_health
            if health is not None and not self._is_fresh(health.checked_at, now):
                health = None
            verdict = evaluate_wal_safety(
                health, policy.strategy.wal_safety_policy or WALSafetyPolicy()
            )
            if not verdict.safe:
                self._record_block(
                    status, identity, pod, claim, verdict.reason, verdict.message,
                    history_cap, now,
                )
                observe(verdict.reason)
                return SafetyBlocked(identity, pod, claim.name,
                                     reason=verdict.reason, message=verdict.message)

        new_size = calculate_new_size(
            claim.requested_bytes,
            step=expansion.step,
            min_step=expansion.min_step,
            max_step=expansion.max_step,
            limit=expansion.limit,
        )
        if new_size == claim.requested_bytes:
            observe()
            return Skipped(identity, pod, claim.name, reason="no_change")

        reason = trigger.reason
        if verdict.unverified:
            reason = f"{reason} {UNVERIFIED_TAG}"
            logger.warning(
                f"Resizing {claim.name} without WAL safety verification, "
                f"unknown checks: {', '.join(verdict.unknown_checks)}"
            )

        try:
            await self.patcher.set_requested_size(cluster.namespace, claim.name, new_size)
        except Exception as e:
            logger.error(f"Failed to resize {claim.name}: {e}")
            self._append_event(status, AutoResizeEvent(
                timestamp=now,
                cluster=cluster.name,
                instance=pod,
                pvc_name=claim.name,
                volume_type=identity.role,
                tablespace=identity.tablespace,
                old_size=claim.requested_bytes,
                new_size=new_size,
                reason=f"{reason}; patch failed: {e}",
                result=EventResult.FAILED,
            ), history_cap, now)
            observe()
            return ResizeFailed(identity, pod, claim.name,
                                old_size=claim.requested_bytes, new_size=new_size,
                                error=str(e))

        self._append_event(status, AutoResizeEvent(
            timestamp=now,
            cluster=cluster.name,
            instance=pod,
            pvc_name=claim.name,
            volume_type=identity.role,
            tablespace=identity.tablespace,
            old_size=claim.requested_bytes,
            new_size=new_size,
            reason=reason,
            result=EventResult.SUCCESS,
        ), history_cap, now)
        status.remove_condition(BLOCKED_CONDITION, identity.key)
        logger.info(
            f"Resized {claim.name} from {humanize_bytes(claim.requested_bytes)} "
            f"to {humanize_bytes(new_size)} ({reason})"
        )
        observe()
        return Resized(identity, pod, claim.name,
                       old_size=claim.requested_bytes, new_size=new_size,
                       unverified=verdict.unverified)

    def _append_event(self, status: ClusterStatus, event: AutoResizeEvent,
                      history_cap: int, now: datetime) -> None:
        status.append_event(event, history_cap,
                            keep=lambda existing: counts_toward_budget(existing, now))

    def _record_block(self, status: ClusterStatus, identity: VolumeIdentity,
                      instance: str, claim: VolumeClaim, reason: str, message: str,
                      history_cap: int, now: datetime) -> None:
        """Persist a block as a condition, and as an event when the reason changed.

        Events are deduplicated per instance, so instances blocked for
        different reasons do not each record a new event on every pass.
        """
        logger.warning(f"Auto-resize of {claim.name} ({identity}) blocked: {message}")
        status.set_condition(ClusterCondition(
            type=BLOCKED_CONDITION,
            status="True",
            reason=reason,
            message=f"{claim.name}: {message}",
            volume=identity.key,
        ))

        previous = last_event(status.auto_resize_events, identity, instance)
        if (previous is not None and previous.result == EventResult.BLOCKED
                and previous.reason.startswith(f"{reason}:")):
            return
        self._append_event(status, AutoResizeEvent(
            timestamp=now,
            cluster=identity.cluster,
            instance=instance,
            pvc_name=claim.name,
            volume_type=identity.role,
            tablespace=identity.tablespace,
            old_size=claim.requested_bytes,
            new_size=claim.requested_bytes,
            reason=block_reason_text(reason, message),
            result=EventResult.BLOCKED,
        ), history_cap, now)
