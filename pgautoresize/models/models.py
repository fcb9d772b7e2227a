"""Data models for the storage auto-resize subsystem."""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from pgautoresize.models.quantity import format_bytes, parse_duration, to_bytes


class VolumeRole(Enum):
    """Kind of persistent volume attached to a database instance."""
    DATA = "data"
    WAL = "wal"
    TABLESPACE = "tablespace"


class EventResult(Enum):
    """Result recorded on an auto-resize event."""
    SUCCESS = "success"
    FAILED = "failed"
    BLOCKED = "blocked"


# Appended to the reason of a resize performed while WAL health was unknown.
UNVERIFIED_TAG = "[unverified: WAL health unknown]"

DEFAULT_COOLDOWN_PERIOD = timedelta(hours=1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp as stored in the cluster status."""
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class VolumeIdentity:
    """Logical volume identity, stable across physical volume replacement."""
    cluster: str
    role: VolumeRole
    tablespace: str = ""

    @property
    def key(self) -> str:
        if self.role == VolumeRole.TABLESPACE:
            return f"{self.cluster}/tablespace:{self.tablespace}"
        return f"{self.cluster}/{self.role.value}"

    def __str__(self) -> str:
        return self.key


@dataclass
class VolumeDiskStatus:
    """Filesystem usage of one mounted volume."""
    total_bytes: int
    used_bytes: int
    available_bytes: int
    percent_used: float
    inodes_total: int = 0
    inodes_used: int = 0
    inodes_free: int = 0
    at_limit: bool = False
    path: str = ""
    sampled_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "totalBytes": self.total_bytes,
            "usedBytes": self.used_bytes,
            "availableBytes": self.available_bytes,
            "percentUsed": self.percent_used,
            "inodesTotal": self.inodes_total,
            "inodesUsed": self.inodes_used,
            "inodesFree": self.inodes_free,
            "atLimit": self.at_limit,
            "sampledAt": format_timestamp(self.sampled_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VolumeDiskStatus":
        return cls(
            total_bytes=int(data.get("totalBytes", 0)),
            used_bytes=int(data.get("usedBytes", 0)),
            available_bytes=int(data.get("availableBytes", 0)),
            percent_used=float(data.get("percentUsed", 0)),
            inodes_total=int(data.get("inodesTotal", 0)),
            inodes_used=int(data.get("inodesUsed", 0)),
            inodes_free=int(data.get("inodesFree", 0)),
            at_limit=bool(data.get("atLimit", False)),
            path=data.get("path", ""),
            sampled_at=parse_timestamp(data.get("sampledAt")),
        )


@dataclass
class SlotInfo:
    """A physical replication slot and the WAL it holds back."""
    name: str
    active: bool
    retained_bytes: Optional[int] = None
    restart_lsn: Optional[str] = None


@dataclass
class WALHealthInfo:
    """WAL archiver and replication slot health of one instance.

    A field set to None means the corresponding check could not be
    performed; it is unknown, never implicitly healthy.
    """
    archive_healthy: Optional[bool] = None
    pending_archive_files: Optional[int] = None
    inactive_slots: Optional[List[SlotInfo]] = None
    last_archive_success: Optional[datetime] = None
    last_archive_failure: Optional[datetime] = None
    checked_at: Optional[datetime] = None

    @property
    def inactive_replication_slots(self) -> Optional[List[str]]:
        if self.inactive_slots is None:
            return None
        return [slot.name for slot in self.inactive_slots]

    @property
    def measured_slot_retention_bytes(self) -> Optional[int]:
        """Summed retention of the inactive slots that could be measured."""
        if self.inactive_slots is None:
            return None
        return sum(
            slot.retained_bytes for slot in self.inactive_slots
            if slot.retained_bytes is not None
        )

    @property
    def slot_retention_complete(self) -> bool:
        return self.inactive_slots is not None and all(
            slot.retained_bytes is not None for slot in self.inactive_slots
        )

    @property
    def slot_retention_bytes(self) -> Optional[int]:
        """Summed retention of inactive slots, None if any slot is unmeasured."""
        if not self.slot_retention_complete:
            return None
        return self.measured_slot_retention_bytes

    @property
    def is_unknown(self) -> bool:
        return (
            self.archive_healthy is None
            and self.pending_archive_files is None
            and self.inactive_slots is None
        )

    def to_dict(self) -> Dict[str, Any]:
        slots = None
        if self.inactive_slots is not None:
            slots = [
                {
                    "name": s.name,
                    "retainedBytes": s.retained_bytes,
                    "restartLSN": s.restart_lsn,
                }
                for s in self.inactive_slots
            ]
        return {
            "archiveHealthy": self.archive_healthy,
            "pendingArchiveFiles": self.pending_archive_files,
            "inactiveReplicationSlots": slots,
            "lastArchiveSuccess": format_timestamp(self.last_archive_success),
            "lastArchiveFailure": format_timestamp(self.last_archive_failure),
            "checkedAt": format_timestamp(self.checked_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WALHealthInfo":
        slots = data.get("inactiveReplicationSlots")
        if slots is not None:
            slots = [
                SlotInfo(
                    name=s["name"],
                    active=False,
                    retained_bytes=s.get("retainedBytes"),
                    restart_lsn=s.get("restartLSN"),
                )
                for s in slots
            ]
        return cls(
            archive_healthy=data.get("archiveHealthy"),
            pending_archive_files=data.get("pendingArchiveFiles"),
            inactive_slots=slots,
            last_archive_success=parse_timestamp(data.get("lastArchiveSuccess")),
            last_archive_failure=parse_timestamp(data.get("lastArchiveFailure")),
            checked_at=parse_timestamp(data.get("checkedAt")),
        )


@dataclass
class InstanceDiskStatus:
    """Disk and WAL status reported by one database instance."""
    pod_name: str
    data: Optional[VolumeDiskStatus] = None
    wal: Optional[VolumeDiskStatus] = None
    tablespaces: Dict[str, VolumeDiskStatus] = field(default_factory=dict)
    wal_health: Optional[WALHealthInfo] = None

    def volume(self, role: VolumeRole, tablespace: str = "") -> Optional[VolumeDiskStatus]:
        if role == VolumeRole.DATA:
            return self.data
        if role == VolumeRole.WAL:
            return self.wal
        return self.tablespaces.get(tablespace)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "podName": self.pod_name,
            "data": self.data.to_dict() if self.data else None,
            "wal": self.wal.to_dict() if self.wal else None,
            "tablespaces": {k: v.to_dict() for k, v in self.tablespaces.items()},
            "walHealth": self.wal_health.to_dict() if self.wal_health else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InstanceDiskStatus":
        return cls(
            pod_name=data["podName"],
            data=VolumeDiskStatus.from_dict(data["data"]) if data.get("data") else None,
            wal=VolumeDiskStatus.from_dict(data["wal"]) if data.get("wal") else None,
            tablespaces={
                k: VolumeDiskStatus.from_dict(v)
                for k, v in (data.get("tablespaces") or {}).items()
            },
            wal_health=(
                WALHealthInfo.from_dict(data["walHealth"])
                if data.get("walHealth") else None
            ),
        )


@dataclass
class ResizeTriggers:
    """OR-combined conditions that start a resize evaluation."""
    usage_threshold: Optional[int] = None
    min_available: Optional[str] = None


@dataclass
class ExpansionPolicy:
    """How much to grow a volume per action, and how far overall.

    min_step and max_step only bound percentage steps; an absolute step
    is applied as-is.
    """
    step: Optional[Union[str, int]] = None
    min_step: Optional[str] = None
    max_step: Optional[str] = None
    limit: Optional[str] = None


@dataclass
class WALSafetyPolicy:
    require_archive_healthy: bool = True
    max_pending_wal_files: Optional[int] = 100
    max_slot_retention_bytes: Optional[int] = None
    acknowledge_wal_risk: bool = False


@dataclass
class ResizeStrategy:
    max_actions_per_day: int = 3
    wal_safety_policy: Optional[WALSafetyPolicy] = None
    cooldown_period: timedelta = DEFAULT_COOLDOWN_PERIOD


@dataclass
class ResizePolicy:
    """User-declared auto-resize policy for one volume role."""
    enabled: bool = False
    triggers: ResizeTriggers = field(default_factory=ResizeTriggers)
    expansion: ExpansionPolicy = field(default_factory=ExpansionPolicy)
    strategy: ResizeStrategy = field(default_factory=ResizeStrategy)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ResizePolicy"]:
        if data is None:
            return None
        triggers = data.get("triggers") or {}
        expansion = data.get("expansion") or {}
        strategy = data.get("strategy") or {}
        safety = strategy.get("walSafetyPolicy")
        wal_policy = None
        if safety is not None:
            wal_policy = WALSafetyPolicy(
                require_archive_healthy=safety.get("requireArchiveHealthy", True),
                max_pending_wal_files=safety.get("maxPendingWALFiles", 100),
                max_slot_retention_bytes=(
                    to_bytes(safety["maxSlotRetentionBytes"])
                    if safety.get("maxSlotRetentionBytes") is not None else None
                ),
                acknowledge_wal_risk=safety.get("acknowledgeWALRisk", False),
            )
        return cls(
            enabled=bool(data.get("enabled", False)),
            triggers=ResizeTriggers(
                usage_threshold=triggers.get("usageThreshold"),
                min_available=triggers.get("minAvailable"),
            ),
            expansion=ExpansionPolicy(
                step=expansion.get("step"),
                min_step=expansion.get("minStep"),
                max_step=expansion.get("maxStep"),
                limit=expansion.get("limit"),
            ),
            strategy=ResizeStrategy(
                max_actions_per_day=(
                    3 if strategy.get("maxActionsPerDay") is None
                    else int(strategy["maxActionsPerDay"])
                ),
                wal_safety_policy=wal_policy,
                cooldown_period=(
                    DEFAULT_COOLDOWN_PERIOD if strategy.get("cooldownPeriod") is None
                    else parse_duration(strategy["cooldownPeriod"])
                ),
            ),
        )


@dataclass
class VolumeSpec:
    size: Optional[str] = None
    resize: Optional[ResizePolicy] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["VolumeSpec"]:
        if data is None:
            return None
        return cls(size=data.get("size"), resize=ResizePolicy.from_dict(data.get("resize")))


@dataclass
class ClusterSpec:
    """Storage layout and resize policies of a database cluster."""
    name: str
    namespace: str = "default"
    storage: VolumeSpec = field(default_factory=VolumeSpec)
    wal_storage: Optional[VolumeSpec] = None
    tablespaces: Dict[str, VolumeSpec] = field(default_factory=dict)

    @property
    def has_separate_wal(self) -> bool:
        return self.wal_storage is not None

    def volume_policies(self) -> List[tuple]:
        """(identity, policy) for every volume the cluster declares."""
        policies = [
            (VolumeIdentity(self.name, VolumeRole.DATA), self.storage.resize),
        ]
        if self.wal_storage is not None:
            policies.append(
                (VolumeIdentity(self.name, VolumeRole.WAL), self.wal_storage.resize)
            )
        for ts_name, ts_spec in sorted(self.tablespaces.items()):
            policies.append(
                (VolumeIdentity(self.name, VolumeRole.TABLESPACE, ts_name), ts_spec.resize)
            )
        return policies

    @classmethod
    def from_dict(cls, name: str, namespace: str, spec: Dict[str, Any]) -> "ClusterSpec":
        tablespaces = {}
        for ts in spec.get("tablespaces") or []:
            tablespaces[ts["name"]] = VolumeSpec.from_dict(ts.get("storage") or {})
        return cls(
            name=name,
            namespace=namespace,
            storage=VolumeSpec.from_dict(spec.get("storage") or {}),
            wal_storage=VolumeSpec.from_dict(spec.get("walStorage")),
            tablespaces=tablespaces,
        )


@dataclass
class VolumeClaim:
    """The persistent volume claim currently backing a volume."""
    name: str
    instance: str
    role: VolumeRole
    requested_bytes: int
    tablespace: str = ""


@dataclass(frozen=True)
class AutoResizeEvent:
    """Immutable audit record of a resize decision."""
    timestamp: datetime
    instance: str
    pvc_name: str
    volume_type: VolumeRole
    old_size: int
    new_size: int
    reason: str
    result: EventResult
    tablespace: str = ""
    cluster: str = ""

    def identity(self, cluster: str = "") -> VolumeIdentity:
        return VolumeIdentity(self.cluster or cluster, self.volume_type, self.tablespace)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": format_timestamp(self.timestamp),
            "cluster": self.cluster,
            "instance": self.instance,
            "pvcName": self.pvc_name,
            "volumeType": self.volume_type.value,
            "tablespace": self.tablespace,
            "oldSize": format_bytes(self.old_size),
            "newSize": format_bytes(self.new_size),
            "reason": self.reason,
            "result": self.result.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AutoResizeEvent":
        return cls(
            timestamp=parse_timestamp(data["timestamp"]),
            cluster=data.get("cluster", ""),
            instance=data.get("instance", ""),
            pvc_name=data.get("pvcName", ""),
            volume_type=VolumeRole(data["volumeType"]),
            tablespace=data.get("tablespace", ""),
            old_size=to_bytes(data.get("oldSize", 0)),
            new_size=to_bytes(data.get("newSize", 0)),
            reason=data.get("reason", ""),
            result=EventResult(data["result"]),
        )


@dataclass
class ClusterCondition:
    type: str
    status: str
    reason: str
    message: str
    volume: str = ""
    last_transition_time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "volume": self.volume,
            "lastTransitionTime": format_timestamp(self.last_transition_time),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClusterCondition":
        return cls(
            type=data["type"],
            status=data.get("status", "True"),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            volume=data.get("volume", ""),
            last_transition_time=parse_timestamp(data.get("lastTransitionTime")),
        )


@dataclass
class ClusterStatus:
    """Durable auto-resize state kept in the cluster status."""
    auto_resize_events: List[AutoResizeEvent] = field(default_factory=list)
    conditions: List[ClusterCondition] = field(default_factory=list)
    # Version of the Cluster object the status was read from.
    resource_version: Optional[str] = None

    def append_event(self, event: AutoResizeEvent, history_limit: int,
                     keep: Optional[Callable[[AutoResizeEvent], bool]] = None) -> None:
        """Append an event, dropping the oldest ones beyond history_limit.

        Events for which keep returns True are never dropped, and neither
        is the appended event, so the history may exceed history_limit.
        """
        overflow = len(self.auto_resize_events) + 1 - history_limit
        retained = []
        for existing in self.auto_resize_events:
            if overflow > 0 and not (keep is not None and keep(existing)):
                overflow -= 1
                continue
            retained.append(existing)
        retained.append(event)
        self.auto_resize_events = retained

    def merged_onto(self, latest: "ClusterStatus") -> "ClusterStatus":
        """Replay the events recorded here on top of a newer stored status.

        Conditions are owned by this subsystem and taken from self.
        """
        events = list(latest.auto_resize_events)
        for event in self.auto_resize_events:
            if event not in events:
                events.append(event)
        events.sort(key=lambda event: event.timestamp)
        return ClusterStatus(
            auto_resize_events=events,
            conditions=list(self.conditions),
            resource_version=latest.resource_version,
        )

    def get_condition(self, type_: str, volume: str) -> Optional[ClusterCondition]:
        for condition in self.conditions:
            if condition.type == type_ and condition.volume == volume:
                return condition
        return None

    def set_condition(self, condition: ClusterCondition) -> None:
        existing = self.get_condition(condition.type, condition.volume)
        if existing is None:
            if condition.last_transition_time is None:
                condition.last_transition_time = utcnow()
            self.conditions.append(condition)
            return
        if existing.status != condition.status:
            existing.last_transition_time = condition.last_transition_time or utcnow()
        existing.status = condition.status
        existing.reason = condition.reason
        existing.message = condition.message

    def remove_condition(self, type_: str, volume: str) -> bool:
        before = len(self.conditions)
        self.conditions = [
            c for c in self.conditions
            if not (c.type == type_ and c.volume == volume)
        ]
        return len(self.conditions) != before

    def to_dict(self) -> Dict[str, Any]:
        return {
            "autoResizeEvents": [e.to_dict() for e in self.auto_resize_events],
            "autoResizeConditions": [c.to_dict() for c in self.conditions],
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ClusterStatus":
        data = data or {}
        return cls(
            auto_resize_events=[
                AutoResizeEvent.from_dict(e) for e in data.get("autoResizeEvents") or []
            ],
            conditions=[
                ClusterCondition.from_dict(c)
                for c in data.get("autoResizeConditions") or []
            ],
        )
