"""
Resize budget derived from the persisted auto-resize event history.

Nothing here keeps state between calls. The budget for a logical volume
is always recomputed from the events stored in the cluster status, so a
restart can neither reset nor duplicate it.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from pgautoresize.models.models import AutoResizeEvent, EventResult, VolumeIdentity

ROLLING_WINDOW = timedelta(hours=24)

# Blocked decisions are recorded for visibility but never reach the
# storage provider, so they do not consume budget.
BUDGET_RESULTS = (EventResult.SUCCESS, EventResult.FAILED)

DEFAULT_MIN_EVENT_HISTORY = 50
HISTORY_DAYS = 2


@dataclass(frozen=True)
class ResizeBudget:
    actions_in_window: int
    remaining: int
    resets_at: Optional[datetime] = None

    @property
    def exhausted(self) -> bool:
        return self.remaining <= 0


def events_for_identity(events: Iterable[AutoResizeEvent],
                        identity: VolumeIdentity) -> List[AutoResizeEvent]:
    """Events of one logical volume, regardless of which PVC carried them."""
    return [
        event for event in events
        if event.identity(identity.cluster) == identity
    ]


def counts_toward_budget(event: AutoResizeEvent, now: datetime) -> bool:
    return event.result in BUDGET_RESULTS and event.timestamp > now - ROLLING_WINDOW


def counted_events(events: Iterable[AutoResizeEvent], identity: VolumeIdentity,
                   now: datetime) -> List[AutoResizeEvent]:
    return [
        event for event in events_for_identity(events, identity)
        if counts_toward_budget(event, now)
    ]


def action_times(events: Iterable[AutoResizeEvent], identity: VolumeIdentity,
                 now: datetime) -> List[datetime]:
    """Start times of the resize actions counted against the budget.

    One action grows every claim of the logical volume in a single pass,
    so events sharing a timestamp are one action.
    """
    return sorted({event.timestamp for event in counted_events(events, identity, now)})


def actions_in_window(events: Iterable[AutoResizeEvent], identity: VolumeIdentity,
                      now: datetime) -> int:
    return len(action_times(events, identity, now))


def charged_at(events: Iterable[AutoResizeEvent], identity: VolumeIdentity,
               now: datetime) -> bool:
    """Whether the action of the pass started at now was already counted."""
    return now in action_times(events, identity, now)


def remaining_budget(events: Iterable[AutoResizeEvent], identity: VolumeIdentity,
                     max_actions_per_day: int, now: datetime) -> int:
    return max(0, max_actions_per_day - actions_in_window(events, identity, now))


def compute_budget(events: Iterable[AutoResizeEvent], identity: VolumeIdentity,
                   max_actions_per_day: int, now: datetime) -> ResizeBudget:
    """Budget of a logical volume at time now.

    resets_at is when the oldest counted action leaves the window, or
    None when nothing is counted.
    """
    times = action_times(events, identity, now)
    return ResizeBudget(
        actions_in_window=len(times),
        remaining=max(0, max_actions_per_day - len(times)),
        resets_at=times[0] + ROLLING_WINDOW if times else None,
    )


def history_limit(max_actions_per_day: Iterable[int], identities: int,
                  minimum: int = DEFAULT_MIN_EVENT_HISTORY) -> int:
    """Number of events to keep in the cluster status.

    Enough for twice the most permissive daily budget, for every volume
    identity, over two days. Events still counted against a budget are
    kept even beyond this limit.
    """
    most_permissive = max(list(max_actions_per_day) or [0])
    return max(minimum, most_permissive * 2 * max(identities, 1) * HISTORY_DAYS)


def last_event(events: Iterable[AutoResizeEvent],
               identity: VolumeIdentity,
               instance: Optional[str] = None) -> Optional[AutoResizeEvent]:
    matching = [
        event for event in events_for_identity(events, identity)
        if instance is None or event.instance == instance
    ]
    return matching[-1] if matching else None


def last_success(events: Iterable[AutoResizeEvent],
                 pvc_name: str) -> Optional[AutoResizeEvent]:
    """Most recent successful resize of one claim."""
    matching = [
        event for event in events
        if event.pvc_name == pvc_name and event.result == EventResult.SUCCESS
    ]
    return max(matching, key=lambda event: event.timestamp) if matching else None


def in_cooldown(events: Iterable[AutoResizeEvent], pvc_name: str,
                cooldown: timedelta, now: datetime) -> bool:
    """Whether the claim was grown less than cooldown ago.

    The filesystem expansion requested by that resize may not be visible
    to the sampler yet.
    """
    previous = last_success(events, pvc_name)
    return previous is not None and now - previous.timestamp < cooldown
