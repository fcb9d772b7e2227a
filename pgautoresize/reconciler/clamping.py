"""
Expansion step calculation and clamping.

A percentage step is bounded by min_step and max_step so that small
volumes do not spend a rate-limited action on a trivial increase and very
large volumes do not request an expansion big enough to trip provider
timeouts. An absolute step is already fixed, so min_step and max_step are
ignored for it. The result never exceeds the volume limit and never
shrinks the volume.
"""
from dataclasses import dataclass
from typing import Optional, Union

from pgautoresize.models.quantity import to_bytes
from pgautoresize.reconciler.errors import ConfigInvalid

DEFAULT_STEP = "20%"
DEFAULT_MIN_STEP = "2Gi"
DEFAULT_MAX_STEP = "500Gi"


@dataclass(frozen=True)
class ExpansionStep:
    """A parsed step: exactly one of percent or absolute_bytes is set."""
    percent: Optional[int] = None
    absolute_bytes: Optional[int] = None

    @property
    def is_percentage(self) -> bool:
        return self.percent is not None


def is_percentage_step(step: Union[str, int, None]) -> bool:
    return isinstance(step, str) and step.strip().endswith("%")


def parse_step(step: Union[str, int, None]) -> ExpansionStep:
    """Parse a configured step.

    An unset step takes the default. A step of exactly zero is an error
    rather than a request for the default.

    Raises:
        ValueError: If the step cannot be parsed or is zero.
    """
    if step is None or (isinstance(step, str) and step.strip() == ""):
        step = DEFAULT_STEP

    if is_percentage_step(step):
        raw = step.strip()[:-1]
        try:
            percent = int(raw)
        except ValueError:
            raise ValueError(f"failed to parse percentage from '{step}'")
        if percent == 0:
            raise ValueError("step must not be zero")
        if percent < 0 or percent > 100:
            raise ValueError(f"percentage out of range: {percent}")
        return ExpansionStep(percent=percent)

    absolute = to_bytes(step)
    if absolute == 0:
        raise ValueError("step must not be zero")
    if absolute < 0:
        raise ValueError(f"step must be positive: {step}")
    return ExpansionStep(absolute_bytes=absolute)


def clamp_delta(raw_delta: int, min_step: int, max_step: int) -> int:
    """Clamp a percentage-derived delta into [min_step, max_step].

    The floor is applied first, so a floor above the ceiling wins.
    """
    if raw_delta < min_step:
        return min_step
    if raw_delta > max_step:
        return max_step
    return raw_delta


def expansion_delta(current_size: int, step: ExpansionStep,
                    min_step: int, max_step: int) -> int:
    if step.is_percentage:
        raw_delta = current_size * step.percent // 100
        return clamp_delta(raw_delta, min_step, max_step)
    return step.absolute_bytes


def calculate_new_size(current_size: int,
                       step: Union[str, int, None] = None,
                       min_step: Optional[str] = None,
                       max_step: Optional[str] = None,
                       limit: Optional[str] = None) -> int:
    """Compute the requested size for the next expansion.

    Returns min(current_size + clamped_delta, limit), and never less
    than current_size.

    Raises:
        ConfigInvalid: If the step, bounds or limit cannot be parsed.
    """
    try:
        parsed = parse_step(step)
        min_bytes = to_bytes(min_step or DEFAULT_MIN_STEP)
        max_bytes = to_bytes(max_step or DEFAULT_MAX_STEP)
        limit_bytes = to_bytes(limit) if limit else None
    except ValueError as e:
        raise ConfigInvalid("expansion", [str(e)])

    new_size = current_size + expansion_delta(current_size, parsed, min_bytes, max_bytes)
    if limit_bytes is not None and limit_bytes > 0:
        new_size = min(new_size, limit_bytes)
    return max(new_size, current_size)
