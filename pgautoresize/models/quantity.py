"""Kubernetes resource quantity and duration helpers for volume policies."""

import re
from datetime import timedelta
from decimal import Decimal
from typing import Union

from kubernetes.utils.quantity import parse_quantity

BINARY_UNITS = (
    ("Ei", 1024 ** 6),
    ("Pi", 1024 ** 5),
    ("Ti", 1024 ** 4),
    ("Gi", 1024 ** 3),
    ("Mi", 1024 ** 2),
    ("Ki", 1024),
)

DURATION_UNITS = {
    "h": 3600.0,
    "m": 60.0,
    "s": 1.0,
    "ms": 0.001,
    "us": 0.000001,
}
DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|us|h|m|s)")
DURATION = re.compile(rf"^(?:{DURATION_PART.pattern})+$")


def to_bytes(quantity: Union[str, int, float, Decimal]) -> int:
    """Parse a quantity such as "2Gi", "500M" or 1073741824 into whole bytes.

    Fractional results are rounded up, as the API server does for storage
    requests.

    Raises:
        ValueError: If the quantity cannot be parsed.
    """
    if isinstance(quantity, bool):
        raise ValueError(f"invalid quantity: {quantity!r}")
    value = parse_quantity(quantity)
    whole = int(value)
    if value > whole:
        whole += 1
    return whole


def format_bytes(size_bytes: int) -> str:
    """Format a byte count using the largest binary suffix that divides it."""
    if size_bytes == 0:
        return "0"
    for suffix, factor in BINARY_UNITS:
        if size_bytes % factor == 0:
            return f"{size_bytes // factor}{suffix}"
    return str(size_bytes)


def humanize_bytes(size_bytes: int) -> str:
    """Approximate, human readable form used in log lines and the CLI."""
    for suffix, factor in BINARY_UNITS:
        if size_bytes >= factor:
            return f"{size_bytes / factor:.2f}{suffix}"
    return f"{size_bytes}B"


def parse_duration(value: Union[str, int, float]) -> timedelta:
    """Parse a duration such as "1h", "90s" or "1h30m"; numbers are seconds.

    Raises:
        ValueError: If the duration cannot be parsed or is negative.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"invalid duration: {value!r}")
        return timedelta(seconds=value)
    text = str(value).strip()
    if not DURATION.match(text):
        raise ValueError(f"invalid duration: {value!r}")
    seconds = sum(
        float(amount) * DURATION_UNITS[unit] for amount, unit in DURATION_PART.findall(text)
    )
    return timedelta(seconds=seconds)
