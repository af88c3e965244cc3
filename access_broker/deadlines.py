# access_broker/deadlines.py
"""Caller deadlines, expressed as absolute time.monotonic() values."""

import time
from typing import Optional

from access_broker.errors import Timeout


def deadline_after(seconds: Optional[float]) -> Optional[float]:
    if seconds is None:
        return None
    return time.monotonic() + max(0.0, float(seconds))


def remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    return deadline - time.monotonic()


def check_deadline(deadline: Optional[float], what: str = "operation") -> None:
    left = remaining(deadline)
    if left is not None and left <= 0:
        raise Timeout(f"Deadline exceeded before {what}", {"stage": what})


def bounded_timeout(deadline: Optional[float], cap: float, what: str = "operation") -> float:
    """Per-call timeout: the configured cap, shortened to what is left of the deadline."""
    check_deadline(deadline, what)
    left = remaining(deadline)
    return cap if left is None else min(cap, left)
