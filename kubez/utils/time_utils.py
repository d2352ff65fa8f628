# kubez/utils/time_utils.py
"""
Kubez Time Utilities
--------------------

Small set of time helpers shared by the controller, the work queue and the
leader elector.

Features:
 - UTC wall-clock helpers (ISO8601 / Kubernetes MicroTime formatting)
 - MicroTime / RFC3339 parsing tolerant of the API server's variants
 - Monotonic Timer context manager for measuring reconcile latency
 - Exponential backoff computation with optional jitter
"""

from __future__ import annotations

import re
import time
import random
import datetime
import logging
from typing import Optional

LOG = logging.getLogger("kubez.utils.time_utils")

# -------------------------
# Wall clock
# -------------------------
def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)

def iso_now() -> str:
    """Return current UTC time as ``2024-01-15T08:30:00Z``."""
    return utc_now().replace(microsecond=0).isoformat().replace("+00:00", "Z")

def to_micro_time(dt: datetime.datetime) -> str:
    """Format a datetime the way the API server expects a MicroTime field."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return dt.astimezone(datetime.timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")

ISO_PATTERN = re.compile(r"(\d{4}-\d{2}-\d{2})[T ](\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:?\d{2})?$")

def parse_iso8601(value) -> Optional[datetime.datetime]:
    """
    Parse an RFC3339 / MicroTime string into an aware UTC datetime.

    Accepts datetime objects unchanged (the kubernetes client deserializes
    MicroTime fields into datetimes). Returns None for empty input and raises
    ValueError for anything unparseable.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime.datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=datetime.timezone.utc)
        return value.astimezone(datetime.timezone.utc)
    m = ISO_PATTERN.match(str(value).strip())
    if not m:
        raise ValueError(f"invalid timestamp: {value!r}")
    date_part, time_part, frac, tz = m.groups()
    micros = int((frac or "0")[:6].ljust(6, "0"))
    dt = datetime.datetime.strptime(f"{date_part}T{time_part}", "%Y-%m-%dT%H:%M:%S").replace(microsecond=micros)
    if tz in (None, "Z"):
        return dt.replace(tzinfo=datetime.timezone.utc)
    sign = 1 if tz[0] == "+" else -1
    hours, minutes = int(tz[1:3]), int(tz[-2:])
    offset = datetime.timezone(sign * datetime.timedelta(hours=hours, minutes=minutes))
    return dt.replace(tzinfo=offset).astimezone(datetime.timezone.utc)

# -------------------------
# Timers
# -------------------------
class Timer:
    """
    Monotonic timer usable as a context manager.

        with Timer() as t:
            reconcile(key)
        RECONCILE_SECONDS.observe(t.elapsed)
    """
    def __init__(self):
        self.start: Optional[float] = None
        self.end: Optional[float] = None

    def __enter__(self) -> "Timer":
        self.start = time.monotonic()
        self.end = None
        return self

    def __exit__(self, *exc):
        self.end = time.monotonic()
        return False

    @property
    def elapsed(self) -> float:
        """Seconds since entering; frozen once the block exits."""
        if self.start is None:
            return 0.0
        return (self.end if self.end is not None else time.monotonic()) - self.start

# -------------------------
# Backoff
# -------------------------
def compute_backoff(attempt: int, base: float = 0.5, factor: float = 2.0, jitter: float = 0.1, max_delay: float = 30.0) -> float:
    """Compute exponential backoff with jitter."""
    try:
        delay = base * (factor ** attempt)
    except OverflowError:
        delay = max_delay
    delay = min(delay, max_delay)
    if jitter:
        delay *= (1.0 + (random.random() - 0.5) * jitter)
    return max(0.0, delay)

__all__ = [
    "utc_now",
    "iso_now",
    "to_micro_time",
    "parse_iso8601",
    "Timer",
    "compute_backoff",
]
