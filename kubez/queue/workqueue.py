# kubez/queue/workqueue.py
"""
Kubez Work Queue (level-based, de-duplicating, rate limited)

Features:
 - A key is pending at most once; repeated adds collapse into one entry
 - In-flight tracking: a key handed to a worker is never handed to a second
   worker; adds that arrive meanwhile are parked and re-queued on done()
 - Per-key exponential failure backoff (base * 2**failures, capped)
 - Delayed adds (add_after) served from a heap, no timer threads
 - Shutdown discards pending and delayed entries and wakes every waiter
 - Prometheus hooks for depth / adds / retries

The queue holds keys, never objects: workers re-read the current state of a
key when they process it, so collapsing adds loses nothing.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Generic, Hashable, List, Optional, Set, Tuple, TypeVar

from kubez.metrics import ControllerMetrics

LOG = logging.getLogger("kubez.queue")

K = TypeVar("K", bound=Hashable)

DEFAULT_BASE_DELAY = 0.005
DEFAULT_MAX_DELAY = 1000.0

# -------------------------
# Rate limiter
# -------------------------
class ItemExponentialFailureRateLimiter(Generic[K]):
    """
    Delay for a key doubles on every consecutive failure until forget() is
    called for it. Retries are unbounded; only the delay is capped.
    """

    def __init__(self, base_delay: float = DEFAULT_BASE_DELAY, max_delay: float = DEFAULT_MAX_DELAY):
        if base_delay <= 0 or max_delay <= 0:
            raise ValueError("delays must be positive")
        self.base_delay = float(base_delay)
        self.max_delay = float(max_delay)
        self._failures: Dict[K, int] = {}
        self._lock = threading.Lock()

    def when(self, item: K) -> float:
        with self._lock:
            exp = self._failures.get(item, 0)
            self._failures[item] = exp + 1
        try:
            delay = self.base_delay * (2 ** exp)
        except OverflowError:
            return self.max_delay
        return min(delay, self.max_delay)

    def num_requeues(self, item: K) -> int:
        with self._lock:
            return self._failures.get(item, 0)

    def forget(self, item: K):
        with self._lock:
            self._failures.pop(item, None)

# -------------------------
# Queue
# -------------------------
class RateLimitingQueue(Generic[K]):
    """
    Work queue for reconcile keys.

    Usage (worker side):
        key, shutdown = q.get()
        if shutdown:
            return
        try:
            ...
            q.forget(key)
        except TransientError:
            q.add_rate_limited(key)
        finally:
            q.done(key)
    """

    def __init__(
        self,
        rate_limiter: Optional[ItemExponentialFailureRateLimiter] = None,
        name: str = "reconcile",
        metrics: Optional[ControllerMetrics] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.rate_limiter = rate_limiter or ItemExponentialFailureRateLimiter()
        self._metrics = metrics
        self._clock = clock
        self._cond = threading.Condition(threading.Lock())
        self._queue: Deque[K] = deque()
        self._dirty: Set[K] = set()
        self._processing: Set[K] = set()
        # delayed adds: heap of (ready_at, seq, key); _ready_at holds the live entry per key
        self._waiting: List[Tuple[float, int, K]] = []
        self._ready_at: Dict[K, float] = {}
        self._seq = itertools.count()
        self._shutting_down = False

    # -------------------------
    # Internals (call with _cond held)
    # -------------------------
    def _add_locked(self, item: K):
        if self._shutting_down or item in self._dirty:
            return
        self._dirty.add(item)
        if self._metrics:
            self._metrics.record_add()
        if item in self._processing:
            # parked; done() puts it back
            return
        self._queue.append(item)
        self._update_depth_locked()
        self._cond.notify()

    def _promote_ready_locked(self) -> Optional[float]:
        """Move due delayed keys into the queue; return seconds until the next one."""
        now = self._clock()
        while self._waiting:
            ready_at, _, item = self._waiting[0]
            if self._ready_at.get(item) != ready_at:
                heapq.heappop(self._waiting)  # superseded entry
                continue
            if ready_at > now:
                return ready_at - now
            heapq.heappop(self._waiting)
            del self._ready_at[item]
            self._add_locked(item)
        return None

    def _update_depth_locked(self):
        if self._metrics:
            self._metrics.set_depth(len(self._queue))

    # -------------------------
    # Public API
    # -------------------------
    def add(self, item: K):
        with self._cond:
            self._add_locked(item)

    def add_after(self, item: K, delay: float):
        if delay <= 0:
            self.add(item)
            return
        with self._cond:
            if self._shutting_down:
                return
            ready_at = self._clock() + delay
            current = self._ready_at.get(item)
            if current is not None and current <= ready_at:
                return
            self._ready_at[item] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._seq), item))
            self._cond.notify_all()

    def add_rate_limited(self, item: K):
        delay = self.rate_limiter.when(item)
        if self._metrics:
            self._metrics.record_retry()
        LOG.debug("Requeue %s in %.3fs (attempt %d)", item, delay, self.rate_limiter.num_requeues(item))
        self.add_after(item, delay)

    def forget(self, item: K):
        self.rate_limiter.forget(item)

    def num_requeues(self, item: K) -> int:
        return self.rate_limiter.num_requeues(item)

    def get(self, timeout: Optional[float] = None) -> Tuple[Optional[K], bool]:
        """
        Block until a key is available. Returns (key, False), or (None, True)
        once the queue is shut down. With a timeout, returns (None, False) when
        it expires without a key.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    return None, True
                wait_for = self._promote_ready_locked()
                if self._queue:
                    item = self._queue.popleft()
                    self._processing.add(item)
                    self._dirty.discard(item)
                    self._update_depth_locked()
                    return item, False
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None, False
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(wait_for)

    def done(self, item: K):
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty and not self._shutting_down:
                self._queue.append(item)
                self._update_depth_locked()
                self._cond.notify()

    def shut_down(self):
        with self._cond:
            if self._shutting_down:
                return
            self._shutting_down = True
            dropped = len(self._queue) + len(self._ready_at)
            self._queue.clear()
            self._dirty.clear()
            self._waiting.clear()
            self._ready_at.clear()
            self._update_depth_locked()
            self._cond.notify_all()
        LOG.info("Work queue %s shut down (%d pending keys discarded)", self.name, dropped)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def waiting_count(self) -> int:
        with self._cond:
            return len(self._ready_at)

    def is_processing(self, item: K) -> bool:
        with self._cond:
            return item in self._processing

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

__all__ = [
    "DEFAULT_BASE_DELAY",
    "DEFAULT_MAX_DELAY",
    "ItemExponentialFailureRateLimiter",
    "RateLimitingQueue",
]
