from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable
from typing import Protocol

from exporter.src.metrics import METRICS


class RateLimiter(Protocol):
    """Decides how long a key must wait before it is retried."""

    def when(self, item: Hashable) -> float: ...

    def forget(self, item: Hashable) -> None: ...

    def num_requeues(self, item: Hashable) -> int: ...


class ItemExponentialFailureRateLimiter:
    """Per-key exponential backoff: ``base_delay * 2**failures``, capped at ``max_delay``.

    Every call to :meth:`when` counts as one more failure for that key.  Keys
    back off independently of each other; :meth:`forget` resets a key.
    """

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        if base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1

        # Past 2**63 the product only grows; the cap is already reached.
        if exponent >= 64:
            return self.max_delay
        return min(self.base_delay * (2**exponent), self.max_delay)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)


class BucketRateLimiter:
    """Token bucket shared by all keys; bounds the overall retry rate.

    Starts full with ``burst`` tokens refilled at ``qps`` tokens per second.
    Tracks no per-key state.
    """

    def __init__(
        self,
        qps: float = 10.0,
        burst: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if qps <= 0:
            raise ValueError("qps must be > 0")
        if burst < 1:
            raise ValueError("burst must be >= 1")
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            now = self._clock()
            self._tokens = min(float(self.burst), self._tokens + (now - self._last) * self.qps)
            self._last = now
            self._tokens -= 1.0
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def num_requeues(self, item: Hashable) -> int:
        return 0

    def forget(self, item: Hashable) -> None:
        return None


class MaxOfRateLimiter:
    """Combine limiters by taking the worst delay and the highest requeue count."""

    def __init__(self, *limiters: RateLimiter) -> None:
        if not limiters:
            raise ValueError("at least one rate limiter is required")
        self.limiters = limiters

    def when(self, item: Hashable) -> float:
        # Every limiter must observe the failure, so no short-circuiting.
        return max([limiter.when(item) for limiter in self.limiters])

    def num_requeues(self, item: Hashable) -> int:
        return max(limiter.num_requeues(item) for limiter in self.limiters)

    def forget(self, item: Hashable) -> None:
        for limiter in self.limiters:
            limiter.forget(item)


def default_controller_rate_limiter() -> MaxOfRateLimiter:
    """Per-key exponential backoff (5 ms to 1000 s) bounded by a 10 qps / 100 burst bucket."""
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay=0.005, max_delay=1000.0),
        BucketRateLimiter(qps=10.0, burst=100),
    )


class WorkQueue:
    """Deduplicating FIFO of keys with at most one in-flight attempt per key.

    Key internal state:
        ``_queue``
            Keys ready to be handed to a worker, in insertion order.
        ``_dirty``
            Keys that need processing.  A key is in ``_dirty`` from the time
            it is added until a worker picks it up, so repeated adds collapse.
        ``_processing``
            Keys currently held by a worker.  A key re-added while here stays
            only in ``_dirty`` and is re-queued by :meth:`done`.

    All state is guarded by one condition variable, so every public method is
    atomic with respect to the others.
    """

    def __init__(self, name: str = "", clock: Callable[[], float] = time.monotonic) -> None:
        self.name = name
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._shutting_down = False

    def add(self, item: Hashable) -> None:
        """Mark ``item`` as needing processing.  No-op if it is already pending."""
        with self._cond:
            self._add_locked(item)

    def _add_locked(self, item: Hashable) -> None:
        if self._shutting_down or item in self._dirty:
            return
        METRICS.queue_adds_total.inc()
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.append(item)
        METRICS.queue_depth.set(len(self._queue))
        self._cond.notify()

    def get(self) -> tuple[Hashable | None, bool]:
        """Block until a key is available.

        Returns ``(key, False)`` for work, or ``(None, True)`` once the queue
        has been shut down and no ready keys remain.
        """
        with self._cond:
            while True:
                self._promote_ready_locked()
                if self._queue:
                    break
                if self._shutting_down:
                    return None, True
                self._cond.wait(timeout=self._wait_timeout_locked())

            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            METRICS.queue_depth.set(len(self._queue))
            return item, False

    def done(self, item: Hashable) -> None:
        """Release ``item``; re-queue it if it was added again while in flight."""
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                METRICS.queue_depth.set(len(self._queue))
                self._cond.notify()

    def shutdown(self) -> None:
        """Stop accepting keys and wake every blocked :meth:`get`."""
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def __len__(self) -> int:
        with self._cond:
            self._promote_ready_locked()
            return len(self._queue)

    def _promote_ready_locked(self) -> None:
        return None

    def _wait_timeout_locked(self) -> float | None:
        return None


class DelayingQueue(WorkQueue):
    """Work queue that can hold keys back until a deadline.

    Delayed keys live in a heap ordered by ready time and are moved into the
    ready queue by whichever worker next calls :meth:`get`; blocked workers
    sleep only until the earliest deadline.  A key that is already waiting
    keeps the earlier of its two deadlines.
    """

    def __init__(self, name: str = "", clock: Callable[[], float] = time.monotonic) -> None:
        super().__init__(name=name, clock=clock)
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._ready_at: dict[Hashable, float] = {}
        self._sequence = itertools.count()

    def add_after(self, item: Hashable, delay: float) -> None:
        if delay <= 0:
            self.add(item)
            return

        with self._cond:
            if self._shutting_down:
                return
            ready_at = self._clock() + delay
            existing = self._ready_at.get(item)
            if existing is not None and existing <= ready_at:
                return
            self._ready_at[item] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._sequence), item))
            self._cond.notify_all()

    def shutdown(self) -> None:
        with self._cond:
            self._waiting.clear()
            self._ready_at.clear()
        super().shutdown()

    def _promote_ready_locked(self) -> None:
        now = self._clock()
        while self._waiting and self._waiting[0][0] <= now:
            ready_at, _, item = heapq.heappop(self._waiting)
            # Superseded by an earlier deadline for the same key.
            if self._ready_at.get(item) != ready_at:
                continue
            del self._ready_at[item]
            self._add_locked(item)

    def _wait_timeout_locked(self) -> float | None:
        if not self._waiting:
            return None
        return max(0.0, self._waiting[0][0] - self._clock())


class RateLimitingQueue(DelayingQueue):
    """Delaying queue whose retry delays come from a :class:`RateLimiter`."""

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        name: str = "",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(name=name, clock=clock)
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()

    def add_rate_limited(self, item: Hashable) -> None:
        """Re-add ``item`` once the rate limiter says it may be retried."""
        METRICS.queue_retries_total.inc()
        self.add_after(item, self.rate_limiter.when(item))

    def forget(self, item: Hashable) -> None:
        """Clear the retry history of ``item``.  Safe to call for unknown keys."""
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)
