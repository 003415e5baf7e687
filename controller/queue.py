# SPDX-License-Identifier: MIT
"""Deduplicating, rate-limited work queue of object keys.

A key is handed to at most one worker at a time. Adding a key that is
already waiting is a no-op; adding a key that is being processed marks it
dirty so it is queued again once the worker calls :meth:`WorkQueue.done`.
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from core.config.settings import QueueBackoff
from core.utils.metrics import MetricsCollector

__all__ = ["QueueShutDown", "WorkQueue"]


class QueueShutDown(Exception):
    """Raised by :meth:`WorkQueue.get` once the queue is shut down and drained."""


class WorkQueue:
    def __init__(
        self,
        name: str,
        *,
        backoff: QueueBackoff | None = None,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._backoff = backoff or QueueBackoff()
        self._metrics = metrics
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: Deque[str] = deque()
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._waiting: List[Tuple[float, int, str]] = []
        self._ready_at: Dict[str, float] = {}
        self._failures: Dict[str, int] = {}
        self._sequence = itertools.count()
        self._shutting_down = False

    # ------------------------------------------------------------------
    def add(self, key: str) -> None:
        with self._cond:
            self._add_locked(key)

    def _add_locked(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._report_depth()
        self._cond.notify()

    def add_after(self, key: str, delay: float) -> None:
        """Queue ``key`` after ``delay`` seconds; an earlier pending schedule wins."""

        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            ready_at = self._clock() + delay
            current = self._ready_at.get(key)
            if current is not None and current <= ready_at:
                return
            self._ready_at[key] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._sequence), key))
            self._cond.notify()

    def add_rate_limited(self, key: str) -> float:
        """Requeue ``key`` with per-key exponential backoff; returns the delay used."""

        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        delay = min(self._backoff.base_delay * (2**failures), self._backoff.max_delay)
        if self._metrics is not None:
            self._metrics.record_queue_retry(self.name)
        self.add_after(key, delay)
        return delay

    def forget(self, key: str) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    # ------------------------------------------------------------------
    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """Block until a key is ready.

        Returns ``None`` when ``timeout`` elapses first and raises
        :class:`QueueShutDown` once the queue is shut down.
        """

        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    raise QueueShutDown(self.name)
                self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    self._report_depth()
                    return key
                wait = self._next_wait_locked()
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._report_depth()
                self._cond.notify()

    def _promote_due_locked(self) -> None:
        now = self._clock()
        while self._waiting and self._waiting[0][0] <= now:
            ready_at, _, key = heapq.heappop(self._waiting)
            if self._ready_at.get(key) != ready_at:
                continue
            del self._ready_at[key]
            self._add_locked(key)

    def _next_wait_locked(self) -> Optional[float]:
        if not self._waiting:
            return None
        return max(self._waiting[0][0] - self._clock(), 0.0)

    def _report_depth(self) -> None:
        if self._metrics is not None:
            self._metrics.set_queue_depth(self.name, len(self._queue))

    # ------------------------------------------------------------------
    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def pending_delayed(self) -> Dict[str, float]:
        """Seconds until each delayed key becomes ready."""

        with self._cond:
            now = self._clock()
            return {key: max(ready_at - now, 0.0) for key, ready_at in self._ready_at.items()}

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
