# SPDX-License-Identifier: MIT
"""Bulkheads: one bounded thread pool per downstream dependency.

Provider and router code is third-party and may hang. A hung call cannot be
cancelled from outside its thread, so each dependency gets its own pool and a
slot count equal to the pool size. A hung dependency exhausts only its own
slots; submissions beyond the limit are rejected with
:class:`~core.errors.BulkheadFullError` instead of queueing behind it.

Time budgets are measured from the moment a call starts running, never from
submission.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

from core.errors import BulkheadFullError

__all__ = ["Bulkhead", "BulkheadCall", "BulkheadRegistry"]

T = TypeVar("T")


class BulkheadCall(Generic[T]):
    """Handle for a call accepted by a :class:`Bulkhead`."""

    def __init__(self) -> None:
        self._started = threading.Event()
        self._started_at: Optional[float] = None
        self.future: Optional[Future[T]] = None

    def _mark_started(self) -> None:
        self._started_at = time.monotonic()
        self._started.set()

    @property
    def started(self) -> bool:
        return self._started.is_set()

    def result(self, timeout: float) -> T:
        """Wait at most ``timeout`` seconds counted from the start of the call.

        Raises :class:`concurrent.futures.TimeoutError` when the budget runs
        out. The call keeps its slot until it actually returns.
        """

        if self.future is None:
            raise RuntimeError("call was never submitted")
        if not self._started.wait(timeout):
            raise FutureTimeoutError()
        started_at = self._started_at if self._started_at is not None else time.monotonic()
        remaining = started_at + timeout - time.monotonic()
        return self.future.result(timeout=max(remaining, 0.0))


class Bulkhead:
    """Bounded pool for a single dependency."""

    def __init__(self, name: str, max_concurrent: int, *, thread_prefix: str = "bulkhead") -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.name = name
        self.max_concurrent = max_concurrent
        self._slots = threading.BoundedSemaphore(max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent, thread_name_prefix=f"{thread_prefix}-{name}"
        )
        self._lock = threading.Lock()
        self._active = 0
        self._rejected = 0

    @property
    def active_count(self) -> int:
        with self._lock:
            return self._active

    @property
    def available_slots(self) -> int:
        return self.max_concurrent - self.active_count

    @property
    def total_rejected(self) -> int:
        with self._lock:
            return self._rejected

    def submit(self, func: Callable[..., T], *args: Any) -> BulkheadCall[T]:
        if not self._slots.acquire(blocking=False):
            with self._lock:
                self._rejected += 1
            raise BulkheadFullError(
                f"all {self.max_concurrent} workers for '{self.name}' are busy",
                detail={"bulkhead": self.name},
            )
        with self._lock:
            self._active += 1
        call: BulkheadCall[T] = BulkheadCall()

        def _run() -> T:
            call._mark_started()
            try:
                return func(*args)
            finally:
                self._release()

        try:
            call.future = self._executor.submit(_run)
        except RuntimeError:
            self._release()
            raise
        return call

    def _release(self) -> None:
        with self._lock:
            self._active -= 1
        self._slots.release()

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


class BulkheadRegistry:
    """Creates bulkheads on first use, one per dependency name."""

    def __init__(self, max_concurrent: int, *, thread_prefix: str = "bulkhead") -> None:
        self.max_concurrent = max_concurrent
        self._thread_prefix = thread_prefix
        self._bulkheads: Dict[str, Bulkhead] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> Bulkhead:
        with self._lock:
            bulkhead = self._bulkheads.get(name)
            if bulkhead is None:
                bulkhead = Bulkhead(name, self.max_concurrent, thread_prefix=self._thread_prefix)
                self._bulkheads[name] = bulkhead
            return bulkhead

    def submit(self, name: str, func: Callable[..., T], *args: Any) -> BulkheadCall[T]:
        return self.get(name).submit(func, *args)

    def shutdown(self) -> None:
        with self._lock:
            bulkheads = list(self._bulkheads.values())
            self._bulkheads.clear()
        for bulkhead in bulkheads:
            bulkhead.shutdown()
