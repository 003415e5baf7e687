# SPDX-License-Identifier: MIT
"""Worker pool draining a :class:`~controller.queue.WorkQueue`."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import List, Optional

from core.errors import ControllerError, TransientError
from core.utils.logging import get_logger, reconcile_context
from core.utils.metrics import MetricsCollector, get_metrics_collector

from .queue import QueueShutDown, WorkQueue

__all__ = ["QueueController"]

logger = get_logger(__name__)


class QueueController(ABC):
    """Run :meth:`sync` for queued keys on a fixed number of worker threads.

    ``sync`` returns the delay before the key should be looked at again, or
    ``None`` to wait for the next watch event. Transient errors requeue with
    per-key backoff; permanent ones are logged and dropped until the object
    changes. A failing key never stops a worker.
    """

    name = "controller"

    def __init__(
        self,
        queue: WorkQueue,
        *,
        workers: int = 1,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.queue = queue
        self.workers = workers
        self.metrics = metrics or get_metrics_collector()
        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()

    @abstractmethod
    def sync(self, key: str) -> Optional[float]:
        """Reconcile the object behind ``key`` once."""

    def on_failure(self, key: str, error: BaseException, attempts: int) -> None:
        """Hook invoked after a failed pass; ``attempts`` counts consecutive failures."""

    def on_success(self, key: str) -> None:
        """Hook invoked after a successful pass."""

    # ------------------------------------------------------------------
    def process_next(self, timeout: Optional[float] = None) -> bool:
        """Handle one key; returns ``False`` when the queue shut down or timed out."""

        try:
            key = self.queue.get(timeout=timeout)
        except QueueShutDown:
            return False
        if key is None:
            return False
        try:
            self.process(key)
        finally:
            self.queue.done(key)
        return True

    def process(self, key: str) -> None:
        with reconcile_context(self.name, key), self.metrics.measure_reconcile(self.name) as measurement:
            try:
                requeue_after = self.sync(key)
            except TransientError as exc:
                delay = self.queue.add_rate_limited(key)
                attempts = self.queue.num_requeues(key)
                measurement["outcome"] = "retry"
                logger.warning(
                    "Transient failure, requeueing",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    delay_seconds=round(delay, 3),
                    attempts=attempts,
                )
                self.on_failure(key, exc, attempts)
                return
            except ControllerError as exc:
                self.queue.forget(key)
                measurement["outcome"] = "failed"
                logger.error("Reconcile failed permanently", error=str(exc), error_type=type(exc).__name__)
                self.on_failure(key, exc, 1)
                return
            except Exception as exc:
                delay = self.queue.add_rate_limited(key)
                measurement["outcome"] = "error"
                logger.exception("Unexpected reconcile failure", delay_seconds=round(delay, 3))
                self.on_failure(key, exc, self.queue.num_requeues(key))
                return
            self.queue.forget(key)
            self.on_success(key)
            if requeue_after is not None:
                self.queue.add_after(key, requeue_after)
                measurement["outcome"] = "requeued"

    # ------------------------------------------------------------------
    def _worker(self) -> None:
        while self.process_next():
            pass

    def start(self) -> None:
        with self._lock:
            if self._threads:
                raise RuntimeError(f"{self.name} controller already running")
            for index in range(self.workers):
                thread = threading.Thread(target=self._worker, name=f"{self.name}-worker-{index}", daemon=True)
                thread.start()
                self._threads.append(thread)
        logger.info("Started controller workers", controller=self.name, workers=self.workers)

    def stop(self, timeout: Optional[float] = None) -> None:
        self.queue.shut_down()
        with self._lock:
            threads, self._threads = self._threads, []
        for thread in threads:
            thread.join(timeout=timeout)
