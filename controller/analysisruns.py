# SPDX-License-Identifier: MIT
"""AnalysisRun controller: take measurements and record verdicts."""

from __future__ import annotations

from typing import Any, Optional

from analysis.engine import AnalysisEngine
from core.utils.logging import get_logger
from core.utils.metrics import MetricsCollector
from domain.analysis import AnalysisRun

from .base import QueueController
from .cache import ObjectCache
from .client import EventType, Kind, ObjectStore
from .queue import WorkQueue

__all__ = ["AnalysisRunController"]

logger = get_logger(__name__)


class AnalysisRunController(QueueController):
    name = "analysisruns"

    def __init__(
        self,
        store: ObjectStore,
        cache: ObjectCache,
        engine: AnalysisEngine,
        queue: WorkQueue,
        *,
        workers: int = 1,
        metrics: MetricsCollector | None = None,
    ) -> None:
        super().__init__(queue, workers=workers, metrics=metrics)
        self.store = store
        self.cache = cache
        self.engine = engine

    def watch(self) -> None:
        self.cache.add_handler(Kind.ANALYSIS_RUN, self._on_run)

    def _on_run(self, event: EventType, run: Any) -> None:
        if event != EventType.DELETED:
            self.queue.add(run.metadata.key)

    def resync(self) -> None:
        for run in self.cache.list(Kind.ANALYSIS_RUN):
            if not run.settled:
                self.queue.add(run.metadata.key)

    def sync(self, key: str) -> Optional[float]:
        run: Optional[AnalysisRun] = self.cache.analysis_run(key)
        if run is None or run.metadata.deletion_timestamp is not None:
            return None
        status, requeue_after = self.engine.reconcile(run)
        if status != run.status:
            updated = run.model_copy(update={"status": status})
            stored = self.store.update_status(Kind.ANALYSIS_RUN, updated)
            self.cache.apply_event(Kind.ANALYSIS_RUN, EventType.MODIFIED, stored)
            if status.phase != run.phase:
                logger.info("Analysis run phase changed", previous=run.phase.value, phase=status.phase.value)
        return requeue_after
