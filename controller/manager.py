# SPDX-License-Identifier: MIT
"""Process lifecycle: wire the cache, informers, queues and controllers together."""

from __future__ import annotations

import threading
from typing import Any, Callable, Optional

from analysis.engine import AnalysisEngine
from analysis.providers import ProviderRegistry, default_provider_registry
from core.config.settings import ControllerSettings
from core.utils.logging import get_logger
from core.utils.metrics import MetricsCollector, get_metrics_collector
from domain.meta import utcnow
from interfaces.informers import InformerSet
from rollout.context import ReconcilerOptions
from traffic.router import RouterRegistry, default_router_registry

from .analysisruns import AnalysisRunController
from .cache import ObjectCache
from .client import ObjectStore
from .queue import WorkQueue
from .rollouts import RolloutController

__all__ = ["ControllerManager"]

logger = get_logger(__name__)


class ControllerManager:
    """Own every long-running component of the controller process.

    ``start`` lists all kinds before any worker runs, so the first reconcile
    of each Rollout already sees its replica sets and runs. ``stop`` shuts the
    queues, lets in-flight passes finish and releases the worker pools.
    """

    def __init__(
        self,
        settings: ControllerSettings,
        store: ObjectStore,
        *,
        providers: ProviderRegistry | None = None,
        routers: RouterRegistry | None = None,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], Any] = utcnow,
    ) -> None:
        self.settings = settings
        self.store = store
        self.metrics = metrics or get_metrics_collector()
        self.providers = providers or default_provider_registry()
        self.routers = routers or default_router_registry()
        self.providers.load_entrypoints(settings.metric_providers)
        self.routers.load_entrypoints(settings.traffic_routers)
        self.routers.configure(timeout=settings.router_timeout_seconds, max_workers=settings.router_workers)

        self.cache = ObjectCache(metrics=self.metrics)
        self.informers = InformerSet(
            store, self.cache, namespace=settings.namespace, retry=settings.watch_retry
        )
        self.engine = AnalysisEngine(
            self.providers,
            measurement_timeout=settings.measurement_timeout_seconds,
            max_workers=settings.measurement_workers,
            default_interval=settings.default_measurement_interval_seconds,
            busy_retry=settings.measurement_busy_retry_seconds,
            clock=clock,
            metrics=self.metrics,
        )
        self.rollouts = RolloutController(
            store,
            self.cache,
            self.routers,
            WorkQueue("rollouts", backoff=settings.queue_backoff, metrics=self.metrics),
            workers=settings.rollout_workers,
            options=ReconcilerOptions(weight_verify_interval=settings.weight_verify_interval_seconds),
            condition_after_failures=settings.condition_after_failures,
            metrics=self.metrics,
            clock=clock,
        )
        self.analysis_runs = AnalysisRunController(
            store,
            self.cache,
            self.engine,
            WorkQueue("analysisruns", backoff=settings.queue_backoff, metrics=self.metrics),
            workers=settings.analysis_workers,
            metrics=self.metrics,
        )
        self.rollouts.watch()
        self.analysis_runs.watch()
        self._stop = threading.Event()
        self._resync_thread: Optional[threading.Thread] = None

    @property
    def ready(self) -> bool:
        return self.cache.has_synced() and not self._stop.is_set()

    def start(self) -> None:
        with logger.operation("initial_sync"):
            self.informers.sync()
        self.informers.start(self._stop)
        self.analysis_runs.start()
        self.rollouts.start()
        self._resync_thread = threading.Thread(target=self._resync_loop, name="resync", daemon=True)
        self._resync_thread.start()
        logger.info(
            "Controller started",
            namespace=self.settings.namespace or "*",
            rollout_workers=self.settings.rollout_workers,
            analysis_workers=self.settings.analysis_workers,
        )

    def _resync_loop(self) -> None:
        while not self._stop.wait(self.settings.resync_period_seconds):
            self.rollouts.resync()
            self.analysis_runs.resync()

    def wait(self, stop: threading.Event) -> None:
        """Block until ``stop`` is set, then shut down."""

        stop.wait()
        self.stop()

    def stop(self, timeout: float = 30.0) -> None:
        if self._stop.is_set():
            return
        logger.info("Stopping controller")
        self._stop.set()
        self.rollouts.stop(timeout=timeout)
        self.analysis_runs.stop(timeout=timeout)
        self.informers.join(timeout=1.0)
        self.engine.close()
        self.routers.close()
