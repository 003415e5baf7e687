# SPDX-License-Identifier: MIT
"""Rollout controller: snapshot from cache, reconcile, apply, write status."""

from __future__ import annotations

from typing import Any, Callable, Optional

from core.errors import ControllerError, RouterError, TimeoutExceededError, TransientError
from core.utils.logging import get_logger
from core.utils.metrics import MetricsCollector
from domain.meta import ConditionStatus, utcnow
from domain.rollout import Rollout, RolloutStatus
from rollout.conditions import RECONCILE_ERROR, remove_condition, set_condition
from rollout.context import ReconcilerOptions
from rollout.reconciler import reconcile
from rollout.snapshot import RolloutSnapshot, TrafficObservation
from traffic.router import RouterRegistry

from .base import QueueController
from .cache import ObjectCache
from .client import EventType, Kind, ObjectStore
from .executor import MutationExecutor
from .queue import WorkQueue

__all__ = ["RolloutController"]

logger = get_logger(__name__)

REASON_RECONCILE_ERROR = "ReconcileError"


class RolloutController(QueueController):
    name = "rollouts"

    def __init__(
        self,
        store: ObjectStore,
        cache: ObjectCache,
        routers: RouterRegistry,
        queue: WorkQueue,
        *,
        workers: int = 1,
        options: ReconcilerOptions | None = None,
        condition_after_failures: int = 5,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], Any] = utcnow,
    ) -> None:
        super().__init__(queue, workers=workers, metrics=metrics)
        self.store = store
        self.cache = cache
        self.routers = routers
        self.options = options or ReconcilerOptions()
        self.condition_after_failures = condition_after_failures
        self.executor = MutationExecutor(store, routers, metrics=self.metrics)
        self.clock = clock

    # ------------------------------------------------------------------
    def watch(self) -> None:
        """Enqueue Rollouts on their own events and on events of what they own or reference."""

        self.cache.add_handler(Kind.ROLLOUT, self._on_rollout)
        for kind in (Kind.REPLICA_SET, Kind.ANALYSIS_RUN, Kind.EXPERIMENT):
            self.cache.add_handler(kind, self._on_owned)
        for kind in (Kind.SERVICE, Kind.ANALYSIS_TEMPLATE):
            self.cache.add_handler(kind, self._on_referenced)

    def _on_rollout(self, event: EventType, rollout: Rollout) -> None:
        if event == EventType.DELETED:
            self.routers.forget(rollout.key)
            self.metrics.forget_rollout(rollout.namespace, rollout.name)
        self.queue.add(rollout.key)

    def _on_owned(self, event: EventType, obj: Any) -> None:
        owner = self.cache.owner_key(obj)
        if owner is not None:
            self.queue.add(owner)

    def _on_referenced(self, event: EventType, obj: Any) -> None:
        for rollout in self.cache.list(Kind.ROLLOUT, obj.metadata.namespace):
            self.queue.add(rollout.key)

    def resync(self) -> None:
        for rollout in self.cache.list(Kind.ROLLOUT):
            self.queue.add(rollout.key)

    # ------------------------------------------------------------------
    def observe_traffic(self, rollout: Rollout) -> TrafficObservation:
        router = self.routers.for_rollout(rollout)
        if router is None:
            return TrafficObservation()
        try:
            return TrafficObservation(weight=router.get_weight())
        except (RouterError, TimeoutExceededError) as exc:
            logger.warning("Traffic router unavailable", rollout=rollout.key, error=str(exc))
            return TrafficObservation(available=False)

    def snapshot(self, rollout: Rollout) -> RolloutSnapshot:
        return RolloutSnapshot(
            rollout=rollout,
            now=self.clock(),
            replica_sets=tuple(self.cache.replica_sets_for(rollout)),
            services=self.cache.services_in(rollout.namespace),
            analysis_runs=self.cache.analysis_runs_for(rollout),
            analysis_templates=self.cache.analysis_templates_in(rollout.namespace),
            experiments=self.cache.experiments_for(rollout),
            traffic=self.observe_traffic(rollout),
        )

    def sync(self, key: str) -> Optional[float]:
        rollout = self.cache.rollout(key)
        if rollout is None or rollout.metadata.deletion_timestamp is not None:
            return None
        result = reconcile(self.snapshot(rollout), self.options)
        if self._superseded(rollout):
            logger.debug("Rollout changed during reconcile, retrying", rollout=key)
            return 0.0
        with logger.operation("apply_mutations", count=len(result.mutations)) as op:
            op["applied"] = self.executor.apply(rollout, result.mutations)
        status = result.status
        remove_condition(status, RECONCILE_ERROR)
        self.write_status(rollout, status)
        if status.phase is not None:
            self.metrics.set_rollout_phase(rollout.namespace, rollout.name, status.phase.value)
        return result.requeue_after

    def _superseded(self, rollout: Rollout) -> bool:
        """True when the cache holds a newer Rollout than the one just reconciled."""

        current = self.cache.rollout(rollout.key)
        if current is None:
            return True
        return (
            current.metadata.resource_version != rollout.metadata.resource_version
            or current.metadata.generation != rollout.metadata.generation
        )

    def write_status(self, rollout: Rollout, status: RolloutStatus) -> Optional[Rollout]:
        """Persist ``status`` when it differs; a stale ``resourceVersion`` raises a conflict."""

        if status == rollout.status:
            return None
        updated = rollout.model_copy(update={"status": status})
        stored = self.store.update_status(Kind.ROLLOUT, updated)
        self.cache.apply_event(Kind.ROLLOUT, EventType.MODIFIED, stored)
        return stored

    # ------------------------------------------------------------------
    def on_failure(self, key: str, error: BaseException, attempts: int) -> None:
        if isinstance(error, TransientError) and attempts < self.condition_after_failures:
            return
        rollout = self.cache.rollout(key)
        if rollout is None:
            return
        status = rollout.status.model_copy(deep=True)
        message = f"{type(error).__name__}: {error}"
        if not set_condition(status, RECONCILE_ERROR, ConditionStatus.TRUE, REASON_RECONCILE_ERROR, message, self.clock()):
            return
        try:
            self.write_status(rollout, status)
        except ControllerError as exc:
            logger.warning("Could not record reconcile error", rollout=key, error=str(exc))
