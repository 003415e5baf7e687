# SPDX-License-Identifier: MIT
"""Apply reconciler mutations to the object store and the traffic router."""

from __future__ import annotations

from typing import Any, Callable, Dict, Optional, Sequence, Type

from core.errors import AlreadyExistsError, InvariantViolationError, NotFoundError
from core.utils.logging import get_logger
from core.utils.metrics import MetricsCollector, get_metrics_collector
from domain.meta import POD_TEMPLATE_HASH_LABEL
from domain.rollout import Rollout
from rollout.mutations import (
    ApplyHeaderRoute,
    ApplyMirrorRoute,
    CreateAnalysisRun,
    CreateExperiment,
    CreateReplicaSet,
    DeleteReplicaSet,
    Mutation,
    RemoveManagedRoutes,
    ScaleReplicaSet,
    SetTrafficWeight,
    SwitchServiceSelector,
    TerminateAnalysisRun,
    TerminateExperiment,
)
from traffic.router import GuardedRouter, RouterRegistry

from .client import Kind, ObjectStore

__all__ = ["MutationExecutor"]

logger = get_logger(__name__)


class MutationExecutor:
    """Apply mutations in order, stopping at the first failure.

    Every mutation is idempotent against the store: creating an object that
    already exists and deleting one that is already gone both count as
    success, so replaying a partially applied pass converges.
    """

    def __init__(
        self,
        store: ObjectStore,
        routers: RouterRegistry,
        *,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.store = store
        self.routers = routers
        self.metrics = metrics or get_metrics_collector()
        self._handlers: Dict[Type[Any], Callable[[Rollout, Any], str]] = {
            CreateReplicaSet: self._create_replica_set,
            ScaleReplicaSet: self._scale_replica_set,
            DeleteReplicaSet: self._delete_replica_set,
            SwitchServiceSelector: self._switch_service,
            SetTrafficWeight: self._set_weight,
            ApplyHeaderRoute: self._header_route,
            ApplyMirrorRoute: self._mirror_route,
            RemoveManagedRoutes: self._remove_routes,
            CreateAnalysisRun: self._create_analysis_run,
            TerminateAnalysisRun: self._terminate_analysis_run,
            CreateExperiment: self._create_experiment,
            TerminateExperiment: self._terminate_experiment,
        }

    def apply(self, rollout: Rollout, mutations: Sequence[Mutation]) -> int:
        """Apply ``mutations``; returns how many were applied."""

        applied = 0
        for mutation in mutations:
            kind = type(mutation).__name__
            handler = self._handlers.get(type(mutation))
            if handler is None:
                raise InvariantViolationError(f"no handler for mutation {kind}")
            try:
                status = handler(rollout, mutation)
            except Exception:
                self.metrics.record_mutation(kind, "error")
                raise
            self.metrics.record_mutation(kind, status)
            logger.debug("Applied mutation", mutation=kind, status=status)
            applied += 1
        return applied

    # ------------------------------------------------------------------
    def _router(self, rollout: Rollout) -> GuardedRouter:
        router = self.routers.for_rollout(rollout)
        if router is None:
            raise InvariantViolationError(f"rollout {rollout.key} has no traffic routing configured")
        return router

    def _create(self, kind: Kind, obj: Any) -> str:
        try:
            self.store.create(kind, obj)
        except AlreadyExistsError:
            return "exists"
        return "applied"

    def _delete(self, kind: Kind, namespace: str, name: str) -> str:
        try:
            self.store.delete(kind, namespace, name)
        except NotFoundError:
            return "missing"
        return "applied"

    def _patch(self, kind: Kind, namespace: str, name: str, patch: Dict[str, Any]) -> str:
        try:
            self.store.patch(kind, namespace, name, patch)
        except NotFoundError:
            # The next watch event triggers a pass that sees the object gone.
            return "missing"
        return "applied"

    def _create_replica_set(self, rollout: Rollout, mutation: CreateReplicaSet) -> str:
        logger.info(
            "Creating replica set",
            rollout=rollout.key,
            replica_set=mutation.replica_set.name,
            pod_hash=mutation.replica_set.pod_hash,
        )
        return self._create(Kind.REPLICA_SET, mutation.replica_set)

    def _scale_replica_set(self, rollout: Rollout, mutation: ScaleReplicaSet) -> str:
        patch: Dict[str, Any] = {"spec": {"replicas": mutation.replicas}}
        if mutation.annotations:
            patch["metadata"] = {"annotations": dict(mutation.annotations)}
        logger.info(
            "Scaling replica set",
            rollout=rollout.key,
            replica_set=mutation.name,
            replicas=mutation.replicas,
        )
        return self._patch(Kind.REPLICA_SET, rollout.namespace, mutation.name, patch)

    def _delete_replica_set(self, rollout: Rollout, mutation: DeleteReplicaSet) -> str:
        logger.info("Deleting replica set", rollout=rollout.key, replica_set=mutation.name)
        return self._delete(Kind.REPLICA_SET, rollout.namespace, mutation.name)

    def _switch_service(self, rollout: Rollout, mutation: SwitchServiceSelector) -> str:
        logger.info(
            "Switching service selector",
            rollout=rollout.key,
            service=mutation.service,
            pod_hash=mutation.pod_hash,
        )
        patch = {"spec": {"selector": {POD_TEMPLATE_HASH_LABEL: mutation.pod_hash}}}
        return self._patch(Kind.SERVICE, rollout.namespace, mutation.service, patch)

    def _set_weight(self, rollout: Rollout, mutation: SetTrafficWeight) -> str:
        logger.info("Setting canary weight", rollout=rollout.key, weight=mutation.weight)
        self._router(rollout).set_weight(mutation.weight)
        return "applied"

    def _header_route(self, rollout: Rollout, mutation: ApplyHeaderRoute) -> str:
        self._router(rollout).set_header_route(mutation.route)
        return "applied"

    def _mirror_route(self, rollout: Rollout, mutation: ApplyMirrorRoute) -> str:
        self._router(rollout).set_mirror_route(mutation.route)
        return "applied"

    def _remove_routes(self, rollout: Rollout, mutation: RemoveManagedRoutes) -> str:
        self._router(rollout).remove_managed_routes()
        return "applied"

    def _create_analysis_run(self, rollout: Rollout, mutation: CreateAnalysisRun) -> str:
        logger.info("Creating analysis run", rollout=rollout.key, analysis_run=mutation.run.name)
        return self._create(Kind.ANALYSIS_RUN, mutation.run)

    def _terminate_analysis_run(self, rollout: Rollout, mutation: TerminateAnalysisRun) -> str:
        logger.info("Terminating analysis run", rollout=rollout.key, analysis_run=mutation.name)
        return self._patch(Kind.ANALYSIS_RUN, rollout.namespace, mutation.name, {"spec": {"terminate": True}})

    def _create_experiment(self, rollout: Rollout, mutation: CreateExperiment) -> str:
        logger.info("Creating experiment", rollout=rollout.key, experiment=mutation.experiment.name)
        return self._create(Kind.EXPERIMENT, mutation.experiment)

    def _terminate_experiment(self, rollout: Rollout, mutation: TerminateExperiment) -> str:
        logger.info("Terminating experiment", rollout=rollout.key, experiment=mutation.name)
        return self._patch(Kind.EXPERIMENT, rollout.namespace, mutation.name, {"spec": {"terminate": True}})

    def router_for(self, rollout: Rollout) -> Optional[GuardedRouter]:
        return self.routers.for_rollout(rollout)
