# SPDX-License-Identifier: MIT
"""Working state of a single reconcile pass.

:class:`ReconcileContext` holds a private copy of the Rollout status, the
replica sets classified as new/stable/older and the list of mutations emitted
so far. Every emit helper compares desired against observed state first, so
replaying a pass over an already converged snapshot emits nothing.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Mapping, Optional, TypeVar

from core.errors import InvariantViolationError
from core.utils.fingerprint import pod_template_hash
from domain.analysis import AnalysisRun
from domain.meta import POD_TEMPLATE_HASH_LABEL
from domain.workloads import ReplicaSet

from .mutations import (
    Mutation,
    ScaleReplicaSet,
    SwitchServiceSelector,
    TerminateAnalysisRun,
    TerminateExperiment,
)
from .snapshot import ReconcileResult, RolloutSnapshot

__all__ = ["ReconcileContext", "ReconcilerOptions", "require"]

T = TypeVar("T")


def require(value: Optional[T], what: str) -> T:
    """Return ``value``, failing the pass when an earlier stage left it unset."""

    if value is None:
        raise InvariantViolationError(f"{what} is not available at this point of the reconcile")
    return value


@dataclass(frozen=True)
class ReconcilerOptions:
    weight_verify_interval: float = 5.0
    missing_dependency_requeue: float = 30.0


class ReconcileContext:
    def __init__(self, snapshot: RolloutSnapshot, options: ReconcilerOptions) -> None:
        self.snapshot = snapshot
        self.options = options
        self.rollout = snapshot.rollout
        self.spec = snapshot.rollout.spec
        self.status = snapshot.rollout.status.model_copy(deep=True)
        self.now: datetime = snapshot.now
        self.pod_hash = pod_template_hash(self.spec.template, ignore_label=POD_TEMPLATE_HASH_LABEL)
        self.replica_sets: List[ReplicaSet] = sorted(
            snapshot.replica_sets, key=lambda rs: (rs.revision, rs.name)
        )
        self.new_rs: Optional[ReplicaSet] = next(
            (rs for rs in self.replica_sets if rs.pod_hash == self.pod_hash), None
        )
        self.stable_rs: Optional[ReplicaSet] = None
        self.revision = 0
        self.requeue_after: Optional[float] = None
        self.progressed = False
        self.waiting_for_replicas = False
        self._mutations: List[Optional[Mutation]] = []
        self._scales: Dict[str, int] = {}

    # ------------------------------------------------------------------
    @property
    def replicas(self) -> int:
        return self.spec.replicas

    @property
    def older_replica_sets(self) -> List[ReplicaSet]:
        excluded = {rs.name for rs in (self.new_rs, self.stable_rs) if rs is not None}
        return [rs for rs in self.replica_sets if rs.name not in excluded]

    @property
    def is_new_stable(self) -> bool:
        return (
            self.new_rs is not None
            and self.stable_rs is not None
            and self.new_rs.name == self.stable_rs.name
        )

    @property
    def mutations(self) -> List[Mutation]:
        return [mutation for mutation in self._mutations if mutation is not None]

    # ------------------------------------------------------------------
    def emit(self, mutation: Mutation) -> None:
        self._mutations.append(mutation)
        self.progressed = True

    def requeue(self, seconds: float) -> None:
        seconds = max(float(seconds), 0.0)
        if self.requeue_after is None or seconds < self.requeue_after:
            self.requeue_after = seconds

    def requeue_at(self, when: datetime) -> None:
        self.requeue((when - self.now).total_seconds())

    def wait_for_replicas(self) -> None:
        self.waiting_for_replicas = True

    def planned_replicas(self, rs: ReplicaSet) -> int:
        index = self._scales.get(rs.name)
        if index is not None:
            planned = self._mutations[index]
            if isinstance(planned, ScaleReplicaSet):
                return planned.replicas
        return rs.spec.replicas

    def is_planned(self, rs: ReplicaSet) -> bool:
        index = self._scales.get(rs.name)
        return index is not None and self._mutations[index] is not None

    def scale(
        self,
        rs: ReplicaSet,
        replicas: int,
        annotations: Mapping[str, Optional[str]] | None = None,
    ) -> None:
        """Request ``replicas`` for ``rs``; later calls in the same pass win."""

        wanted = dict(annotations or {})
        index = self._scales.get(rs.name)
        if index is not None:
            previous = self._mutations[index]
            if isinstance(previous, ScaleReplicaSet):
                wanted = {**previous.annotations, **wanted}
        changed = {
            key: value
            for key, value in wanted.items()
            if rs.metadata.annotations.get(key) != value
        }
        mutation: Optional[Mutation] = None
        if rs.spec.replicas != replicas or changed:
            mutation = ScaleReplicaSet(name=rs.name, replicas=replicas, annotations=changed)
        if index is not None:
            self._mutations[index] = mutation
        elif mutation is not None:
            self._scales[rs.name] = len(self._mutations)
            self._mutations.append(mutation)
        if mutation is not None:
            self.progressed = True

    def switch_service(self, name: Optional[str], pod_hash: str) -> None:
        if not name:
            return
        service = self.snapshot.services.get(name)
        if service is None or service.selected_hash == pod_hash:
            return
        self.emit(SwitchServiceSelector(service=name, pod_hash=pod_hash))

    def service_hash(self, name: Optional[str]) -> Optional[str]:
        if not name:
            return None
        service = self.snapshot.services.get(name)
        return service.selected_hash if service is not None else None

    def analysis_run(self, name: Optional[str]) -> Optional[AnalysisRun]:
        if not name:
            return None
        return self.snapshot.analysis_runs.get(name)

    def terminate_run(self, name: Optional[str]) -> None:
        run = self.analysis_run(name)
        if run is None or run.phase.is_terminal or run.spec.terminate:
            return
        self.emit(TerminateAnalysisRun(name=run.name))

    def terminate_experiment(self, name: Optional[str]) -> None:
        if not name:
            return
        experiment = self.snapshot.experiments.get(name)
        if experiment is None or experiment.phase.is_terminal or experiment.spec.terminate:
            return
        self.emit(TerminateExperiment(name=name))

    def result(self) -> ReconcileResult:
        return ReconcileResult(
            mutations=self.mutations,
            status=self.status,
            requeue_after=self.requeue_after,
        )
