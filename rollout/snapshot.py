# SPDX-License-Identifier: MIT
"""Inputs and outputs of one reconcile pass."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Mapping, Optional, Sequence

from domain.analysis import AnalysisRun, AnalysisTemplate
from domain.experiment import Experiment
from domain.rollout import Rollout, RolloutStatus
from domain.workloads import ReplicaSet, Service

from .mutations import Mutation

__all__ = ["ReconcileResult", "RolloutSnapshot", "TrafficObservation"]


@dataclass(frozen=True)
class TrafficObservation:
    """What the traffic router reported before the pass.

    ``weight`` is ``None`` when the router cannot report its own state.
    ``available`` is ``False`` when asking the router failed.
    """

    weight: Optional[int] = None
    available: bool = True


@dataclass(frozen=True)
class RolloutSnapshot:
    """Everything the reconciler may look at, read from the cache at one instant."""

    rollout: Rollout
    now: datetime
    replica_sets: Sequence[ReplicaSet] = ()
    services: Mapping[str, Service] = field(default_factory=dict)
    analysis_runs: Mapping[str, AnalysisRun] = field(default_factory=dict)
    analysis_templates: Mapping[str, AnalysisTemplate] = field(default_factory=dict)
    experiments: Mapping[str, Experiment] = field(default_factory=dict)
    traffic: TrafficObservation = field(default_factory=TrafficObservation)


@dataclass
class ReconcileResult:
    """Mutations to apply, the status to write and when to look again.

    ``requeue_after`` is ``None`` when only a watch event should trigger the
    next pass, ``0`` for an immediate follow-up.
    """

    mutations: List[Mutation]
    status: RolloutStatus
    requeue_after: Optional[float] = None
