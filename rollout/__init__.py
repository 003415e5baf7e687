# SPDX-License-Identifier: MIT
"""Rollout reconciliation: a pure function from observed state to mutations."""

from .actions import abort, pause, promote, resume, retry
from .context import ReconcileContext, ReconcilerOptions
from .mutations import (
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
from .reconciler import reconcile
from .snapshot import ReconcileResult, RolloutSnapshot, TrafficObservation
from .validation import missing_services, validate_rollout

__all__ = [
    "ApplyHeaderRoute",
    "ApplyMirrorRoute",
    "CreateAnalysisRun",
    "CreateExperiment",
    "CreateReplicaSet",
    "DeleteReplicaSet",
    "Mutation",
    "ReconcileContext",
    "ReconcileResult",
    "ReconcilerOptions",
    "RemoveManagedRoutes",
    "RolloutSnapshot",
    "ScaleReplicaSet",
    "SetTrafficWeight",
    "SwitchServiceSelector",
    "TerminateAnalysisRun",
    "TerminateExperiment",
    "TrafficObservation",
    "abort",
    "missing_services",
    "pause",
    "promote",
    "reconcile",
    "resume",
    "retry",
    "validate_rollout",
]
