# SPDX-License-Identifier: MIT
"""Side effects requested by the reconciler.

The reconciler never talks to the cluster or the router itself. It returns a
list of these immutable requests which the controller applies in order.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Dict, Mapping, Optional, Union

from pydantic.alias_generators import to_camel

from domain.analysis import AnalysisRun
from domain.experiment import Experiment
from domain.meta import ResourceModel
from domain.rollout import SetHeaderRoute, SetMirrorRoute
from domain.workloads import ReplicaSet

__all__ = [
    "ApplyHeaderRoute",
    "ApplyMirrorRoute",
    "CreateAnalysisRun",
    "CreateExperiment",
    "CreateReplicaSet",
    "DeleteReplicaSet",
    "Mutation",
    "RemoveManagedRoutes",
    "ScaleReplicaSet",
    "SetTrafficWeight",
    "SwitchServiceSelector",
    "TerminateAnalysisRun",
    "TerminateExperiment",
    "describe",
]


@dataclass(frozen=True)
class CreateReplicaSet:
    replica_set: ReplicaSet


@dataclass(frozen=True)
class ScaleReplicaSet:
    """Set ``spec.replicas`` and patch annotations (``None`` removes a key)."""

    name: str
    replicas: int
    annotations: Mapping[str, Optional[str]] = field(default_factory=dict)


@dataclass(frozen=True)
class DeleteReplicaSet:
    name: str


@dataclass(frozen=True)
class SwitchServiceSelector:
    """Point ``service`` at the pods carrying ``pod_hash``."""

    service: str
    pod_hash: str


@dataclass(frozen=True)
class SetTrafficWeight:
    weight: int


@dataclass(frozen=True)
class ApplyHeaderRoute:
    route: SetHeaderRoute


@dataclass(frozen=True)
class ApplyMirrorRoute:
    route: SetMirrorRoute


@dataclass(frozen=True)
class RemoveManagedRoutes:
    pass


@dataclass(frozen=True)
class CreateAnalysisRun:
    run: AnalysisRun


@dataclass(frozen=True)
class TerminateAnalysisRun:
    name: str


@dataclass(frozen=True)
class CreateExperiment:
    experiment: Experiment


@dataclass(frozen=True)
class TerminateExperiment:
    name: str


Mutation = Union[
    CreateReplicaSet,
    ScaleReplicaSet,
    DeleteReplicaSet,
    SwitchServiceSelector,
    SetTrafficWeight,
    ApplyHeaderRoute,
    ApplyMirrorRoute,
    RemoveManagedRoutes,
    CreateAnalysisRun,
    TerminateAnalysisRun,
    CreateExperiment,
    TerminateExperiment,
]


def describe(mutation: Mutation) -> Dict[str, Any]:
    """Plain-data rendering of a mutation for dry-run output."""

    payload: Dict[str, Any] = {"type": type(mutation).__name__}
    for item in fields(mutation):
        value = getattr(mutation, item.name)
        if isinstance(value, ResourceModel):
            value = value.to_dict()
        elif isinstance(value, Mapping):
            value = dict(value)
        payload[to_camel(item.name)] = value
    return payload
