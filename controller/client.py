# SPDX-License-Identifier: MIT
"""Object-store seam between the controllers and the cluster API.

Objects cross this boundary as domain models. Adapters translate transport
failures into the :mod:`core.errors` taxonomy: a stale ``resourceVersion``
becomes :class:`~core.errors.ConflictError`, a missing object
:class:`~core.errors.NotFoundError`, a duplicate create
:class:`~core.errors.AlreadyExistsError`.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Protocol, Tuple, Type

from domain.analysis import AnalysisRun, AnalysisTemplate
from domain.experiment import Experiment
from domain.meta import ResourceModel
from domain.rollout import Rollout
from domain.workloads import ReplicaSet, Service

__all__ = [
    "EventType",
    "Kind",
    "ObjectStore",
    "RESOURCE_MODELS",
    "WatchEvent",
]


class Kind(str, Enum):
    ROLLOUT = "Rollout"
    REPLICA_SET = "ReplicaSet"
    SERVICE = "Service"
    ANALYSIS_RUN = "AnalysisRun"
    ANALYSIS_TEMPLATE = "AnalysisTemplate"
    EXPERIMENT = "Experiment"


RESOURCE_MODELS: Dict[Kind, Type[ResourceModel]] = {
    Kind.ROLLOUT: Rollout,
    Kind.REPLICA_SET: ReplicaSet,
    Kind.SERVICE: Service,
    Kind.ANALYSIS_RUN: AnalysisRun,
    Kind.ANALYSIS_TEMPLATE: AnalysisTemplate,
    Kind.EXPERIMENT: Experiment,
}


class EventType(str, Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class WatchEvent:
    type: EventType
    object: Any


class ObjectStore(Protocol):
    """Minimal verbs the controllers need from the object store."""

    def get(self, kind: Kind, namespace: str, name: str) -> Any:
        ...

    def list(self, kind: Kind, namespace: Optional[str] = None) -> Tuple[List[Any], Optional[str]]:
        """Return the objects and the list ``resourceVersion`` to watch from."""

    def watch(
        self,
        kind: Kind,
        namespace: Optional[str] = None,
        *,
        resource_version: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
    ) -> Iterator[WatchEvent]:
        ...

    def create(self, kind: Kind, obj: Any) -> Any:
        ...

    def patch(self, kind: Kind, namespace: str, name: str, patch: Mapping[str, Any]) -> Any:
        """JSON merge patch of the main resource; ``None`` values delete keys."""

    def update_status(self, kind: Kind, obj: Any) -> Any:
        """Replace the status subresource; guarded by ``metadata.resourceVersion``."""

    def delete(self, kind: Kind, namespace: str, name: str) -> None:
        ...
