# SPDX-License-Identifier: MIT
"""Workload objects the controller orchestrates but does not define."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import Field

from .meta import (
    POD_TEMPLATE_HASH_LABEL,
    REVISION_ANNOTATION,
    SCALE_DOWN_DEADLINE_ANNOTATION,
    ObjectMeta,
    ResourceModel,
)


class ReplicaSetSpec(ResourceModel):
    replicas: int = 0
    selector: Dict[str, Any] = Field(default_factory=dict)
    template: Dict[str, Any] = Field(default_factory=dict)


class ReplicaSetStatus(ResourceModel):
    replicas: int = 0
    ready_replicas: int = 0
    available_replicas: int = 0
    observed_generation: int = 0


class ReplicaSet(ResourceModel):
    api_version: str = "apps/v1"
    kind: str = "ReplicaSet"
    metadata: ObjectMeta
    spec: ReplicaSetSpec = Field(default_factory=ReplicaSetSpec)
    status: ReplicaSetStatus = Field(default_factory=ReplicaSetStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def pod_hash(self) -> str:
        return self.metadata.labels.get(POD_TEMPLATE_HASH_LABEL, "")

    @property
    def revision(self) -> int:
        raw = self.metadata.annotations.get(REVISION_ANNOTATION, "0")
        try:
            return int(raw)
        except ValueError:
            return 0

    @property
    def replicas(self) -> int:
        return self.spec.replicas

    @property
    def available_replicas(self) -> int:
        # Availability reported for an older generation of the spec is stale.
        if self.status.observed_generation and self.status.observed_generation < self.metadata.generation:
            return min(self.status.available_replicas, self.spec.replicas)
        return self.status.available_replicas

    @property
    def scale_down_deadline(self) -> Optional[datetime]:
        raw = self.metadata.annotations.get(SCALE_DOWN_DEADLINE_ANNOTATION)
        if not raw:
            return None
        try:
            return datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None

    def is_available(self, replicas: int | None = None) -> bool:
        """True once ``replicas`` (default: the desired count) pods are available."""

        wanted = self.spec.replicas if replicas is None else replicas
        return self.available_replicas >= wanted


class ServiceSpec(ResourceModel):
    selector: Dict[str, str] = Field(default_factory=dict)
    ports: List[Dict[str, Any]] = Field(default_factory=list)


class Service(ResourceModel):
    api_version: str = "v1"
    kind: str = "Service"
    metadata: ObjectMeta
    spec: ServiceSpec = Field(default_factory=ServiceSpec)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def selected_hash(self) -> str:
        return self.spec.selector.get(POD_TEMPLATE_HASH_LABEL, "")


__all__ = [
    "ReplicaSet",
    "ReplicaSetSpec",
    "ReplicaSetStatus",
    "Service",
    "ServiceSpec",
]
