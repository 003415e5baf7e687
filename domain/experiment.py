# SPDX-License-Identifier: MIT
"""Experiment resource, reconciled by an external experiment controller.

The rollout controller only creates Experiments, reads their reported phase
and asks them to terminate.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import Field

from .analysis import AnalysisPhase, Argument
from .meta import API_VERSION, Duration, ObjectMeta, ResourceModel


class ExperimentTemplateSpec(ResourceModel):
    name: str
    replicas: int = 1
    selector: Dict[str, Any] = Field(default_factory=dict)
    template: Dict[str, Any] = Field(default_factory=dict)


class ExperimentAnalysisSpec(ResourceModel):
    name: str
    template_name: str
    args: List[Argument] = Field(default_factory=list)


class ExperimentSpec(ResourceModel):
    templates: List[ExperimentTemplateSpec] = Field(default_factory=list)
    duration: Optional[Duration] = None
    analyses: List[ExperimentAnalysisSpec] = Field(default_factory=list)
    terminate: bool = False


class ExperimentStatus(ResourceModel):
    phase: AnalysisPhase = AnalysisPhase.PENDING
    message: Optional[str] = None


class Experiment(ResourceModel):
    api_version: str = API_VERSION
    kind: str = "Experiment"
    metadata: ObjectMeta
    spec: ExperimentSpec = Field(default_factory=ExperimentSpec)
    status: ExperimentStatus = Field(default_factory=ExperimentStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def phase(self) -> AnalysisPhase:
        return self.status.phase


__all__ = [
    "Experiment",
    "ExperimentAnalysisSpec",
    "ExperimentSpec",
    "ExperimentStatus",
    "ExperimentTemplateSpec",
]
