# SPDX-License-Identifier: MIT
"""The Rollout resource: desired strategy plus the controller-written status.

Status is the only durable state of the controller. Everything needed to
resume a rollout after a restart (step index, weight, pause bookkeeping,
analysis references) lives here.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import Field, model_validator

from .meta import API_VERSION, Condition, Duration, ObjectMeta, OwnerReference, ResourceModel


class StepKind(str, Enum):
    SET_WEIGHT = "setWeight"
    PAUSE = "pause"
    ANALYSIS = "analysis"
    EXPERIMENT = "experiment"
    SET_CANARY_SCALE = "setCanaryScale"
    SET_HEADER_ROUTE = "setHeaderRoute"
    SET_MIRROR_ROUTE = "setMirrorRoute"


class AnalysisTemplateRef(ResourceModel):
    template_name: str


class ArgumentValueFrom(ResourceModel):
    pod_template_hash_value: Literal["Stable", "Latest"]


class AnalysisRunArgument(ResourceModel):
    name: str
    value: Optional[str] = None
    value_from: Optional[ArgumentValueFrom] = None


class RolloutAnalysis(ResourceModel):
    """Analysis gate; ``starting_step`` only applies to background analysis."""

    templates: List[AnalysisTemplateRef] = Field(default_factory=list)
    args: List[AnalysisRunArgument] = Field(default_factory=list)
    starting_step: Optional[int] = Field(default=None, ge=0)


class PauseStep(ResourceModel):
    duration: Optional[Duration] = None


class SetCanaryScale(ResourceModel):
    replicas: Optional[int] = Field(default=None, ge=0)
    weight: Optional[int] = Field(default=None, ge=0, le=100)
    match_traffic_weight: bool = False


class StringMatch(ResourceModel):
    exact: Optional[str] = None
    prefix: Optional[str] = None
    regex: Optional[str] = None


class HeaderRoutingMatch(ResourceModel):
    header_name: str
    header_value: StringMatch


class SetHeaderRoute(ResourceModel):
    name: str
    match: List[HeaderRoutingMatch] = Field(default_factory=list)


class SetMirrorRoute(ResourceModel):
    name: str
    percentage: Optional[int] = Field(default=None, ge=0, le=100)
    match: List[Dict[str, Any]] = Field(default_factory=list)


class RolloutExperimentTemplate(ResourceModel):
    name: str
    spec_ref: Literal["stable", "canary"]
    replicas: Optional[int] = Field(default=None, ge=0)


class RolloutExperimentAnalysis(ResourceModel):
    name: str
    template_name: str
    args: List[AnalysisRunArgument] = Field(default_factory=list)


class ExperimentStep(ResourceModel):
    templates: List[RolloutExperimentTemplate] = Field(default_factory=list)
    duration: Optional[Duration] = None
    analyses: List[RolloutExperimentAnalysis] = Field(default_factory=list)


class CanaryStep(ResourceModel):
    """One ordered canary step; exactly one field is set.

    Shorthand forms are accepted: ``pause: 30s`` / ``pause: null`` and
    ``analysis: <template-name>``.
    """

    set_weight: Optional[int] = Field(default=None, ge=0, le=100)
    pause: Optional[PauseStep] = None
    analysis: Optional[RolloutAnalysis] = None
    experiment: Optional[ExperimentStep] = None
    set_canary_scale: Optional[SetCanaryScale] = None
    set_header_route: Optional[SetHeaderRoute] = None
    set_mirror_route: Optional[SetMirrorRoute] = None

    @model_validator(mode="before")
    @classmethod
    def _expand_shorthand(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "pause" in data:
            pause = data["pause"]
            if pause is None:
                data["pause"] = {}
            elif not isinstance(pause, dict):
                data["pause"] = {"duration": pause}
        analysis = data.get("analysis")
        if isinstance(analysis, str):
            data["analysis"] = {"templates": [{"templateName": analysis}]}
        return data

    @model_validator(mode="after")
    def _exactly_one(self) -> "CanaryStep":
        populated = [kind for kind, value in self._fields() if value is not None]
        if len(populated) != 1:
            raise ValueError(f"a step must set exactly one action, got {len(populated)}")
        return self

    def _fields(self) -> List[tuple[StepKind, Any]]:
        return [
            (StepKind.SET_WEIGHT, self.set_weight),
            (StepKind.PAUSE, self.pause),
            (StepKind.ANALYSIS, self.analysis),
            (StepKind.EXPERIMENT, self.experiment),
            (StepKind.SET_CANARY_SCALE, self.set_canary_scale),
            (StepKind.SET_HEADER_ROUTE, self.set_header_route),
            (StepKind.SET_MIRROR_ROUTE, self.set_mirror_route),
        ]

    @property
    def kind(self) -> StepKind:
        for kind, value in self._fields():
            if value is not None:
                return kind
        raise ValueError("empty canary step")


class TrafficRouting(ResourceModel):
    provider: str
    config: Dict[str, Any] = Field(default_factory=dict)


class CanaryStrategy(ResourceModel):
    steps: List[CanaryStep] = Field(default_factory=list)
    stable_service: Optional[str] = None
    canary_service: Optional[str] = None
    traffic_routing: Optional[TrafficRouting] = None
    analysis: Optional[RolloutAnalysis] = None
    scale_down_delay_seconds: int = Field(default=30, ge=0)


class BlueGreenStrategy(ResourceModel):
    active_service: str
    preview_service: Optional[str] = None
    auto_promotion_enabled: bool = True
    auto_promotion_seconds: Optional[int] = Field(default=None, ge=0)
    preview_replica_count: Optional[int] = Field(default=None, ge=0)
    scale_down_delay_seconds: int = Field(default=30, ge=0)
    pre_promotion_analysis: Optional[RolloutAnalysis] = None
    post_promotion_analysis: Optional[RolloutAnalysis] = None


class RolloutStrategy(ResourceModel):
    canary: Optional[CanaryStrategy] = None
    blue_green: Optional[BlueGreenStrategy] = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "RolloutStrategy":
        if (self.canary is None) == (self.blue_green is None):
            raise ValueError("strategy must define exactly one of canary or blueGreen")
        return self


class RolloutSpec(ResourceModel):
    replicas: int = Field(default=1, ge=0)
    selector: Dict[str, Any] = Field(default_factory=dict)
    template: Dict[str, Any] = Field(default_factory=dict)
    strategy: RolloutStrategy
    paused: bool = False
    progress_deadline_seconds: int = Field(default=600, ge=1)
    progress_deadline_abort: bool = False
    revision_history_limit: int = Field(default=10, ge=0)


class RolloutPhase(str, Enum):
    HEALTHY = "Healthy"
    PROGRESSING = "Progressing"
    PAUSED = "Paused"
    DEGRADED = "Degraded"


class PauseReason(str, Enum):
    CANARY_PAUSE_STEP = "CanaryPauseStep"
    BLUE_GREEN_PAUSE = "BlueGreenPause"
    INCONCLUSIVE_ANALYSIS = "InconclusiveAnalysisRun"
    INCONCLUSIVE_EXPERIMENT = "InconclusiveExperiment"


class PauseCondition(ResourceModel):
    reason: PauseReason
    start_time: datetime


class CanaryStatus(ResourceModel):
    weight: int = 0
    current_step_analysis_run: Optional[str] = None
    current_background_analysis_run: Optional[str] = None
    current_experiment: Optional[str] = None
    managed_routes: List[str] = Field(default_factory=list)


class BlueGreenStatus(ResourceModel):
    active_selector: Optional[str] = None
    preview_selector: Optional[str] = None
    pre_promotion_analysis_run: Optional[str] = None
    post_promotion_analysis_run: Optional[str] = None
    promotion_approved: bool = False


class RolloutStatus(ResourceModel):
    observed_generation: int = 0
    phase: Optional[RolloutPhase] = None
    message: Optional[str] = None
    current_pod_hash: Optional[str] = None
    stable_rs: Optional[str] = None
    current_step_index: Optional[int] = None
    current_step_hash: Optional[str] = None
    pause_conditions: List[PauseCondition] = Field(default_factory=list)
    controller_pause: bool = False
    abort: bool = False
    aborted_at: Optional[datetime] = None
    abort_count: int = 0
    promote_full: bool = False
    canary: CanaryStatus = Field(default_factory=CanaryStatus)
    blue_green: BlueGreenStatus = Field(default_factory=BlueGreenStatus)
    conditions: List[Condition] = Field(default_factory=list)
    replicas: int = 0
    updated_replicas: int = 0
    ready_replicas: int = 0
    available_replicas: int = 0

    def condition(self, condition_type: str) -> Optional[Condition]:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    def pause_condition(self, reason: PauseReason) -> Optional[PauseCondition]:
        for pause in self.pause_conditions:
            if pause.reason == reason:
                return pause
        return None


class Rollout(ResourceModel):
    api_version: str = API_VERSION
    kind: str = "Rollout"
    metadata: ObjectMeta
    spec: RolloutSpec
    status: RolloutStatus = Field(default_factory=RolloutStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> str:
        return self.metadata.key

    @property
    def canary(self) -> Optional[CanaryStrategy]:
        return self.spec.strategy.canary

    @property
    def blue_green(self) -> Optional[BlueGreenStrategy]:
        return self.spec.strategy.blue_green

    def owner_reference(self) -> OwnerReference:
        return OwnerReference(
            api_version=self.api_version,
            kind=self.kind,
            name=self.name,
            uid=self.metadata.uid,
        )


__all__ = [
    "AnalysisRunArgument",
    "AnalysisTemplateRef",
    "ArgumentValueFrom",
    "BlueGreenStatus",
    "BlueGreenStrategy",
    "CanaryStatus",
    "CanaryStep",
    "CanaryStrategy",
    "ExperimentStep",
    "HeaderRoutingMatch",
    "PauseCondition",
    "PauseReason",
    "PauseStep",
    "Rollout",
    "RolloutAnalysis",
    "RolloutExperimentAnalysis",
    "RolloutExperimentTemplate",
    "RolloutPhase",
    "RolloutSpec",
    "RolloutStatus",
    "RolloutStrategy",
    "SetCanaryScale",
    "SetHeaderRoute",
    "SetMirrorRoute",
    "StepKind",
    "StringMatch",
    "TrafficRouting",
]
