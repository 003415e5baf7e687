# SPDX-License-Identifier: MIT
"""AnalysisTemplate and AnalysisRun resources."""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field, model_validator

from .meta import API_VERSION, Duration, ObjectMeta, ResourceModel


class AnalysisPhase(str, Enum):
    """Lifecycle of a measurement, a metric, an AnalysisRun or an Experiment."""

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCESSFUL = "Successful"
    FAILED = "Failed"
    INCONCLUSIVE = "Inconclusive"
    ERROR = "Error"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_PHASES

    @property
    def severity(self) -> int:
        """Rank used for worst-case aggregation; higher is worse."""

        return _SEVERITY[self]


_TERMINAL_PHASES = frozenset(
    {
        AnalysisPhase.SUCCESSFUL,
        AnalysisPhase.FAILED,
        AnalysisPhase.INCONCLUSIVE,
        AnalysisPhase.ERROR,
    }
)

_SEVERITY = {
    AnalysisPhase.SUCCESSFUL: 0,
    AnalysisPhase.PENDING: 1,
    AnalysisPhase.RUNNING: 2,
    AnalysisPhase.INCONCLUSIVE: 3,
    AnalysisPhase.ERROR: 4,
    AnalysisPhase.FAILED: 5,
}


def worst_phase(phases: List[AnalysisPhase]) -> AnalysisPhase:
    return max(phases, key=lambda phase: phase.severity)


class FailureCounting(str, Enum):
    CONSECUTIVE = "Consecutive"
    TOTAL = "Total"


class MetricProviderRef(ResourceModel):
    """Which provider measures the metric and its provider-specific config.

    Accepts both ``{"type": "prometheus", "config": {...}}`` and the shorthand
    ``{"prometheus": {...}}``.
    """

    type: str
    config: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _expand_shorthand(cls, data: Any) -> Any:
        if isinstance(data, dict) and "type" not in data and len(data) == 1:
            (name, config), = data.items()
            return {"type": name, "config": config or {}}
        return data


class Metric(ResourceModel):
    name: str
    provider: MetricProviderRef
    interval: Optional[Duration] = None
    initial_delay: Optional[Duration] = None
    count: Optional[int] = Field(default=None, ge=0)
    success_condition: Optional[str] = None
    failure_condition: Optional[str] = None
    failure_limit: int = Field(default=1, ge=1)
    failure_counting: FailureCounting = FailureCounting.CONSECUTIVE
    inconclusive_limit: int = Field(default=1, ge=1)
    consecutive_error_limit: Optional[int] = Field(default=None, ge=1)
    dry_run: bool = False
    measurement_retention: int = Field(default=10, ge=1)

    @property
    def effective_count(self) -> int:
        """Required successful measurements; 0 means unbounded."""

        if self.count is not None:
            return self.count
        return 0 if self.interval is not None else 1

    @property
    def error_limit(self) -> int:
        return self.consecutive_error_limit or self.failure_limit


class Argument(ResourceModel):
    name: str
    value: Optional[str] = None


class AnalysisTemplateSpec(ResourceModel):
    metrics: List[Metric] = Field(default_factory=list)
    args: List[Argument] = Field(default_factory=list)


class AnalysisTemplate(ResourceModel):
    api_version: str = API_VERSION
    kind: str = "AnalysisTemplate"
    metadata: ObjectMeta
    spec: AnalysisTemplateSpec = Field(default_factory=AnalysisTemplateSpec)


class Measurement(ResourceModel):
    phase: AnalysisPhase
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    value: Optional[str] = None
    message: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    resume_at: Optional[datetime] = None


class MetricResult(ResourceModel):
    name: str
    phase: AnalysisPhase = AnalysisPhase.PENDING
    measurements: List[Measurement] = Field(default_factory=list)
    count: int = 0
    successful: int = 0
    failed: int = 0
    inconclusive: int = 0
    error: int = 0
    consecutive_failed: int = 0
    consecutive_error: int = 0
    message: Optional[str] = None
    dry_run: bool = False

    @property
    def last_measurement(self) -> Optional[Measurement]:
        return self.measurements[-1] if self.measurements else None

    @property
    def in_flight(self) -> Optional[Measurement]:
        last = self.last_measurement
        if last is not None and last.phase == AnalysisPhase.RUNNING:
            return last
        return None


class AnalysisRunSpec(ResourceModel):
    metrics: List[Metric] = Field(default_factory=list)
    args: List[Argument] = Field(default_factory=list)
    terminate: bool = False


class AnalysisRunStatus(ResourceModel):
    phase: AnalysisPhase = AnalysisPhase.PENDING
    message: Optional[str] = None
    #: Set once a terminate request was seen; the phase is frozen from then on.
    terminated: bool = False
    metric_results: List[MetricResult] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def result_for(self, name: str) -> Optional[MetricResult]:
        for result in self.metric_results:
            if result.name == name:
                return result
        return None


class AnalysisRun(ResourceModel):
    api_version: str = API_VERSION
    kind: str = "AnalysisRun"
    metadata: ObjectMeta
    spec: AnalysisRunSpec = Field(default_factory=AnalysisRunSpec)
    status: AnalysisRunStatus = Field(default_factory=AnalysisRunStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def phase(self) -> AnalysisPhase:
        return self.status.phase

    @property
    def terminated(self) -> bool:
        return self.spec.terminate or self.status.terminated

    @property
    def settled(self) -> bool:
        """True once nothing more will be measured for this run."""

        if self.status.phase.is_terminal:
            return True
        return self.status.terminated and self.status.completed_at is not None


def seconds(value: Optional[timedelta]) -> float:
    return value.total_seconds() if value is not None else 0.0


__all__ = [
    "AnalysisPhase",
    "AnalysisRun",
    "AnalysisRunSpec",
    "AnalysisRunStatus",
    "AnalysisTemplate",
    "AnalysisTemplateSpec",
    "Argument",
    "FailureCounting",
    "Measurement",
    "Metric",
    "MetricProviderRef",
    "MetricResult",
    "seconds",
    "worst_phase",
]
