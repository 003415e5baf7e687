# SPDX-License-Identifier: MIT
"""Domain layer containing the rollout resources and the workloads they drive."""

from .analysis import (
    AnalysisPhase,
    AnalysisRun,
    AnalysisRunSpec,
    AnalysisRunStatus,
    AnalysisTemplate,
    AnalysisTemplateSpec,
    Argument,
    FailureCounting,
    Measurement,
    Metric,
    MetricProviderRef,
    MetricResult,
)
from .experiment import Experiment, ExperimentSpec, ExperimentStatus
from .meta import Condition, ConditionStatus, ObjectMeta, OwnerReference, utcnow
from .rollout import (
    BlueGreenStrategy,
    CanaryStep,
    CanaryStrategy,
    PauseReason,
    Rollout,
    RolloutPhase,
    RolloutSpec,
    RolloutStatus,
    StepKind,
)
from .workloads import ReplicaSet, Service

__all__ = [
    "AnalysisPhase",
    "AnalysisRun",
    "AnalysisRunSpec",
    "AnalysisRunStatus",
    "AnalysisTemplate",
    "AnalysisTemplateSpec",
    "Argument",
    "BlueGreenStrategy",
    "CanaryStep",
    "CanaryStrategy",
    "Condition",
    "ConditionStatus",
    "Experiment",
    "ExperimentSpec",
    "ExperimentStatus",
    "FailureCounting",
    "Measurement",
    "Metric",
    "MetricProviderRef",
    "MetricResult",
    "ObjectMeta",
    "OwnerReference",
    "PauseReason",
    "ReplicaSet",
    "Rollout",
    "RolloutPhase",
    "RolloutSpec",
    "RolloutStatus",
    "Service",
    "StepKind",
    "utcnow",
]
