# SPDX-License-Identifier: MIT
"""Analysis engine: metric providers, conditions and AnalysisRun reconciliation."""

from .conditions import ConditionError, compile_condition, evaluate_condition
from .engine import AnalysisEngine, aggregate_phases, assess_metric, judge_measurement
from .providers import MeasurementResult, MetricProvider, ProviderRegistry, default_provider_registry
from .templates import build_run_spec, merge_templates, resolve_args, substitute

__all__ = [
    "AnalysisEngine",
    "ConditionError",
    "MeasurementResult",
    "MetricProvider",
    "ProviderRegistry",
    "aggregate_phases",
    "assess_metric",
    "build_run_spec",
    "compile_condition",
    "default_provider_registry",
    "evaluate_condition",
    "judge_measurement",
    "merge_templates",
    "resolve_args",
    "substitute",
]
