# SPDX-License-Identifier: MIT
"""Semantic checks on a Rollout spec beyond what the models enforce."""

from __future__ import annotations

from typing import Iterable, List, Mapping

from analysis.templates import validate_metric_conditions
from domain.analysis import AnalysisTemplate
from domain.rollout import (
    BlueGreenStrategy,
    CanaryStrategy,
    Rollout,
    RolloutAnalysis,
    StepKind,
)
from domain.workloads import Service

__all__ = ["missing_services", "validate_rollout"]


def _check_templates(
    where: str,
    analysis: RolloutAnalysis | None,
    templates: Mapping[str, AnalysisTemplate],
    errors: List[str],
) -> None:
    if analysis is None:
        return
    if not analysis.templates:
        errors.append(f"{where}: at least one analysis template is required")
    for reference in analysis.templates:
        template = templates.get(reference.template_name)
        if template is None:
            errors.append(f"{where}: analysis template '{reference.template_name}' not found")
            continue
        for problem in validate_metric_conditions(template.spec.metrics):
            errors.append(f"{where}: template '{reference.template_name}' {problem}")


def _validate_canary(canary: CanaryStrategy, templates: Mapping[str, AnalysisTemplate], errors: List[str]) -> None:
    routed = canary.traffic_routing is not None
    last_weight = 0
    for index, step in enumerate(canary.steps):
        where = f"steps[{index}]"
        kind = step.kind
        if kind == StepKind.SET_WEIGHT and step.set_weight is not None:
            if step.set_weight < last_weight:
                errors.append(
                    f"{where}: setWeight {step.set_weight} is lower than the previous weight {last_weight}"
                )
            last_weight = max(last_weight, step.set_weight)
        elif kind == StepKind.ANALYSIS:
            _check_templates(where, step.analysis, templates, errors)
        elif kind == StepKind.EXPERIMENT and step.experiment is not None:
            experiment = step.experiment
            if experiment.duration is None and not experiment.analyses:
                errors.append(f"{where}: experiment needs a duration or at least one analysis")
            names = [template.name for template in experiment.templates]
            if len(names) != len(set(names)):
                errors.append(f"{where}: experiment template names must be unique")
            for analysis in experiment.analyses:
                if analysis.template_name not in templates:
                    errors.append(f"{where}: analysis template '{analysis.template_name}' not found")
        elif kind in (StepKind.SET_HEADER_ROUTE, StepKind.SET_MIRROR_ROUTE, StepKind.SET_CANARY_SCALE):
            if not routed:
                errors.append(f"{where}: {kind.value} requires trafficRouting")
    if routed and not canary.stable_service:
        errors.append("trafficRouting requires stableService")
    if canary.stable_service and canary.stable_service == canary.canary_service:
        errors.append("stableService and canaryService must differ")
    if canary.analysis is not None:
        _check_templates("analysis", canary.analysis, templates, errors)
        starting = canary.analysis.starting_step
        if starting is not None and starting > len(canary.steps):
            errors.append(f"analysis.startingStep {starting} is beyond the {len(canary.steps)} steps")


def _validate_blue_green(
    blue_green: BlueGreenStrategy, templates: Mapping[str, AnalysisTemplate], errors: List[str]
) -> None:
    if blue_green.preview_service and blue_green.preview_service == blue_green.active_service:
        errors.append("activeService and previewService must differ")
    _check_templates("prePromotionAnalysis", blue_green.pre_promotion_analysis, templates, errors)
    _check_templates("postPromotionAnalysis", blue_green.post_promotion_analysis, templates, errors)


def validate_rollout(rollout: Rollout, templates: Mapping[str, AnalysisTemplate]) -> List[str]:
    """Return human readable problems; an empty list means the spec is usable."""

    errors: List[str] = []
    spec = rollout.spec
    if not spec.template:
        errors.append("template must not be empty")
    match_labels = (spec.selector or {}).get("matchLabels") or {}
    template_labels = ((spec.template or {}).get("metadata") or {}).get("labels") or {}
    if not match_labels:
        errors.append("selector.matchLabels must not be empty")
    for key, value in match_labels.items():
        if template_labels.get(key) != value:
            errors.append(f"selector label {key}={value} does not match the template labels")
    if spec.strategy.canary is not None:
        _validate_canary(spec.strategy.canary, templates, errors)
    if spec.strategy.blue_green is not None:
        _validate_blue_green(spec.strategy.blue_green, templates, errors)
    return errors


def _referenced_services(rollout: Rollout) -> Iterable[str]:
    canary = rollout.spec.strategy.canary
    if canary is not None:
        yield from (name for name in (canary.stable_service, canary.canary_service) if name)
    blue_green = rollout.spec.strategy.blue_green
    if blue_green is not None:
        yield blue_green.active_service
        if blue_green.preview_service:
            yield blue_green.preview_service


def missing_services(rollout: Rollout, services: Mapping[str, Service]) -> List[str]:
    return [name for name in _referenced_services(rollout) if name not in services]
