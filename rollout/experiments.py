# SPDX-License-Identifier: MIT
"""Experiment steps: delegate to the experiment controller and await its verdict."""

from __future__ import annotations

import copy
from typing import Optional

from domain.analysis import AnalysisPhase, Argument
from domain.experiment import (
    Experiment,
    ExperimentAnalysisSpec,
    ExperimentSpec,
    ExperimentTemplateSpec,
)
from domain.meta import POD_TEMPLATE_HASH_LABEL, ROLLOUT_NAME_LABEL, ObjectMeta
from domain.rollout import ExperimentStep

from .analysis import GateOutcome, child_name, resolve_arguments
from .context import ReconcileContext
from .mutations import CreateExperiment

__all__ = ["build_experiment", "ensure_experiment", "experiment_gate"]


def build_experiment(ctx: ReconcileContext, step: ExperimentStep, name: str) -> Experiment:
    templates = []
    for template in step.templates:
        if template.spec_ref == "stable" and ctx.stable_rs is not None:
            pod_template = copy.deepcopy(ctx.stable_rs.spec.template)
        else:
            pod_template = copy.deepcopy(ctx.spec.template)
        templates.append(
            ExperimentTemplateSpec(
                name=template.name,
                replicas=template.replicas if template.replicas is not None else 1,
                selector=copy.deepcopy(ctx.spec.selector),
                template=pod_template,
            )
        )
    analyses = [
        ExperimentAnalysisSpec(
            name=analysis.name,
            template_name=analysis.template_name,
            args=[
                Argument(name=key, value=value)
                for key, value in resolve_arguments(ctx, analysis.args).items()
            ],
        )
        for analysis in step.analyses
    ]
    return Experiment(
        metadata=ObjectMeta(
            name=name,
            namespace=ctx.rollout.namespace,
            labels={ROLLOUT_NAME_LABEL: ctx.rollout.name, POD_TEMPLATE_HASH_LABEL: ctx.pod_hash},
            owner_references=[ctx.rollout.owner_reference()],
        ),
        spec=ExperimentSpec(templates=templates, duration=step.duration, analyses=analyses),
    )


def ensure_experiment(ctx: ReconcileContext, step: ExperimentStep, index: int) -> tuple[str, Optional[Experiment]]:
    name = child_name(ctx, str(index))
    experiment = ctx.snapshot.experiments.get(name)
    if experiment is None:
        ctx.emit(CreateExperiment(experiment=build_experiment(ctx, step, name)))
    return name, experiment


def experiment_gate(experiment: Optional[Experiment]) -> GateOutcome:
    if experiment is None:
        return GateOutcome.WAITING
    phase = experiment.phase
    if phase == AnalysisPhase.SUCCESSFUL:
        return GateOutcome.PASSED
    if phase in (AnalysisPhase.FAILED, AnalysisPhase.ERROR):
        return GateOutcome.FAILED
    if phase == AnalysisPhase.INCONCLUSIVE:
        return GateOutcome.INCONCLUSIVE
    return GateOutcome.WAITING
