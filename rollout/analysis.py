# SPDX-License-Identifier: MIT
"""Analysis gates: create AnalysisRuns for a rollout and read their verdicts."""

from __future__ import annotations

from enum import Enum
from typing import Dict, Iterable, Optional

from analysis.templates import build_run_spec
from core.errors import SpecValidationError
from domain.analysis import AnalysisPhase, AnalysisRun
from domain.meta import ANALYSIS_TYPE_LABEL, POD_TEMPLATE_HASH_LABEL, ROLLOUT_NAME_LABEL, ObjectMeta
from domain.rollout import AnalysisRunArgument, RolloutAnalysis

from .context import ReconcileContext
from .mutations import CreateAnalysisRun

__all__ = [
    "GateOutcome",
    "analysis_gate",
    "child_name",
    "ensure_analysis_run",
    "resolve_arguments",
]

STEP = "step"
BACKGROUND = "background"
PRE_PROMOTION = "pre-promotion"
POST_PROMOTION = "post-promotion"


class GateOutcome(str, Enum):
    PASSED = "Passed"
    WAITING = "Waiting"
    FAILED = "Failed"
    INCONCLUSIVE = "Inconclusive"


def child_name(ctx: ReconcileContext, slot: str) -> str:
    """Deterministic name for a run or experiment owned by this revision.

    The abort counter is part of the name so a retry after abort starts fresh
    runs instead of reusing the failed ones.
    """

    name = f"{ctx.rollout.name}-{ctx.pod_hash}-{ctx.revision}-{slot}"
    if ctx.status.abort_count:
        name = f"{name}-a{ctx.status.abort_count}"
    return name


def resolve_arguments(ctx: ReconcileContext, args: Iterable[AnalysisRunArgument]) -> Dict[str, Optional[str]]:
    resolved: Dict[str, Optional[str]] = {}
    for argument in args:
        if argument.value_from is not None:
            if argument.value_from.pod_template_hash_value == "Stable":
                stable = ctx.stable_rs
                resolved[argument.name] = stable.pod_hash if stable is not None else ctx.pod_hash
            else:
                resolved[argument.name] = ctx.pod_hash
        else:
            resolved[argument.name] = argument.value
    return resolved


def _build_run(ctx: ReconcileContext, analysis: RolloutAnalysis, name: str, analysis_type: str) -> AnalysisRun:
    templates = []
    missing = []
    for reference in analysis.templates:
        template = ctx.snapshot.analysis_templates.get(reference.template_name)
        if template is None:
            missing.append(f"analysis template '{reference.template_name}' not found")
        else:
            templates.append(template)
    if missing:
        raise SpecValidationError(missing)
    spec = build_run_spec(templates, resolve_arguments(ctx, analysis.args))
    return AnalysisRun(
        metadata=ObjectMeta(
            name=name,
            namespace=ctx.rollout.namespace,
            labels={
                ROLLOUT_NAME_LABEL: ctx.rollout.name,
                POD_TEMPLATE_HASH_LABEL: ctx.pod_hash,
                ANALYSIS_TYPE_LABEL: analysis_type,
            },
            owner_references=[ctx.rollout.owner_reference()],
        ),
        spec=spec,
    )


def ensure_analysis_run(
    ctx: ReconcileContext,
    analysis: RolloutAnalysis,
    slot: str,
    analysis_type: str,
) -> tuple[str, Optional[AnalysisRun]]:
    """Return the run for ``slot``, requesting its creation when absent."""

    name = child_name(ctx, slot)
    run = ctx.snapshot.analysis_runs.get(name)
    if run is None:
        ctx.emit(CreateAnalysisRun(run=_build_run(ctx, analysis, name, analysis_type)))
    return name, run


def analysis_gate(run: Optional[AnalysisRun]) -> GateOutcome:
    # A terminated run keeps whatever phase it had; it never passes or fails a gate.
    if run is None or run.terminated:
        return GateOutcome.WAITING
    phase = run.phase
    if phase == AnalysisPhase.SUCCESSFUL:
        return GateOutcome.PASSED
    if phase in (AnalysisPhase.FAILED, AnalysisPhase.ERROR):
        return GateOutcome.FAILED
    if phase == AnalysisPhase.INCONCLUSIVE:
        return GateOutcome.INCONCLUSIVE
    return GateOutcome.WAITING
