# SPDX-License-Identifier: MIT
"""Canary strategy: walk the step list, then promote the canary to stable.

One pass executes at most one step. Replica counts for both replica sets are
derived from the step list up to the current index, so a restarted controller
re-derives the same scale from status alone.
"""

from __future__ import annotations

from typing import List

from core.utils.logging import get_logger
from domain.meta import PROMOTED_AT_ANNOTATION
from domain.rollout import CanaryStep, CanaryStrategy, PauseReason, StepKind

from .analysis import BACKGROUND, STEP, GateOutcome, analysis_gate, ensure_analysis_run
from .conditions import mark_aborted
from .context import ReconcileContext, require
from .experiments import ensure_experiment, experiment_gate
from .mutations import (
    ApplyHeaderRoute,
    ApplyMirrorRoute,
    RemoveManagedRoutes,
    SetTrafficWeight,
)
from .pauses import clear_pauses, pause_gate
from .replicasets import format_timestamp, replicas_for_weight, scale_down_annotation

__all__ = [
    "abort_canary",
    "canary_replicas",
    "reconcile_canary",
    "step_weight",
]

logger = get_logger(__name__)


def _strategy(ctx: ReconcileContext) -> CanaryStrategy:
    return require(ctx.rollout.canary, "canary strategy")


def _routed(ctx: ReconcileContext) -> bool:
    return _strategy(ctx).traffic_routing is not None


def step_weight(steps: List[CanaryStep], index: int) -> int:
    """Traffic weight the canary should carry while executing ``steps[index]``."""

    if index >= len(steps):
        return 100
    weight = 0
    for step in steps[: index + 1]:
        if step.set_weight is not None:
            weight = step.set_weight
    return weight


def canary_replicas(steps: List[CanaryStep], index: int, total: int) -> int:
    """Canary replica count for ``steps[index]``; ``setCanaryScale`` overrides the weight."""

    if index >= len(steps):
        return total
    weight = 0
    override = None
    for step in steps[: index + 1]:
        if step.set_weight is not None:
            weight = step.set_weight
        scale = step.set_canary_scale
        if scale is not None:
            if scale.match_traffic_weight:
                override = None
            elif scale.replicas is not None:
                override = min(scale.replicas, total)
            elif scale.weight is not None:
                override = replicas_for_weight(total, scale.weight)
    if override is not None:
        return override
    return replicas_for_weight(total, weight)


def _mark_promoted(ctx: ReconcileContext) -> None:
    new_rs = require(ctx.new_rs, "new replica set")
    if PROMOTED_AT_ANNOTATION not in new_rs.metadata.annotations:
        ctx.scale(new_rs, ctx.planned_replicas(new_rs), {PROMOTED_AT_ANNOTATION: format_timestamp(ctx.now)})


def _shift_weight(ctx: ReconcileContext, target: int) -> bool:
    """Drive the router to ``target``; ``True`` once the weight is in effect."""

    status = ctx.status
    observation = ctx.snapshot.traffic
    if not observation.available:
        ctx.requeue(ctx.options.weight_verify_interval)
        return False
    observed = observation.weight
    if observed is None:
        # Router cannot report its state: the recorded weight is the only guard.
        if status.canary.weight != target:
            ctx.emit(SetTrafficWeight(weight=target))
            status.canary.weight = target
        return True
    if observed != target:
        ctx.emit(SetTrafficWeight(weight=target))
        status.canary.weight = target
        ctx.requeue(ctx.options.weight_verify_interval)
        return False
    status.canary.weight = target
    return True


def _hold_weight(ctx: ReconcileContext) -> None:
    """Re-apply the recorded weight if the data plane drifted away from it."""

    observation = ctx.snapshot.traffic
    if not observation.available or observation.weight is None:
        return
    if observation.weight != ctx.status.canary.weight:
        ctx.emit(SetTrafficWeight(weight=ctx.status.canary.weight))


def _reset_traffic(ctx: ReconcileContext) -> None:
    status = ctx.status
    if not _routed(ctx):
        status.canary.weight = 0
        return
    observed = ctx.snapshot.traffic.weight
    if status.canary.weight != 0 or observed not in (None, 0):
        ctx.emit(SetTrafficWeight(weight=0))
        status.canary.weight = 0
    if status.canary.managed_routes:
        ctx.emit(RemoveManagedRoutes())
        status.canary.managed_routes = []


def _apply_scale(ctx: ReconcileContext, index: int) -> int:
    strategy = _strategy(ctx)
    new_rs = require(ctx.new_rs, "new replica set")
    stable = require(ctx.stable_rs, "stable replica set")
    total = ctx.replicas
    wanted = canary_replicas(strategy.steps, index, total)
    ctx.scale(new_rs, wanted)
    if _routed(ctx):
        ctx.scale(stable, total)
    else:
        # Without a router the replica ratio is the traffic split; only give up
        # stable capacity the canary already serves.
        ctx.scale(stable, max(total - min(wanted, new_rs.available_replicas), 0))
    ctx.switch_service(strategy.stable_service, stable.pod_hash)
    ctx.switch_service(strategy.canary_service, ctx.pod_hash)
    return wanted


def _terminate_children(ctx: ReconcileContext) -> None:
    canary = ctx.status.canary
    ctx.terminate_run(canary.current_step_analysis_run)
    ctx.terminate_run(canary.current_background_analysis_run)
    ctx.terminate_experiment(canary.current_experiment)
    canary.current_step_analysis_run = None
    canary.current_background_analysis_run = None
    canary.current_experiment = None


def abort_canary(ctx: ReconcileContext) -> None:
    """Return all traffic and capacity to stable; keep the canary set for a retry."""

    strategy = _strategy(ctx)
    _reset_traffic(ctx)
    new_rs, stable = ctx.new_rs, ctx.stable_rs
    if new_rs is not None and not ctx.is_new_stable:
        ctx.scale(new_rs, 0)
    if stable is not None:
        ctx.scale(stable, ctx.replicas)
        ctx.switch_service(strategy.stable_service, stable.pod_hash)
        ctx.switch_service(strategy.canary_service, stable.pod_hash)
    _terminate_children(ctx)
    ctx.status.current_step_index = 0
    clear_pauses(ctx)


def _abort(ctx: ReconcileContext, message: str) -> None:
    if mark_aborted(ctx.status, message, ctx.now):
        logger.warning("Aborting rollout", rollout=ctx.rollout.key, reason=message)
    abort_canary(ctx)


def _gate_step(ctx: ReconcileContext, outcome: GateOutcome, failure: str, reason: PauseReason) -> bool:
    if outcome == GateOutcome.PASSED:
        return True
    if outcome == GateOutcome.FAILED:
        _abort(ctx, failure)
        return False
    if outcome == GateOutcome.INCONCLUSIVE:
        return pause_gate(ctx, reason)
    return False


def _execute_step(ctx: ReconcileContext, step: CanaryStep, index: int, wanted: int) -> bool:
    """Run ``step``; ``True`` when it is satisfied and the index may advance."""

    status = ctx.status
    new_rs = require(ctx.new_rs, "new replica set")
    kind = step.kind
    if kind == StepKind.SET_WEIGHT:
        weight = require(step.set_weight, "setWeight")
        if not new_rs.is_available(wanted):
            ctx.wait_for_replicas()
            return False
        if not _routed(ctx):
            status.canary.weight = weight
            return True
        return _shift_weight(ctx, weight)
    if kind == StepKind.SET_CANARY_SCALE:
        if not new_rs.is_available(wanted):
            ctx.wait_for_replicas()
            return False
        return True
    if kind == StepKind.PAUSE:
        pause = require(step.pause, "pause")
        return pause_gate(ctx, PauseReason.CANARY_PAUSE_STEP, pause.duration)
    if kind == StepKind.ANALYSIS:
        name, run = ensure_analysis_run(ctx, require(step.analysis, "analysis"), str(index), STEP)
        status.canary.current_step_analysis_run = name
        phase = run.phase.value if run is not None else "Pending"
        return _gate_step(
            ctx,
            analysis_gate(run),
            f"analysis run {name} completed with phase {phase}",
            PauseReason.INCONCLUSIVE_ANALYSIS,
        )
    if kind == StepKind.EXPERIMENT:
        name, experiment = ensure_experiment(ctx, require(step.experiment, "experiment"), index)
        status.canary.current_experiment = name
        phase = experiment.phase.value if experiment is not None else "Pending"
        return _gate_step(
            ctx,
            experiment_gate(experiment),
            f"experiment {name} completed with phase {phase}",
            PauseReason.INCONCLUSIVE_EXPERIMENT,
        )
    if kind == StepKind.SET_HEADER_ROUTE:
        header_route = require(step.set_header_route, "setHeaderRoute")
        if header_route.name not in status.canary.managed_routes:
            ctx.emit(ApplyHeaderRoute(route=header_route))
            status.canary.managed_routes.append(header_route.name)
        return True
    if kind == StepKind.SET_MIRROR_ROUTE:
        mirror_route = require(step.set_mirror_route, "setMirrorRoute")
        if mirror_route.name not in status.canary.managed_routes:
            ctx.emit(ApplyMirrorRoute(route=mirror_route))
            status.canary.managed_routes.append(mirror_route.name)
        return True
    raise ValueError(f"unsupported step {kind}")


def _background_analysis(ctx: ReconcileContext, index: int) -> bool:
    """Keep background analysis running; ``False`` when it forced an abort."""

    analysis = _strategy(ctx).analysis
    if analysis is None or not analysis.templates:
        return True
    if index < (analysis.starting_step or 0):
        return True
    name, run = ensure_analysis_run(ctx, analysis, "background", BACKGROUND)
    ctx.status.canary.current_background_analysis_run = name
    if run is not None and analysis_gate(run) == GateOutcome.FAILED:
        _abort(ctx, f"background analysis run {name} completed with phase {run.phase.value}")
        return False
    return True


def _complete(ctx: ReconcileContext) -> None:
    status = ctx.status
    status.current_step_index = len(_strategy(ctx).steps)
    status.promote_full = False
    clear_pauses(ctx)


def _promote(ctx: ReconcileContext) -> None:
    """Make the canary stable once it is fully scaled and carries all traffic."""

    strategy = _strategy(ctx)
    status = ctx.status
    new_rs = require(ctx.new_rs, "new replica set")
    old = require(ctx.stable_rs, "stable replica set")
    total = ctx.replicas
    ctx.scale(new_rs, total)
    if _routed(ctx):
        ctx.scale(old, total)
    else:
        ctx.scale(old, max(total - new_rs.available_replicas, 0))
    ctx.switch_service(strategy.canary_service, ctx.pod_hash)
    if not new_rs.is_available(total):
        ctx.wait_for_replicas()
        return
    if _routed(ctx):
        if not _shift_weight(ctx, 100):
            return
    else:
        status.canary.weight = 100

    ctx.switch_service(strategy.stable_service, ctx.pod_hash)
    status.stable_rs = new_rs.name
    ctx.stable_rs = new_rs
    _mark_promoted(ctx)
    if _routed(ctx):
        _reset_traffic(ctx)
        ctx.scale(old, ctx.planned_replicas(old), scale_down_annotation(ctx, strategy.scale_down_delay_seconds))
    else:
        status.canary.weight = 0
        ctx.scale(old, 0)
    _terminate_children(ctx)
    _complete(ctx)
    ctx.requeue(0)
    logger.info("Promoted canary to stable", rollout=ctx.rollout.key, replica_set=new_rs.name)


def _settle(ctx: ReconcileContext) -> None:
    """Steady state, first deployment and direct promotion (rollback or promote-full)."""

    strategy = _strategy(ctx)
    status = ctx.status
    new_rs = require(ctx.new_rs, "new replica set")
    total = ctx.replicas

    if ctx.stable_rs is not None and not ctx.is_new_stable:
        _promote(ctx)
        return

    ctx.scale(new_rs, total)
    if ctx.stable_rs is None:
        if not new_rs.is_available(total):
            ctx.wait_for_replicas()
            return
        status.stable_rs = new_rs.name
        ctx.stable_rs = new_rs
        logger.info("Initial revision is stable", rollout=ctx.rollout.key, replica_set=new_rs.name)
    _mark_promoted(ctx)
    ctx.switch_service(strategy.stable_service, ctx.pod_hash)
    ctx.switch_service(strategy.canary_service, ctx.pod_hash)
    _reset_traffic(ctx)
    _terminate_children(ctx)
    if status.current_step_index != len(strategy.steps) or status.promote_full:
        status.current_step_index = len(strategy.steps)
        status.promote_full = False
        clear_pauses(ctx)


def reconcile_canary(ctx: ReconcileContext) -> None:
    strategy = _strategy(ctx)
    status = ctx.status
    if status.abort:
        abort_canary(ctx)
        return
    if ctx.stable_rs is None or ctx.is_new_stable or status.promote_full:
        _settle(ctx)
        return

    steps = strategy.steps
    index = min(status.current_step_index or 0, len(steps))
    status.current_step_index = index
    wanted = _apply_scale(ctx, index)
    if ctx.spec.paused:
        return
    if _routed(ctx) and index < len(steps) and steps[index].kind != StepKind.SET_WEIGHT:
        _hold_weight(ctx)
    if not _background_analysis(ctx, index):
        return
    if index >= len(steps):
        _promote(ctx)
        return

    satisfied = _execute_step(ctx, steps[index], index, wanted)
    if status.abort or not satisfied:
        if not status.abort:
            status.message = f"waiting at step {index + 1}/{len(steps)} ({steps[index].kind.value})"
        return
    status.current_step_index = index + 1
    status.canary.current_step_analysis_run = None
    status.canary.current_experiment = None
    clear_pauses(ctx)
    ctx.requeue(0)
    logger.info(
        "Completed canary step",
        rollout=ctx.rollout.key,
        step=index + 1,
        kind=steps[index].kind.value,
    )
