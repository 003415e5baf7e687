# SPDX-License-Identifier: MIT
"""Single-pass Rollout reconciliation.

:func:`reconcile` is a pure function of a :class:`RolloutSnapshot`: it reads
no clock and touches no cluster. The controller applies the returned
mutations, writes the returned status and schedules the next pass.
"""

from __future__ import annotations

from typing import List, Optional

from core.errors import SpecValidationError
from core.utils.fingerprint import steps_hash
from core.utils.logging import get_logger
from domain.meta import ConditionStatus
from domain.rollout import RolloutPhase

from .bluegreen import abort_blue_green, reconcile_blue_green
from .canary import abort_canary, reconcile_canary
from .conditions import (
    INVALID_SPEC,
    PROGRESSING,
    REASON_SERVICE_NOT_FOUND,
    check_progress,
    finalize_status,
    mark_aborted,
    remove_condition,
    set_condition,
)
from .context import ReconcileContext, ReconcilerOptions
from .mutations import RemoveManagedRoutes, SetTrafficWeight
from .replicasets import cleanup_replica_sets, resolve_replica_sets
from .snapshot import ReconcileResult, RolloutSnapshot
from .validation import missing_services, validate_rollout

__all__ = ["reconcile"]

logger = get_logger(__name__)

REASON_INVALID = "InvalidSpec"


def _current_steps_hash(ctx: ReconcileContext) -> Optional[str]:
    canary = ctx.rollout.canary
    if canary is None:
        return None
    return steps_hash([step.to_dict() for step in canary.steps])


def _invalid(ctx: ReconcileContext, errors: List[str]) -> ReconcileResult:
    message = "; ".join(errors)
    set_condition(ctx.status, INVALID_SPEC, ConditionStatus.TRUE, REASON_INVALID, message, ctx.now)
    ctx.status.observed_generation = ctx.rollout.metadata.generation
    ctx.status.phase = RolloutPhase.DEGRADED
    ctx.status.message = f"invalid spec: {message}"
    logger.warning("Rollout spec is invalid", rollout=ctx.rollout.key, errors=errors)
    return ReconcileResult(mutations=[], status=ctx.status, requeue_after=None)


def _blocked(ctx: ReconcileContext, missing: List[str]) -> ReconcileResult:
    message = f"services not found: {', '.join(missing)}"
    set_condition(ctx.status, INVALID_SPEC, ConditionStatus.TRUE, REASON_SERVICE_NOT_FOUND, message, ctx.now)
    ctx.status.observed_generation = ctx.rollout.metadata.generation
    ctx.status.phase = RolloutPhase.DEGRADED
    ctx.status.message = message
    return ReconcileResult(
        mutations=[],
        status=ctx.status,
        requeue_after=ctx.options.missing_dependency_requeue,
    )


def _terminate_children(ctx: ReconcileContext) -> None:
    status = ctx.status
    ctx.terminate_run(status.canary.current_step_analysis_run)
    ctx.terminate_run(status.canary.current_background_analysis_run)
    ctx.terminate_experiment(status.canary.current_experiment)
    ctx.terminate_run(status.blue_green.pre_promotion_analysis_run)
    ctx.terminate_run(status.blue_green.post_promotion_analysis_run)
    status.canary.current_step_analysis_run = None
    status.canary.current_background_analysis_run = None
    status.canary.current_experiment = None
    status.blue_green.pre_promotion_analysis_run = None
    status.blue_green.post_promotion_analysis_run = None


def _on_new_revision(ctx: ReconcileContext, rollback: bool) -> None:
    """Restart progress when the pod template or the step list changed."""

    status = ctx.status
    current_steps = _current_steps_hash(ctx)
    if status.current_pod_hash != ctx.pod_hash:
        if status.current_pod_hash is not None:
            logger.info(
                "New revision detected",
                rollout=ctx.rollout.key,
                previous=status.current_pod_hash,
                revision=ctx.pod_hash,
                rollback=rollback,
            )
        _terminate_children(ctx)
        status.current_step_index = 0
        status.pause_conditions = []
        status.controller_pause = False
        status.abort = False
        status.aborted_at = None
        status.abort_count = 0
        status.promote_full = rollback
        status.blue_green.promotion_approved = False
        canary = ctx.rollout.canary
        if canary is not None and canary.traffic_routing is not None:
            if status.canary.weight != 0 or ctx.snapshot.traffic.weight not in (None, 0):
                ctx.emit(SetTrafficWeight(weight=0))
            if status.canary.managed_routes:
                ctx.emit(RemoveManagedRoutes())
        status.canary.weight = 0
        status.canary.managed_routes = []
        status.current_pod_hash = ctx.pod_hash
        status.current_step_hash = current_steps
        return
    if current_steps != status.current_step_hash:
        if status.current_step_hash is not None and not ctx.is_new_stable:
            ctx.terminate_run(status.canary.current_step_analysis_run)
            ctx.terminate_experiment(status.canary.current_experiment)
            status.canary.current_step_analysis_run = None
            status.canary.current_experiment = None
            status.current_step_index = 0
            status.pause_conditions = []
            status.controller_pause = False
        status.current_step_hash = current_steps


def _run_strategy(ctx: ReconcileContext) -> None:
    if ctx.rollout.canary is not None:
        reconcile_canary(ctx)
    else:
        reconcile_blue_green(ctx)


def _abort_strategy(ctx: ReconcileContext) -> None:
    if ctx.rollout.canary is not None:
        abort_canary(ctx)
    else:
        abort_blue_green(ctx)


def reconcile(snapshot: RolloutSnapshot, options: ReconcilerOptions | None = None) -> ReconcileResult:
    """Compute the next step of a rollout from an observed snapshot."""

    options = options or ReconcilerOptions()
    ctx = ReconcileContext(snapshot, options)
    errors = validate_rollout(ctx.rollout, snapshot.analysis_templates)
    if errors:
        return _invalid(ctx, errors)
    missing = missing_services(ctx.rollout, snapshot.services)
    if missing:
        return _blocked(ctx, missing)

    try:
        remove_condition(ctx.status, INVALID_SPEC)
        if not ctx.status.abort:
            ctx.status.message = None
        rollback = resolve_replica_sets(ctx)
        _on_new_revision(ctx, rollback)
        _run_strategy(ctx)
        cleanup_replica_sets(ctx)
        deadline_exceeded = check_progress(ctx)
        if deadline_exceeded and ctx.spec.progress_deadline_abort and not ctx.status.abort:
            progressing = ctx.status.condition(PROGRESSING)
            message = progressing.message if progressing is not None else "progress deadline exceeded"
            mark_aborted(ctx.status, message or "progress deadline exceeded", ctx.now)
            logger.warning("Aborting rollout after progress deadline", rollout=ctx.rollout.key)
            _abort_strategy(ctx)
        finalize_status(ctx, deadline_exceeded=deadline_exceeded)
    except SpecValidationError as exc:
        return _invalid(ReconcileContext(snapshot, options), list(exc.errors) or [str(exc)])
    return ctx.result()
