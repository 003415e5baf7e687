# SPDX-License-Identifier: MIT
"""Blue-green strategy: bring up a preview, gate it, then switch the active service."""

from __future__ import annotations

from datetime import timedelta
from typing import Optional

from core.utils.logging import get_logger
from domain.meta import PROMOTED_AT_ANNOTATION
from domain.rollout import BlueGreenStrategy, PauseReason, RolloutAnalysis

from .analysis import POST_PROMOTION, PRE_PROMOTION, GateOutcome, analysis_gate, ensure_analysis_run
from .conditions import mark_aborted
from .context import ReconcileContext, require
from .pauses import clear_pauses, pause_gate
from .replicasets import format_timestamp, scale_down_annotation

__all__ = ["abort_blue_green", "reconcile_blue_green"]

logger = get_logger(__name__)


def _strategy(ctx: ReconcileContext) -> BlueGreenStrategy:
    return require(ctx.rollout.blue_green, "blueGreen strategy")


def _point_services(ctx: ReconcileContext, active_hash: str, preview_hash: str) -> None:
    strategy = _strategy(ctx)
    ctx.switch_service(strategy.active_service, active_hash)
    ctx.status.blue_green.active_selector = active_hash
    if strategy.preview_service:
        ctx.switch_service(strategy.preview_service, preview_hash)
        ctx.status.blue_green.preview_selector = preview_hash


def _mark_promoted(ctx: ReconcileContext) -> None:
    new_rs = require(ctx.new_rs, "new replica set")
    if PROMOTED_AT_ANNOTATION not in new_rs.metadata.annotations:
        ctx.scale(new_rs, ctx.planned_replicas(new_rs), {PROMOTED_AT_ANNOTATION: format_timestamp(ctx.now)})


def _terminate_children(ctx: ReconcileContext) -> None:
    blue_green = ctx.status.blue_green
    ctx.terminate_run(blue_green.pre_promotion_analysis_run)
    ctx.terminate_run(blue_green.post_promotion_analysis_run)


def abort_blue_green(ctx: ReconcileContext) -> None:
    """Point the active service back at stable and scale the preview to zero."""

    stable, new_rs = ctx.stable_rs, ctx.new_rs
    strategy = _strategy(ctx)
    if stable is not None:
        ctx.scale(stable, ctx.replicas)
        ctx.switch_service(strategy.active_service, stable.pod_hash)
        ctx.status.blue_green.active_selector = stable.pod_hash
    if new_rs is not None and not ctx.is_new_stable:
        ctx.scale(new_rs, 0)
    _terminate_children(ctx)
    ctx.status.blue_green.promotion_approved = False
    clear_pauses(ctx)


def _abort(ctx: ReconcileContext, message: str) -> None:
    if mark_aborted(ctx.status, message, ctx.now):
        logger.warning("Aborting rollout", rollout=ctx.rollout.key, reason=message)
    abort_blue_green(ctx)


def _analysis_gate(ctx: ReconcileContext, analysis: RolloutAnalysis, slot: str, analysis_type: str) -> GateOutcome:
    name, run = ensure_analysis_run(ctx, analysis, slot, analysis_type)
    if analysis_type == PRE_PROMOTION:
        ctx.status.blue_green.pre_promotion_analysis_run = name
    else:
        ctx.status.blue_green.post_promotion_analysis_run = name
    outcome = analysis_gate(run)
    if outcome == GateOutcome.FAILED and run is not None:
        _abort(ctx, f"{analysis_type} analysis run {name} completed with phase {run.phase.value}")
    return outcome


def _finish(ctx: ReconcileContext) -> None:
    """Reassign stable to the new replica set and schedule the old one's scale-down."""

    strategy = _strategy(ctx)
    status = ctx.status
    new_rs, old = require(ctx.new_rs, "new replica set"), ctx.stable_rs
    status.stable_rs = new_rs.name
    ctx.stable_rs = new_rs
    _mark_promoted(ctx)
    _point_services(ctx, ctx.pod_hash, ctx.pod_hash)
    if old is not None and old.name != new_rs.name:
        if strategy.scale_down_delay_seconds > 0:
            ctx.scale(old, ctx.planned_replicas(old), scale_down_annotation(ctx, strategy.scale_down_delay_seconds))
        else:
            ctx.scale(old, 0)
    status.blue_green.promotion_approved = False
    status.promote_full = False
    clear_pauses(ctx)
    ctx.requeue(0)
    logger.info("Promoted preview to active", rollout=ctx.rollout.key, replica_set=new_rs.name)


def _switch_active(ctx: ReconcileContext) -> bool:
    """Scale the new replica set up fully, then point the active service at it."""

    new_rs = require(ctx.new_rs, "new replica set")
    ctx.scale(new_rs, ctx.replicas)
    if not new_rs.is_available(ctx.replicas):
        ctx.wait_for_replicas()
        return False
    _point_services(ctx, ctx.pod_hash, ctx.pod_hash)
    return True


def _approve(ctx: ReconcileContext) -> bool:
    """Pre-promotion analysis and the promotion pause; ``True`` once promotion may go ahead."""

    strategy = _strategy(ctx)
    status = ctx.status
    if status.blue_green.promotion_approved:
        return True
    pre_promotion = strategy.pre_promotion_analysis
    if pre_promotion is not None and pre_promotion.templates:
        outcome = _analysis_gate(ctx, pre_promotion, "pre", PRE_PROMOTION)
        if outcome == GateOutcome.INCONCLUSIVE:
            if not pause_gate(ctx, PauseReason.INCONCLUSIVE_ANALYSIS):
                return False
            status.blue_green.promotion_approved = True
            return True
        if outcome != GateOutcome.PASSED:
            return False
    if not strategy.auto_promotion_enabled or strategy.auto_promotion_seconds is not None:
        duration: Optional[timedelta] = None
        if strategy.auto_promotion_enabled and strategy.auto_promotion_seconds is not None:
            duration = timedelta(seconds=strategy.auto_promotion_seconds)
        if not pause_gate(ctx, PauseReason.BLUE_GREEN_PAUSE, duration):
            return False
    status.blue_green.promotion_approved = True
    return True


def reconcile_blue_green(ctx: ReconcileContext) -> None:
    strategy = _strategy(ctx)
    status = ctx.status
    new_rs, stable = require(ctx.new_rs, "new replica set"), ctx.stable_rs
    if status.abort:
        abort_blue_green(ctx)
        return

    if stable is None or ctx.is_new_stable:
        ctx.scale(new_rs, ctx.replicas)
        if stable is None:
            if strategy.preview_service:
                ctx.switch_service(strategy.preview_service, ctx.pod_hash)
            if not new_rs.is_available(ctx.replicas):
                ctx.wait_for_replicas()
                return
            _finish(ctx)
            return
        _mark_promoted(ctx)
        _point_services(ctx, ctx.pod_hash, ctx.pod_hash)
        _terminate_children(ctx)
        if status.promote_full or status.blue_green.promotion_approved:
            status.promote_full = False
            status.blue_green.promotion_approved = False
        return

    if status.promote_full:
        if _switch_active(ctx):
            _finish(ctx)
        return

    active_hash = ctx.service_hash(strategy.active_service)
    if active_hash != ctx.pod_hash:
        preview = strategy.preview_replica_count
        preview = ctx.replicas if preview is None else min(preview, ctx.replicas)
        if not status.blue_green.promotion_approved:
            ctx.scale(new_rs, preview)
        ctx.scale(stable, ctx.replicas)
        _point_services(ctx, stable.pod_hash, ctx.pod_hash)
        if ctx.spec.paused:
            return
        if not new_rs.is_available(preview):
            ctx.wait_for_replicas()
            status.message = "waiting for preview replicas"
            return
        if not _approve(ctx):
            if not status.abort:
                status.message = "waiting for promotion"
            return
        if _switch_active(ctx):
            ctx.requeue(0)
        return

    # Active already serves the new revision; stable is reassigned after
    # post-promotion analysis.
    ctx.scale(new_rs, ctx.replicas)
    ctx.scale(stable, ctx.replicas)
    if ctx.spec.paused:
        return
    post_promotion = strategy.post_promotion_analysis
    if post_promotion is not None and post_promotion.templates:
        outcome = _analysis_gate(ctx, post_promotion, "post", POST_PROMOTION)
        if outcome != GateOutcome.PASSED:
            if not status.abort:
                status.message = "waiting for post-promotion analysis"
            return
    _finish(ctx)
