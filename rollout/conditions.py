# SPDX-License-Identifier: MIT
"""Rollout status conditions, replica counters, progress tracking and phase."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from domain.meta import Condition, ConditionStatus
from domain.rollout import RolloutPhase, RolloutStatus

from .context import ReconcileContext

__all__ = [
    "AVAILABLE",
    "INVALID_SPEC",
    "PROGRESSING",
    "RECONCILE_ERROR",
    "check_progress",
    "finalize_status",
    "mark_aborted",
    "remove_condition",
    "set_condition",
]

PROGRESSING = "Progressing"
AVAILABLE = "Available"
INVALID_SPEC = "InvalidSpec"
RECONCILE_ERROR = "ReconcileError"

REASON_PROGRESSING = "ReplicaSetUpdated"
REASON_COMPLETED = "NewReplicaSetAvailable"
REASON_DEADLINE = "ProgressDeadlineExceeded"
REASON_ABORTED = "RolloutAborted"
REASON_PAUSED = "RolloutPaused"
REASON_AVAILABLE = "AvailableReason"
REASON_SERVICE_NOT_FOUND = "ServiceNotFound"


def set_condition(
    status: RolloutStatus,
    condition_type: str,
    condition_status: ConditionStatus,
    reason: str,
    message: str,
    now: datetime,
    *,
    touch: bool = False,
) -> bool:
    """Upsert a condition; returns ``True`` if anything changed.

    ``last_transition_time`` moves only when the status flips. ``touch``
    refreshes ``last_update_time`` even when nothing else changed.
    """

    existing = status.condition(condition_type)
    if (
        existing is not None
        and existing.status == condition_status
        and existing.reason == reason
        and existing.message == message
        and not touch
    ):
        return False
    if existing is None or existing.status != condition_status:
        transition = now
    else:
        transition = existing.last_transition_time or now
    updated = Condition(
        type=condition_type,
        status=condition_status,
        reason=reason,
        message=message,
        last_transition_time=transition,
        last_update_time=now,
    )
    status.conditions = [c for c in status.conditions if c.type != condition_type] + [updated]
    return True


def remove_condition(status: RolloutStatus, condition_type: str) -> bool:
    before = len(status.conditions)
    status.conditions = [c for c in status.conditions if c.type != condition_type]
    return len(status.conditions) != before


def _update_counters(ctx: ReconcileContext) -> bool:
    status = ctx.status
    previous = (status.updated_replicas, status.available_replicas)
    status.replicas = sum(rs.status.replicas for rs in ctx.replica_sets)
    status.ready_replicas = sum(rs.status.ready_replicas for rs in ctx.replica_sets)
    status.available_replicas = sum(rs.available_replicas for rs in ctx.replica_sets)
    status.updated_replicas = ctx.new_rs.status.replicas if ctx.new_rs is not None else 0
    return status.updated_replicas > previous[0] or status.available_replicas > previous[1]


def _is_healthy(ctx: ReconcileContext) -> bool:
    return (
        ctx.is_new_stable
        and ctx.new_rs is not None
        and ctx.new_rs.is_available(ctx.replicas)
        and ctx.planned_replicas(ctx.new_rs) == ctx.replicas
    )


def _is_paused(ctx: ReconcileContext) -> bool:
    return ctx.spec.paused or bool(ctx.status.pause_conditions)


def check_progress(ctx: ReconcileContext) -> bool:
    """Maintain the Progressing condition; ``True`` when the deadline is exceeded."""

    status = ctx.status
    counters_moved = _update_counters(ctx)
    now = ctx.now
    if status.abort:
        aborted = status.condition(PROGRESSING)
        message = aborted.message if aborted is not None and aborted.reason == REASON_ABORTED else "rollout aborted"
        set_condition(status, PROGRESSING, ConditionStatus.FALSE, REASON_ABORTED, message, now)
        return False
    if _is_healthy(ctx):
        set_condition(status, PROGRESSING, ConditionStatus.TRUE, REASON_COMPLETED, "rollout completed", now)
        return False
    if _is_paused(ctx):
        set_condition(status, PROGRESSING, ConditionStatus.UNKNOWN, REASON_PAUSED, "rollout is paused", now)
        return False

    current = status.condition(PROGRESSING)
    restarted = current is None or current.reason in (REASON_ABORTED, REASON_PAUSED, REASON_COMPLETED)
    if ctx.progressed or counters_moved or restarted:
        set_condition(
            status,
            PROGRESSING,
            ConditionStatus.TRUE,
            REASON_PROGRESSING,
            f"rollout is progressing to revision {ctx.pod_hash}",
            now,
            touch=True,
        )
        current = status.condition(PROGRESSING)
    if not ctx.waiting_for_replicas or current is None:
        return False
    if current.reason == REASON_DEADLINE:
        return True
    last_update = current.last_update_time or now
    deadline = last_update + timedelta(seconds=ctx.spec.progress_deadline_seconds)
    if now >= deadline:
        set_condition(
            status,
            PROGRESSING,
            ConditionStatus.FALSE,
            REASON_DEADLINE,
            f"rollout revision {ctx.pod_hash} made no progress for {ctx.spec.progress_deadline_seconds}s",
            now,
        )
        return True
    ctx.requeue_at(deadline)
    return False


def _pause_message(ctx: ReconcileContext) -> str:
    if ctx.spec.paused:
        return "manually paused"
    return ", ".join(pause.reason.value for pause in ctx.status.pause_conditions)


def finalize_status(ctx: ReconcileContext, *, deadline_exceeded: bool) -> None:
    """Record observed generation, availability and the resulting phase."""

    status = ctx.status
    status.observed_generation = ctx.rollout.metadata.generation
    stable = ctx.stable_rs
    if stable is not None and stable.is_available(ctx.replicas):
        set_condition(status, AVAILABLE, ConditionStatus.TRUE, REASON_AVAILABLE, "rollout has minimum availability", ctx.now)
    else:
        set_condition(status, AVAILABLE, ConditionStatus.FALSE, REASON_AVAILABLE, "rollout does not have minimum availability", ctx.now)

    phase: RolloutPhase
    message: Optional[str] = status.message
    if status.abort:
        phase = RolloutPhase.DEGRADED
        progressing = status.condition(PROGRESSING)
        message = progressing.message if progressing is not None else "rollout aborted"
    elif deadline_exceeded:
        phase = RolloutPhase.DEGRADED
        progressing = status.condition(PROGRESSING)
        message = progressing.message if progressing is not None else REASON_DEADLINE
    elif _is_paused(ctx):
        phase = RolloutPhase.PAUSED
        message = _pause_message(ctx)
    elif _is_healthy(ctx):
        phase = RolloutPhase.HEALTHY
        message = None
    else:
        phase = RolloutPhase.PROGRESSING
    status.phase = phase
    status.message = message


def mark_aborted(status: RolloutStatus, message: str, now: datetime) -> bool:
    """Flag the rollout as aborted; returns ``False`` if it already was."""

    if status.abort:
        return False
    status.abort = True
    status.aborted_at = now
    status.abort_count += 1
    set_condition(status, PROGRESSING, ConditionStatus.FALSE, REASON_ABORTED, message, now)
    return True
