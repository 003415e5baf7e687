# SPDX-License-Identifier: MIT
"""Controller-driven pauses.

A pause is recorded as a :class:`PauseCondition` plus ``controllerPause``.
Users resume by clearing ``pauseConditions``; seeing ``controllerPause`` still
set without any condition is how the controller recognises the resume.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Optional

from domain.rollout import PauseCondition, PauseReason

from .context import ReconcileContext

__all__ = ["clear_pauses", "pause_gate"]


def pause_gate(ctx: ReconcileContext, reason: PauseReason, duration: Optional[timedelta] = None) -> bool:
    """Return ``True`` once the pause for ``reason`` is over."""

    status = ctx.status
    if duration is not None and duration <= timedelta(0):
        return True
    condition = status.pause_condition(reason)
    if condition is None:
        if status.controller_pause and not status.pause_conditions:
            status.controller_pause = False
            return True
        status.pause_conditions.append(PauseCondition(reason=reason, start_time=ctx.now))
        status.controller_pause = True
        if duration is not None:
            ctx.requeue(duration.total_seconds())
        return False
    if duration is None:
        return False
    expires = condition.start_time + duration
    if ctx.now >= expires:
        status.pause_conditions = [p for p in status.pause_conditions if p.reason != reason]
        status.controller_pause = bool(status.pause_conditions)
        return True
    ctx.requeue_at(expires)
    return False


def clear_pauses(ctx: ReconcileContext) -> None:
    ctx.status.pause_conditions = []
    ctx.status.controller_pause = False
