# SPDX-License-Identifier: MIT
"""User actions on a Rollout, expressed as edits of the object.

Each action returns an updated copy; the caller persists it (status edits go
through the status subresource, ``pause``/``resume`` also edit the spec). The
reconciler picks the change up on its next pass.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from domain.meta import utcnow
from domain.rollout import Rollout

from .conditions import mark_aborted

__all__ = ["abort", "pause", "promote", "resume", "retry"]

USER_ABORT_MESSAGE = "rollout aborted by user"


def promote(rollout: Rollout, *, full: bool = False) -> Rollout:
    """Release the current pause, or skip the current step when not paused.

    ``full`` skips every remaining step and analysis and promotes at once.
    """

    updated = rollout.model_copy(deep=True)
    status = updated.status
    if full:
        status.promote_full = True
        status.pause_conditions = []
        return updated
    if status.pause_conditions:
        # controllerPause stays set; the reconciler reads that as a resume.
        status.pause_conditions = []
        return updated
    canary = updated.canary
    if canary is not None:
        index = status.current_step_index or 0
        if index < len(canary.steps):
            status.current_step_index = index + 1
            status.canary.current_step_analysis_run = None
            status.canary.current_experiment = None
        return updated
    status.promote_full = True
    return updated


def abort(rollout: Rollout, *, message: str = USER_ABORT_MESSAGE, now: Optional[datetime] = None) -> Rollout:
    updated = rollout.model_copy(deep=True)
    mark_aborted(updated.status, message, now or utcnow())
    return updated


def retry(rollout: Rollout) -> Rollout:
    """Clear an abort so the current revision starts again from the first step.

    ``abortCount`` is kept, which gives the retried analysis runs new names.
    """

    updated = rollout.model_copy(deep=True)
    status = updated.status
    if not status.abort:
        return updated
    status.abort = False
    status.aborted_at = None
    status.current_step_index = 0
    status.pause_conditions = []
    status.controller_pause = False
    status.blue_green.promotion_approved = False
    return updated


def pause(rollout: Rollout) -> Rollout:
    updated = rollout.model_copy(deep=True)
    updated.spec.paused = True
    return updated


def resume(rollout: Rollout) -> Rollout:
    updated = rollout.model_copy(deep=True)
    updated.spec.paused = False
    updated.status.pause_conditions = []
    return updated
