# SPDX-License-Identifier: MIT
"""Replica set bookkeeping: identify stable/new, create, scale down, prune."""

from __future__ import annotations

import copy
import math
from datetime import timedelta
from typing import Any, Dict, Optional

from domain.meta import (
    POD_TEMPLATE_HASH_LABEL,
    PROMOTED_AT_ANNOTATION,
    REVISION_ANNOTATION,
    ROLLOUT_NAME_LABEL,
    SCALE_DOWN_DEADLINE_ANNOTATION,
    ObjectMeta,
)
from domain.workloads import ReplicaSet, ReplicaSetSpec

from .context import ReconcileContext
from .mutations import CreateReplicaSet, DeleteReplicaSet

__all__ = [
    "build_replica_set",
    "cleanup_replica_sets",
    "format_timestamp",
    "replicas_for_weight",
    "resolve_replica_sets",
    "scale_down_annotation",
    "was_promoted",
]


def format_timestamp(value: Any) -> str:
    return value.isoformat().replace("+00:00", "Z")


def replicas_for_weight(total: int, weight: int) -> int:
    return int(math.ceil(total * weight / 100.0))


def was_promoted(rs: ReplicaSet) -> bool:
    return PROMOTED_AT_ANNOTATION in rs.metadata.annotations


def scale_down_annotation(ctx: ReconcileContext, delay_seconds: int) -> Dict[str, Optional[str]]:
    deadline = ctx.now + timedelta(seconds=delay_seconds)
    return {SCALE_DOWN_DEADLINE_ANNOTATION: format_timestamp(deadline)}


def _find_stable(ctx: ReconcileContext) -> Optional[ReplicaSet]:
    recorded = ctx.status.stable_rs
    if recorded:
        for rs in ctx.replica_sets:
            if rs.name == recorded:
                return rs
    # Status lost or the stable set was deleted: fall back to the newest
    # serving revision other than the one being rolled out.
    candidates = [
        rs
        for rs in ctx.replica_sets
        if rs.available_replicas > 0 and (ctx.new_rs is None or rs.name != ctx.new_rs.name)
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda rs: (rs.revision, rs.name))


def build_replica_set(ctx: ReconcileContext, revision: int) -> ReplicaSet:
    rollout = ctx.rollout
    template: Dict[str, Any] = copy.deepcopy(ctx.spec.template)
    template_meta = template.setdefault("metadata", {})
    template_labels = template_meta.setdefault("labels", {})
    template_labels[POD_TEMPLATE_HASH_LABEL] = ctx.pod_hash

    selector: Dict[str, Any] = copy.deepcopy(ctx.spec.selector)
    selector.setdefault("matchLabels", {})[POD_TEMPLATE_HASH_LABEL] = ctx.pod_hash

    labels = dict(template_labels)
    labels[ROLLOUT_NAME_LABEL] = rollout.name
    return ReplicaSet(
        metadata=ObjectMeta(
            name=f"{rollout.name}-{ctx.pod_hash}",
            namespace=rollout.namespace,
            labels=labels,
            annotations={REVISION_ANNOTATION: str(revision)},
            owner_references=[rollout.owner_reference()],
        ),
        spec=ReplicaSetSpec(replicas=0, selector=selector, template=template),
    )


def resolve_replica_sets(ctx: ReconcileContext) -> bool:
    """Classify replica sets and create the new one if needed.

    Returns ``True`` when the new replica set is a retained revision being
    rolled back to (it existed before this pass and was promoted once).
    """

    ctx.stable_rs = _find_stable(ctx)
    highest = max((rs.revision for rs in ctx.replica_sets), default=0)
    if ctx.new_rs is None:
        ctx.new_rs = build_replica_set(ctx, highest + 1)
        ctx.revision = highest + 1
        ctx.emit(CreateReplicaSet(replica_set=ctx.new_rs))
        return False

    ctx.revision = ctx.new_rs.revision
    rollback = (
        not ctx.is_new_stable
        and ctx.status.current_pod_hash != ctx.pod_hash
        and was_promoted(ctx.new_rs)
    )
    others = [rs.revision for rs in ctx.replica_sets if rs.name != ctx.new_rs.name]
    if not ctx.is_new_stable and others and ctx.new_rs.revision <= max(others):
        ctx.revision = highest + 1
        ctx.scale(ctx.new_rs, ctx.planned_replicas(ctx.new_rs), {REVISION_ANNOTATION: str(ctx.revision)})
    return rollback


def cleanup_replica_sets(ctx: ReconcileContext) -> None:
    """Scale down superseded replica sets and prune revision history."""

    idle = []
    for rs in ctx.older_replica_sets:
        if ctx.is_planned(rs):
            continue
        if rs.spec.replicas > 0:
            deadline = rs.scale_down_deadline
            if deadline is not None and deadline > ctx.now:
                ctx.requeue_at(deadline)
                continue
            annotations = {SCALE_DOWN_DEADLINE_ANNOTATION: None} if deadline is not None else None
            ctx.scale(rs, 0, annotations)
            continue
        idle.append(rs)

    excess = len(idle) - ctx.spec.revision_history_limit
    if excess <= 0:
        return
    for rs in sorted(idle, key=lambda item: (item.revision, item.name))[:excess]:
        ctx.emit(DeleteReplicaSet(name=rs.name))
