# SPDX-License-Identifier: MIT
"""In-process object cache fed by the list/watch informers.

Reconcilers read exclusively from here. The cache may lag the store; writes
are guarded by ``resourceVersion`` so a stale read produces a conflict rather
than a lost update.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any, Callable, DefaultDict, Dict, Iterable, List, Optional, Set

from core.utils.logging import get_logger
from core.utils.metrics import MetricsCollector
from domain.analysis import AnalysisRun, AnalysisTemplate
from domain.experiment import Experiment
from domain.meta import ObjectMeta, object_key
from domain.rollout import Rollout
from domain.workloads import ReplicaSet, Service

from .client import EventType, Kind

__all__ = ["EventHandler", "ObjectCache"]

logger = get_logger(__name__)

EventHandler = Callable[[EventType, Any], None]


def _resource_version(obj: Any) -> int:
    raw = obj.metadata.resource_version
    try:
        return int(raw) if raw is not None else -1
    except ValueError:
        return -1


class ObjectCache:
    """Thread-safe store of the latest observed object per kind and key.

    A secondary index maps ``(kind, namespace, owner rollout)`` to the keys of
    the objects that Rollout controls, so snapshot assembly never scans.
    """

    def __init__(self, metrics: MetricsCollector | None = None) -> None:
        self._lock = threading.RLock()
        self._objects: DefaultDict[Kind, Dict[str, Any]] = defaultdict(dict)
        self._owned: DefaultDict[tuple[Kind, str, str], Set[str]] = defaultdict(set)
        self._handlers: DefaultDict[Kind, List[EventHandler]] = defaultdict(list)
        self._synced: Set[Kind] = set()
        self._metrics = metrics

    # ------------------------------------------------------------------
    def add_handler(self, kind: Kind, handler: EventHandler) -> None:
        with self._lock:
            self._handlers[kind].append(handler)

    def _dispatch(self, kind: Kind, event: EventType, obj: Any) -> None:
        with self._lock:
            handlers = list(self._handlers[kind])
        for handler in handlers:
            try:
                handler(event, obj)
            except Exception:
                logger.exception("Cache event handler failed", kind=kind.value, key=obj.metadata.key)

    @staticmethod
    def _owner_slot(kind: Kind, metadata: ObjectMeta) -> Optional[tuple[Kind, str, str]]:
        owner = metadata.controller_owner()
        if owner is None or owner.kind != Kind.ROLLOUT.value:
            return None
        return (kind, metadata.namespace, owner.name)

    def _store_locked(self, kind: Kind, obj: Any) -> Optional[Any]:
        key = obj.metadata.key
        previous = self._objects[kind].get(key)
        if previous is not None:
            slot = self._owner_slot(kind, previous.metadata)
            if slot is not None:
                self._owned[slot].discard(key)
        self._objects[kind][key] = obj
        slot = self._owner_slot(kind, obj.metadata)
        if slot is not None:
            self._owned[slot].add(key)
        return previous

    def _remove_locked(self, kind: Kind, key: str) -> Optional[Any]:
        previous = self._objects[kind].pop(key, None)
        if previous is not None:
            slot = self._owner_slot(kind, previous.metadata)
            if slot is not None:
                self._owned[slot].discard(key)
        return previous

    def _report(self, kind: Kind) -> None:
        if self._metrics is not None:
            self._metrics.set_cache_objects(kind.value, len(self._objects[kind]))

    # ------------------------------------------------------------------
    def apply_event(self, kind: Kind, event: EventType, obj: Any) -> None:
        """Record a watch event; out-of-order updates older than the cached copy are ignored."""

        with self._lock:
            key = obj.metadata.key
            if event == EventType.DELETED:
                if self._remove_locked(kind, key) is None:
                    return
            else:
                current = self._objects[kind].get(key)
                if current is not None and 0 <= _resource_version(obj) < _resource_version(current):
                    return
                previous = self._store_locked(kind, obj)
                event = EventType.MODIFIED if previous is not None else EventType.ADDED
            self._report(kind)
        self._dispatch(kind, event, obj)

    def replace(self, kind: Kind, objects: Iterable[Any]) -> None:
        """Swap in the result of a full list, emitting events for the differences."""

        incoming = {obj.metadata.key: obj for obj in objects}
        events: List[tuple[EventType, Any]] = []
        with self._lock:
            for key in list(self._objects[kind]):
                if key not in incoming:
                    removed = self._remove_locked(kind, key)
                    events.append((EventType.DELETED, removed))
            for key, obj in incoming.items():
                previous = self._store_locked(kind, obj)
                events.append((EventType.ADDED if previous is None else EventType.MODIFIED, obj))
            self._synced.add(kind)
            self._report(kind)
        for event, obj in events:
            self._dispatch(kind, event, obj)

    def has_synced(self, *kinds: Kind) -> bool:
        with self._lock:
            wanted = kinds or tuple(Kind)
            return all(kind in self._synced for kind in wanted)

    # ------------------------------------------------------------------
    def get(self, kind: Kind, key: str) -> Optional[Any]:
        with self._lock:
            return self._objects[kind].get(key)

    def list(self, kind: Kind, namespace: Optional[str] = None) -> List[Any]:
        with self._lock:
            values = list(self._objects[kind].values())
        if namespace is None:
            return values
        return [obj for obj in values if obj.metadata.namespace == namespace]

    def owned_by(self, kind: Kind, rollout: Rollout) -> List[Any]:
        with self._lock:
            keys = sorted(self._owned.get((kind, rollout.namespace, rollout.name), ()))
            objects = [self._objects[kind][key] for key in keys if key in self._objects[kind]]
        uid = rollout.metadata.uid
        return [obj for obj in objects if obj.metadata.is_owned_by(Kind.ROLLOUT.value, rollout.name, uid)]

    # Typed accessors used by the controllers.
    def rollout(self, key: str) -> Optional[Rollout]:
        return self.get(Kind.ROLLOUT, key)

    def analysis_run(self, key: str) -> Optional[AnalysisRun]:
        return self.get(Kind.ANALYSIS_RUN, key)

    def replica_sets_for(self, rollout: Rollout) -> List[ReplicaSet]:
        return self.owned_by(Kind.REPLICA_SET, rollout)

    def analysis_runs_for(self, rollout: Rollout) -> Dict[str, AnalysisRun]:
        return {run.name: run for run in self.owned_by(Kind.ANALYSIS_RUN, rollout)}

    def experiments_for(self, rollout: Rollout) -> Dict[str, Experiment]:
        return {experiment.name: experiment for experiment in self.owned_by(Kind.EXPERIMENT, rollout)}

    def services_in(self, namespace: str) -> Dict[str, Service]:
        return {service.name: service for service in self.list(Kind.SERVICE, namespace)}

    def analysis_templates_in(self, namespace: str) -> Dict[str, AnalysisTemplate]:
        return {template.metadata.name: template for template in self.list(Kind.ANALYSIS_TEMPLATE, namespace)}

    def owner_key(self, obj: Any) -> Optional[str]:
        """Key of the Rollout controlling ``obj``, if any."""

        owner = obj.metadata.controller_owner()
        if owner is None or owner.kind != Kind.ROLLOUT.value:
            return None
        return object_key(obj.metadata.namespace, owner.name)
