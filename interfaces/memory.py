# SPDX-License-Identifier: MIT
"""In-memory object store for dry runs and tests.

Behaves like the cluster API where the controllers can tell: resource
versions increase on every write, status writes with a stale version
conflict, deleting an owner removes what it controls, and watches resume
from a resource version. ReplicaSets optionally become ready as soon as they
are scaled, standing in for the cluster's own ReplicaSet controller.
"""

from __future__ import annotations

import copy
import itertools
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from controller.client import RESOURCE_MODELS, EventType, Kind, WatchEvent
from core.errors import AlreadyExistsError, ConflictError, NotFoundError
from domain.meta import object_key

__all__ = ["InMemoryObjectStore", "merge_patch"]


def merge_patch(target: Any, patch: Any) -> Any:
    """RFC 7386 JSON merge patch."""

    if not isinstance(patch, Mapping):
        return copy.deepcopy(patch)
    result = dict(target) if isinstance(target, Mapping) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = merge_patch(result.get(key), value)
    return result


class InMemoryObjectStore:
    def __init__(self, *, auto_ready: bool = True, history: int = 10_000) -> None:
        self.auto_ready = auto_ready
        self._cond = threading.Condition()
        self._documents: Dict[Kind, Dict[str, Dict[str, Any]]] = {kind: {} for kind in Kind}
        self._events: List[Tuple[int, Kind, EventType, Dict[str, Any]]] = []
        self._history = history
        self._versions = itertools.count(1)
        self._resource_version = 0
        self.calls: List[Tuple[str, Kind, str]] = []

    # ------------------------------------------------------------------
    def _model(self, kind: Kind, document: Dict[str, Any]) -> Any:
        return RESOURCE_MODELS[kind].model_validate(copy.deepcopy(document))

    def _bump(self, document: Dict[str, Any]) -> None:
        self._resource_version = next(self._versions)
        document.setdefault("metadata", {})["resourceVersion"] = str(self._resource_version)

    def _record_locked(self, kind: Kind, event: EventType, document: Dict[str, Any]) -> None:
        self._events.append((self._resource_version, kind, event, copy.deepcopy(document)))
        if len(self._events) > self._history:
            del self._events[: len(self._events) - self._history]
        self._cond.notify_all()

    def _lookup_locked(self, kind: Kind, namespace: str, name: str) -> Dict[str, Any]:
        document = self._documents[kind].get(object_key(namespace, name))
        if document is None:
            raise NotFoundError(f"{kind.value} {namespace}/{name} not found", detail={"kind": kind.value})
        return document

    def _settle_replica_set(self, document: Dict[str, Any]) -> None:
        if not self.auto_ready:
            return
        replicas = int((document.get("spec") or {}).get("replicas") or 0)
        document["status"] = {
            "replicas": replicas,
            "readyReplicas": replicas,
            "availableReplicas": replicas,
            "observedGeneration": document["metadata"].get("generation", 1),
        }

    # ------------------------------------------------------------------
    def get(self, kind: Kind, namespace: str, name: str) -> Any:
        with self._cond:
            return self._model(kind, self._lookup_locked(kind, namespace, name))

    def list(self, kind: Kind, namespace: Optional[str] = None) -> Tuple[List[Any], Optional[str]]:
        with self._cond:
            documents = [
                document
                for document in self._documents[kind].values()
                if namespace is None or document["metadata"].get("namespace", "default") == namespace
            ]
            return [self._model(kind, document) for document in documents], str(self._resource_version)

    def watch(
        self,
        kind: Kind,
        namespace: Optional[str] = None,
        *,
        resource_version: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
    ) -> Iterator[WatchEvent]:
        since = int(resource_version or 0)
        deadline = None if timeout_seconds is None else time.monotonic() + timeout_seconds
        while True:
            with self._cond:
                pending = [
                    (version, event, document)
                    for version, event_kind, event, document in self._events
                    if version > since and event_kind == kind
                    and (namespace is None or document["metadata"].get("namespace", "default") == namespace)
                ]
                if not pending:
                    remaining = None if deadline is None else deadline - time.monotonic()
                    if remaining is not None and remaining <= 0:
                        return
                    self._cond.wait(remaining)
                    continue
            for version, event, document in pending:
                since = version
                yield WatchEvent(type=event, object=self._model(kind, document))

    def create(self, kind: Kind, obj: Any) -> Any:
        document = obj.to_dict()
        metadata = document.setdefault("metadata", {})
        metadata.setdefault("namespace", "default")
        key = object_key(metadata["namespace"], metadata["name"])
        with self._cond:
            self.calls.append(("create", kind, key))
            if key in self._documents[kind]:
                raise AlreadyExistsError(f"{kind.value} {key} already exists", detail={"kind": kind.value})
            metadata["uid"] = metadata.get("uid") or uuid.uuid4().hex
            metadata["generation"] = 1
            metadata["creationTimestamp"] = datetime.now(timezone.utc).isoformat()
            if kind == Kind.REPLICA_SET:
                self._settle_replica_set(document)
            self._bump(document)
            self._documents[kind][key] = document
            self._record_locked(kind, EventType.ADDED, document)
            return self._model(kind, document)

    def patch(self, kind: Kind, namespace: str, name: str, patch: Mapping[str, Any]) -> Any:
        with self._cond:
            self.calls.append(("patch", kind, object_key(namespace, name)))
            current = self._lookup_locked(kind, namespace, name)
            updated = merge_patch(copy.deepcopy(current), patch)
            if updated.get("spec") != current.get("spec"):
                updated["metadata"]["generation"] = int(current["metadata"].get("generation", 1)) + 1
            if kind == Kind.REPLICA_SET:
                self._settle_replica_set(updated)
            self._bump(updated)
            self._documents[kind][object_key(namespace, name)] = updated
            self._record_locked(kind, EventType.MODIFIED, updated)
            return self._model(kind, updated)

    def update_status(self, kind: Kind, obj: Any) -> Any:
        namespace, name = obj.metadata.namespace, obj.metadata.name
        with self._cond:
            self.calls.append(("update_status", kind, object_key(namespace, name)))
            current = self._lookup_locked(kind, namespace, name)
            expected = obj.metadata.resource_version
            if expected is not None and expected != current["metadata"].get("resourceVersion"):
                raise ConflictError(
                    f"{kind.value} {namespace}/{name} was modified",
                    detail={"kind": kind.value, "expected": expected},
                )
            updated = copy.deepcopy(current)
            updated["status"] = obj.to_dict().get("status", {})
            self._bump(updated)
            self._documents[kind][object_key(namespace, name)] = updated
            self._record_locked(kind, EventType.MODIFIED, updated)
            return self._model(kind, updated)

    def delete(self, kind: Kind, namespace: str, name: str) -> None:
        with self._cond:
            self.calls.append(("delete", kind, object_key(namespace, name)))
            document = self._lookup_locked(kind, namespace, name)
            self._delete_locked(kind, document)

    def _delete_locked(self, kind: Kind, document: Dict[str, Any]) -> None:
        metadata = document["metadata"]
        self._documents[kind].pop(object_key(metadata.get("namespace", "default"), metadata["name"]), None)
        self._bump(document)
        self._record_locked(kind, EventType.DELETED, document)
        uid = metadata.get("uid")
        if not uid:
            return
        for child_kind, documents in self._documents.items():
            for child in list(documents.values()):
                owners = child["metadata"].get("ownerReferences") or []
                if any(owner.get("uid") == uid for owner in owners):
                    self._delete_locked(child_kind, child)

    # ------------------------------------------------------------------
    # Helpers for seeding and for simulating the rest of the cluster.
    def apply(self, kind: Kind, obj: Any) -> Any:
        """Create ``obj`` or replace its spec and metadata, like ``kubectl apply``."""

        key = obj.metadata.key
        with self._cond:
            exists = key in self._documents[kind]
        if not exists:
            return self.create(kind, obj)
        document = obj.to_dict()
        patch = {key_: value for key_, value in document.items() if key_ not in ("status", "metadata")}
        metadata = document.get("metadata") or {}
        patch["metadata"] = {
            "labels": metadata.get("labels"),
            "annotations": metadata.get("annotations"),
        }
        return self.patch(kind, obj.metadata.namespace, obj.metadata.name, patch)

    def set_replica_set_status(self, namespace: str, name: str, *, available: int, ready: Optional[int] = None) -> Any:
        with self._cond:
            current = self._lookup_locked(Kind.REPLICA_SET, namespace, name)
            updated = copy.deepcopy(current)
            status = dict(updated.get("status") or {})
            status["availableReplicas"] = available
            status["readyReplicas"] = available if ready is None else ready
            status["replicas"] = int((updated.get("spec") or {}).get("replicas") or 0)
            status["observedGeneration"] = updated["metadata"].get("generation", 1)
            updated["status"] = status
            self._bump(updated)
            self._documents[Kind.REPLICA_SET][object_key(namespace, name)] = updated
            self._record_locked(Kind.REPLICA_SET, EventType.MODIFIED, updated)
            return self._model(Kind.REPLICA_SET, updated)

    def objects(self, kind: Kind, namespace: Optional[str] = None) -> List[Any]:
        return self.list(kind, namespace)[0]
