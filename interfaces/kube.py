# SPDX-License-Identifier: MIT
"""Kubernetes API adapter for the :class:`~controller.client.ObjectStore` seam.

Rollouts, AnalysisRuns, AnalysisTemplates and Experiments are custom
resources under ``rollouts.dev/v1alpha1``; ReplicaSets and Services use the
built-in APIs. Everything crosses the boundary as plain camelCase documents
that the domain models parse.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

from kubernetes import client, config, watch
from kubernetes.client import ApiException

from controller.client import RESOURCE_MODELS, EventType, Kind, WatchEvent
from core.errors import (
    AlreadyExistsError,
    ConflictError,
    ControllerError,
    NotFoundError,
    TransientError,
)
from core.utils.logging import get_logger
from domain.meta import API_GROUP

__all__ = ["KubernetesObjectStore", "WatchExpiredError", "load_api_client"]

logger = get_logger(__name__)

API_VERSION_NAME = "v1alpha1"


class WatchExpiredError(TransientError):
    """The watch ``resourceVersion`` was compacted away; the caller must re-list."""


@dataclass(frozen=True)
class _CustomResource:
    plural: str


_CUSTOM_RESOURCES: Dict[Kind, _CustomResource] = {
    Kind.ROLLOUT: _CustomResource("rollouts"),
    Kind.ANALYSIS_RUN: _CustomResource("analysisruns"),
    Kind.ANALYSIS_TEMPLATE: _CustomResource("analysistemplates"),
    Kind.EXPERIMENT: _CustomResource("experiments"),
}


def load_api_client(*, kubeconfig: Optional[Path] = None, in_cluster: bool = False) -> client.ApiClient:
    if in_cluster:
        config.load_incluster_config()
    else:
        config.load_kube_config(config_file=str(kubeconfig) if kubeconfig else None)
    return client.ApiClient()


def _error_reason(exc: ApiException) -> str:
    try:
        body = json.loads(exc.body or "{}")
    except (TypeError, ValueError):
        return ""
    return str(body.get("reason") or "")


def translate_api_error(exc: ApiException, *, kind: Kind, name: str = "", operation: str = "") -> ControllerError:
    """Map an API failure onto the controller error taxonomy."""

    detail = {"kind": kind.value, "name": name, "operation": operation, "status": exc.status}
    message = f"{operation} {kind.value} {name}: {exc.status} {exc.reason}".strip()
    if exc.status == 404:
        return NotFoundError(message, detail=detail)
    if exc.status == 409:
        if operation == "create" or _error_reason(exc) == "AlreadyExists":
            return AlreadyExistsError(message, detail=detail)
        return ConflictError(message, detail=detail)
    if exc.status == 410:
        return WatchExpiredError(message, detail=detail)
    if exc.status in (429, 500, 502, 503, 504) or exc.status is None or exc.status == 0:
        return TransientError(message, detail=detail)
    return ControllerError(message, detail=detail)


class KubernetesObjectStore:
    """Object store backed by the cluster API via the official client."""

    def __init__(self, api_client: client.ApiClient, *, timeout: float = 30.0) -> None:
        self._api_client = api_client
        self._custom = client.CustomObjectsApi(api_client)
        self._apps = client.AppsV1Api(api_client)
        self._core = client.CoreV1Api(api_client)
        self._timeout = timeout

    # ------------------------------------------------------------------
    def _to_model(self, kind: Kind, document: Any) -> Any:
        if not isinstance(document, dict):
            document = self._api_client.sanitize_for_serialization(document)
        return RESOURCE_MODELS[kind].model_validate(document)

    def _call(self, kind: Kind, name: str, operation: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, _request_timeout=self._timeout, **kwargs)
        except ApiException as exc:
            raise translate_api_error(exc, kind=kind, name=name, operation=operation) from exc

    def _list_function(self, kind: Kind, namespace: Optional[str]) -> Tuple[Callable[..., Any], Dict[str, Any]]:
        custom = _CUSTOM_RESOURCES.get(kind)
        if custom is not None:
            if namespace is None:
                return self._custom.list_cluster_custom_object, {
                    "group": API_GROUP,
                    "version": API_VERSION_NAME,
                    "plural": custom.plural,
                }
            return self._custom.list_namespaced_custom_object, {
                "group": API_GROUP,
                "version": API_VERSION_NAME,
                "namespace": namespace,
                "plural": custom.plural,
            }
        if kind == Kind.REPLICA_SET:
            if namespace is None:
                return self._apps.list_replica_set_for_all_namespaces, {}
            return self._apps.list_namespaced_replica_set, {"namespace": namespace}
        if namespace is None:
            return self._core.list_service_for_all_namespaces, {}
        return self._core.list_namespaced_service, {"namespace": namespace}

    # ------------------------------------------------------------------
    def get(self, kind: Kind, namespace: str, name: str) -> Any:
        custom = _CUSTOM_RESOURCES.get(kind)
        if custom is not None:
            document = self._call(
                kind, name, "get", self._custom.get_namespaced_custom_object,
                API_GROUP, API_VERSION_NAME, namespace, custom.plural, name,
            )
        elif kind == Kind.REPLICA_SET:
            document = self._call(kind, name, "get", self._apps.read_namespaced_replica_set, name, namespace)
        else:
            document = self._call(kind, name, "get", self._core.read_namespaced_service, name, namespace)
        return self._to_model(kind, document)

    def list(self, kind: Kind, namespace: Optional[str] = None) -> Tuple[List[Any], Optional[str]]:
        func, kwargs = self._list_function(kind, namespace)
        result = self._call(kind, "", "list", func, **kwargs)
        if isinstance(result, dict):
            items = result.get("items") or []
            resource_version = (result.get("metadata") or {}).get("resourceVersion")
        else:
            items = result.items or []
            resource_version = result.metadata.resource_version if result.metadata else None
        return [self._to_model(kind, item) for item in items], resource_version

    def watch(
        self,
        kind: Kind,
        namespace: Optional[str] = None,
        *,
        resource_version: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
    ) -> Iterator[WatchEvent]:
        func, kwargs = self._list_function(kind, namespace)
        watcher = watch.Watch()
        if resource_version:
            kwargs["resource_version"] = resource_version
        if timeout_seconds:
            kwargs["timeout_seconds"] = timeout_seconds
        try:
            for event in watcher.stream(func, **kwargs):
                event_type = str(event.get("type", ""))
                raw = event.get("raw_object") or event.get("object")
                if event_type == "ERROR":
                    code = (raw or {}).get("code") if isinstance(raw, dict) else None
                    if code == 410:
                        raise WatchExpiredError(f"watch {kind.value} expired", detail={"kind": kind.value})
                    raise TransientError(f"watch {kind.value} failed: {raw}", detail={"kind": kind.value})
                if event_type not in EventType.__members__:
                    continue
                yield WatchEvent(type=EventType(event_type), object=self._to_model(kind, raw))
        except ApiException as exc:
            raise translate_api_error(exc, kind=kind, operation="watch") from exc
        finally:
            watcher.stop()

    def create(self, kind: Kind, obj: Any) -> Any:
        body = obj.to_dict()
        namespace, name = obj.metadata.namespace, obj.metadata.name
        custom = _CUSTOM_RESOURCES.get(kind)
        if custom is not None:
            document = self._call(
                kind, name, "create", self._custom.create_namespaced_custom_object,
                API_GROUP, API_VERSION_NAME, namespace, custom.plural, body,
            )
        elif kind == Kind.REPLICA_SET:
            document = self._call(kind, name, "create", self._apps.create_namespaced_replica_set, namespace, body)
        else:
            document = self._call(kind, name, "create", self._core.create_namespaced_service, namespace, body)
        return self._to_model(kind, document)

    def patch(self, kind: Kind, namespace: str, name: str, patch: Mapping[str, Any]) -> Any:
        body = dict(patch)
        custom = _CUSTOM_RESOURCES.get(kind)
        if custom is not None:
            document = self._call(
                kind, name, "patch", self._custom.patch_namespaced_custom_object,
                API_GROUP, API_VERSION_NAME, namespace, custom.plural, name, body,
            )
        elif kind == Kind.REPLICA_SET:
            document = self._call(kind, name, "patch", self._apps.patch_namespaced_replica_set, name, namespace, body)
        else:
            document = self._call(kind, name, "patch", self._core.patch_namespaced_service, name, namespace, body)
        return self._to_model(kind, document)

    def update_status(self, kind: Kind, obj: Any) -> Any:
        custom = _CUSTOM_RESOURCES.get(kind)
        if custom is None:
            raise ControllerError(f"status of {kind.value} is not written by this controller")
        name = obj.metadata.name
        document = self._call(
            kind, name, "update_status", self._custom.replace_namespaced_custom_object_status,
            API_GROUP, API_VERSION_NAME, obj.metadata.namespace, custom.plural, name, obj.to_dict(),
        )
        return self._to_model(kind, document)

    def delete(self, kind: Kind, namespace: str, name: str) -> None:
        custom = _CUSTOM_RESOURCES.get(kind)
        if custom is not None:
            self._call(
                kind, name, "delete", self._custom.delete_namespaced_custom_object,
                API_GROUP, API_VERSION_NAME, namespace, custom.plural, name,
            )
        elif kind == Kind.REPLICA_SET:
            self._call(kind, name, "delete", self._apps.delete_namespaced_replica_set, name, namespace)
        else:
            self._call(kind, name, "delete", self._core.delete_namespaced_service, name, namespace)
        logger.debug("Deleted object", kind=kind.value, namespace=namespace, name=name)
