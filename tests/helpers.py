# SPDX-License-Identifier: MIT
"""Builders, fakes and a synchronous harness shared by the test suites."""

from __future__ import annotations

import copy
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional

from prometheus_client import CollectorRegistry

from analysis.engine import AnalysisEngine
from analysis.providers import MeasurementResult, MetricProvider, ProviderRegistry
from controller.analysisruns import AnalysisRunController
from controller.cache import ObjectCache
from controller.client import Kind
from controller.queue import WorkQueue
from controller.rollouts import RolloutController
from core.config.settings import QueueBackoff
from core.utils.fingerprint import pod_template_hash
from core.utils.metrics import MetricsCollector
from domain.analysis import AnalysisRun, AnalysisTemplate, Measurement, Metric
from domain.meta import (
    POD_TEMPLATE_HASH_LABEL,
    PROMOTED_AT_ANNOTATION,
    REVISION_ANNOTATION,
    ROLLOUT_NAME_LABEL,
    ObjectMeta,
    OwnerReference,
)
from domain.rollout import Rollout, SetHeaderRoute, SetMirrorRoute
from domain.workloads import ReplicaSet, ReplicaSetSpec, ReplicaSetStatus, Service
from interfaces.memory import InMemoryObjectStore
from rollout.context import ReconcilerOptions
from rollout.snapshot import RolloutSnapshot, TrafficObservation
from traffic.router import RouterRegistry

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


# ----------------------------------------------------------------------
# Builders
def pod_template(image: str = "web:1", app: str = "web") -> Dict[str, Any]:
    return {
        "metadata": {"labels": {"app": app}},
        "spec": {"containers": [{"name": app, "image": image}]},
    }


def template_hash(image: str = "web:1", app: str = "web") -> str:
    return pod_template_hash(pod_template(image, app), ignore_label=POD_TEMPLATE_HASH_LABEL)


def make_rollout(
    strategy: Mapping[str, Any],
    *,
    name: str = "web",
    namespace: str = "default",
    image: str = "web:1",
    replicas: int = 4,
    uid: str = "uid-web",
    status: Optional[Mapping[str, Any]] = None,
    **spec: Any,
) -> Rollout:
    document: Dict[str, Any] = {
        "apiVersion": "rollouts.dev/v1alpha1",
        "kind": "Rollout",
        "metadata": {"name": name, "namespace": namespace, "uid": uid, "generation": 1},
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": {"app": "web"}},
            "template": pod_template(image),
            "strategy": dict(strategy),
            **spec,
        },
    }
    if status is not None:
        document["status"] = dict(status)
    return Rollout.model_validate(document)


def canary_strategy(
    steps: List[Any],
    *,
    routing: bool = False,
    analysis: Optional[Mapping[str, Any]] = None,
    **extra: Any,
) -> Dict[str, Any]:
    strategy: Dict[str, Any] = {
        "steps": steps,
        "stableService": "web-stable",
        "canaryService": "web-canary",
        **extra,
    }
    if routing:
        strategy["trafficRouting"] = {"provider": "fake", "config": {"ingress": "web"}}
    if analysis is not None:
        strategy["analysis"] = dict(analysis)
    return {"canary": strategy}


def blue_green_strategy(**extra: Any) -> Dict[str, Any]:
    return {"blueGreen": {"activeService": "web-active", "previewService": "web-preview", **extra}}


def make_service(name: str, namespace: str = "default", pod_hash: Optional[str] = None) -> Service:
    selector = {"app": "web"}
    if pod_hash:
        selector[POD_TEMPLATE_HASH_LABEL] = pod_hash
    return Service(
        metadata=ObjectMeta(name=name, namespace=namespace),
        spec={"selector": selector, "ports": [{"port": 80}]},
    )


def services_for(rollout: Rollout, **selected: str) -> Dict[str, Service]:
    names: List[str] = []
    canary = rollout.canary
    if canary is not None:
        names.extend(name for name in (canary.stable_service, canary.canary_service) if name)
    blue_green = rollout.blue_green
    if blue_green is not None:
        names.append(blue_green.active_service)
        if blue_green.preview_service:
            names.append(blue_green.preview_service)
    return {name: make_service(name, rollout.namespace, selected.get(name)) for name in names}


def make_replica_set(
    rollout: Rollout,
    image: str,
    *,
    replicas: int,
    available: Optional[int] = None,
    revision: int = 1,
    promoted: bool = False,
    annotations: Optional[Mapping[str, str]] = None,
) -> ReplicaSet:
    pod_hash = template_hash(image)
    metadata_annotations = {REVISION_ANNOTATION: str(revision), **(annotations or {})}
    if promoted:
        metadata_annotations[PROMOTED_AT_ANNOTATION] = "2024-05-01T00:00:00Z"
    template = copy.deepcopy(pod_template(image))
    template["metadata"]["labels"][POD_TEMPLATE_HASH_LABEL] = pod_hash
    available = replicas if available is None else available
    return ReplicaSet(
        metadata=ObjectMeta(
            name=f"{rollout.name}-{pod_hash}",
            namespace=rollout.namespace,
            generation=1,
            labels={"app": "web", POD_TEMPLATE_HASH_LABEL: pod_hash, ROLLOUT_NAME_LABEL: rollout.name},
            annotations=metadata_annotations,
            owner_references=[OwnerReference(kind="Rollout", name=rollout.name, uid=rollout.metadata.uid)],
        ),
        spec=ReplicaSetSpec(
            replicas=replicas,
            selector={"matchLabels": {"app": "web", POD_TEMPLATE_HASH_LABEL: pod_hash}},
            template=template,
        ),
        status=ReplicaSetStatus(
            replicas=replicas,
            ready_replicas=available,
            available_replicas=available,
            observed_generation=1,
        ),
    )


def make_analysis_template(
    name: str = "success-rate",
    *,
    metrics: Optional[List[Mapping[str, Any]]] = None,
    args: Optional[List[Mapping[str, Any]]] = None,
    namespace: str = "default",
) -> AnalysisTemplate:
    if metrics is None:
        metrics = [
            {
                "name": "success-rate",
                "provider": {"fake": {"query": "rate({{args.service}})"}},
                "successCondition": "result >= 0.95",
            }
        ]
    if args is None:
        args = [{"name": "service", "value": "web"}]
    return AnalysisTemplate.model_validate(
        {
            "metadata": {"name": name, "namespace": namespace},
            "spec": {"metrics": metrics, "args": args},
        }
    )


def make_snapshot(
    rollout: Rollout,
    *,
    replica_sets: Optional[List[ReplicaSet]] = None,
    services: Optional[Mapping[str, Service]] = None,
    analysis_runs: Optional[List[AnalysisRun]] = None,
    templates: Optional[List[AnalysisTemplate]] = None,
    now: datetime = T0,
    weight: Optional[int] = None,
    router_available: bool = True,
) -> RolloutSnapshot:
    return RolloutSnapshot(
        rollout=rollout,
        now=now,
        replica_sets=tuple(replica_sets or ()),
        services=dict(services if services is not None else services_for(rollout)),
        analysis_runs={run.name: run for run in analysis_runs or ()},
        analysis_templates={template.metadata.name: template for template in templates or ()},
        traffic=TrafficObservation(weight=weight, available=router_available),
    )


# ----------------------------------------------------------------------
# Fakes
class FakeRouter:
    """Records calls; ``observable=False`` mimics a router that cannot report its weight."""

    def __init__(self, *, observable: bool = True) -> None:
        self.observable = observable
        self.weight = 0
        self.calls: List[tuple[str, Any]] = []
        self.header_routes: Dict[str, SetHeaderRoute] = {}
        self.mirror_routes: Dict[str, SetMirrorRoute] = {}
        self.fail_with: Optional[Exception] = None

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def set_weight(self, weight: int) -> None:
        self._check()
        self.calls.append(("set_weight", weight))
        self.weight = weight

    def get_weight(self) -> Optional[int]:
        self._check()
        return self.weight if self.observable else None

    def set_header_route(self, route: SetHeaderRoute) -> None:
        self._check()
        self.calls.append(("set_header_route", route.name))
        self.header_routes[route.name] = route

    def set_mirror_route(self, route: SetMirrorRoute) -> None:
        self._check()
        self.calls.append(("set_mirror_route", route.name))
        self.mirror_routes[route.name] = route

    def remove_managed_routes(self) -> None:
        self._check()
        self.calls.append(("remove_managed_routes", None))
        self.header_routes.clear()
        self.mirror_routes.clear()

    @property
    def weights(self) -> List[int]:
        return [value for call, value in self.calls if call == "set_weight"]


class FakeProvider(MetricProvider):
    """Returns scripted values per metric name; the last value repeats."""

    type = "fake"

    def __init__(self, values: Optional[Mapping[str, List[Any]]] = None) -> None:
        self.values: Dict[str, List[Any]] = {name: list(items) for name, items in (values or {}).items()}
        self.calls: List[str] = []
        self.error: Optional[str] = None

    def measure(self, run: AnalysisRun, metric: Metric) -> MeasurementResult:
        self.calls.append(metric.name)
        if self.error:
            raise RuntimeError(self.error)
        scripted = self.values.get(metric.name) or [1.0]
        value = scripted.pop(0) if len(scripted) > 1 else scripted[0]
        return MeasurementResult(value=value, metadata={"query": str(metric.provider.config.get("query", ""))})

    def resume(self, run: AnalysisRun, metric: Metric, measurement: Measurement) -> MeasurementResult:
        return self.measure(run, metric)


# ----------------------------------------------------------------------
class Harness:
    """Both controllers wired to an in-memory store and driven synchronously.

    ``run`` refreshes the cache from the store, enqueues every object and
    drains the queues until a round leaves the store untouched, which is the
    converged state for the current clock.
    """

    def __init__(self, *, auto_ready: bool = True, observable_router: bool = True) -> None:
        self.clock = FakeClock()
        self.store = InMemoryObjectStore(auto_ready=auto_ready)
        self.metrics = MetricsCollector(CollectorRegistry())
        self.cache = ObjectCache(metrics=self.metrics)
        self.router = FakeRouter(observable=observable_router)
        self.routers = RouterRegistry(timeout=5.0, max_workers=2)
        self.routers.register("fake", lambda rollout, config: self.router)
        self.provider = FakeProvider()
        self.providers = ProviderRegistry()
        self.providers.register_provider(self.provider)
        self.engine = AnalysisEngine(
            self.providers,
            measurement_timeout=5.0,
            max_workers=2,
            default_interval=30.0,
            clock=self.clock,
            metrics=self.metrics,
        )
        backoff = QueueBackoff(base_delay=0.001, max_delay=0.01)
        self.rollouts = RolloutController(
            self.store,
            self.cache,
            self.routers,
            WorkQueue("rollouts", backoff=backoff, metrics=self.metrics),
            options=ReconcilerOptions(weight_verify_interval=5.0),
            metrics=self.metrics,
            clock=self.clock,
        )
        self.analysis_runs = AnalysisRunController(
            self.store,
            self.cache,
            self.engine,
            WorkQueue("analysisruns", backoff=backoff, metrics=self.metrics),
            metrics=self.metrics,
        )
        self.rollouts.watch()
        self.analysis_runs.watch()

    def close(self) -> None:
        self.engine.close()
        self.routers.close()

    # ------------------------------------------------------------------
    def seed(self, rollout: Rollout, *templates: AnalysisTemplate) -> Rollout:
        for service in services_for(rollout).values():
            self.store.create(Kind.SERVICE, service)
        for template in templates:
            self.store.create(Kind.ANALYSIS_TEMPLATE, template)
        return self.store.create(Kind.ROLLOUT, rollout)

    def refresh(self) -> None:
        for kind in Kind:
            self.cache.replace(kind, self.store.objects(kind))

    def _version(self) -> str:
        return self.store.list(Kind.ROLLOUT)[1] or "0"

    def _drain(self, controller: Any, limit: int = 200) -> None:
        for _ in range(limit):
            if not controller.process_next(timeout=0):
                return

    def run(self, rounds: int = 50) -> Rollout:
        for _ in range(rounds):
            before = self._version()
            self.refresh()
            self.analysis_runs.resync()
            self._drain(self.analysis_runs)
            self.refresh()
            self.rollouts.resync()
            self._drain(self.rollouts)
            if self._version() == before:
                break
        return self.rollout()

    def advance(self, seconds: float, rounds: int = 50) -> Rollout:
        self.clock.advance(seconds)
        return self.run(rounds)

    # ------------------------------------------------------------------
    def rollout(self, name: str = "web", namespace: str = "default") -> Rollout:
        return self.store.get(Kind.ROLLOUT, namespace, name)

    def update_rollout(self, rollout: Rollout) -> Rollout:
        return self.store.apply(Kind.ROLLOUT, rollout)

    def write_status(self, rollout: Rollout) -> Rollout:
        return self.store.update_status(Kind.ROLLOUT, rollout)

    def replica_set(self, image: str, name: str = "web") -> ReplicaSet:
        return self.store.get(Kind.REPLICA_SET, "default", f"{name}-{template_hash(image)}")

    def replica_sets(self) -> List[ReplicaSet]:
        return self.store.objects(Kind.REPLICA_SET)

    def service(self, name: str) -> Service:
        return self.store.get(Kind.SERVICE, "default", name)

    def runs(self) -> List[AnalysisRun]:
        return self.store.objects(Kind.ANALYSIS_RUN)
