# SPDX-License-Identifier: MIT
"""Prometheus instrumentation for the rollout controller.

The collector owns every metric family exported by the process. Controllers
obtain it through :func:`get_metrics_collector`; tests construct their own
instance against a private :class:`~prometheus_client.CollectorRegistry`.
"""
from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)

_ROLLOUT_PHASES = ("Healthy", "Progressing", "Paused", "Degraded")


class MetricsCollector:
    """Centralized metrics collection for controllers, queues and analysis."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """Initialize metric families.

        Args:
            registry: Prometheus registry (uses the default registry if None)
        """
        kwargs: Dict[str, Any] = {}
        if registry is not None:
            kwargs["registry"] = registry
        self.registry = registry

        self.reconcile_duration = Histogram(
            "rollouts_reconcile_duration_seconds",
            "Time spent in a single reconcile pass",
            ["controller"],
            **kwargs,
        )
        self.reconcile_total = Counter(
            "rollouts_reconcile_total",
            "Reconcile passes by outcome",
            ["controller", "outcome"],
            **kwargs,
        )
        self.queue_depth = Gauge(
            "rollouts_queue_depth",
            "Keys waiting in the work queue",
            ["queue"],
            **kwargs,
        )
        self.queue_retries = Counter(
            "rollouts_queue_retries_total",
            "Rate-limited requeues",
            ["queue"],
            **kwargs,
        )
        self.mutations_total = Counter(
            "rollouts_mutations_total",
            "Mutations applied to the cluster or traffic router",
            ["kind", "status"],
            **kwargs,
        )
        self.measurements_total = Counter(
            "rollouts_analysis_measurements_total",
            "Metric measurements by provider and resulting phase",
            ["provider", "phase"],
            **kwargs,
        )
        self.analysis_run_phase_total = Counter(
            "rollouts_analysis_run_completed_total",
            "AnalysisRuns reaching a terminal phase",
            ["phase"],
            **kwargs,
        )
        self.rollout_phase = Gauge(
            "rollouts_rollout_phase",
            "Current phase of each Rollout (1 for the active phase)",
            ["namespace", "name", "phase"],
            **kwargs,
        )
        self.cache_objects = Gauge(
            "rollouts_cache_objects",
            "Objects held in the local cache",
            ["kind"],
            **kwargs,
        )

    @contextmanager
    def measure_reconcile(self, controller: str) -> Iterator[Dict[str, Any]]:
        """Time a reconcile pass and count it under the resolved outcome.

        Callers may set ``ctx["outcome"]`` (for example ``"requeued"``); an
        exception always records ``"error"``.

        Example:
            >>> collector = MetricsCollector(CollectorRegistry())
            >>> with collector.measure_reconcile("rollouts") as ctx:
            ...     ctx["outcome"] = "synced"
        """
        ctx: Dict[str, Any] = {}
        start_time = time.perf_counter()
        outcome = "success"
        try:
            yield ctx
        except Exception:
            outcome = "error"
            raise
        finally:
            if outcome != "error":
                outcome = str(ctx.get("outcome") or outcome)
            self.reconcile_duration.labels(controller=controller).observe(
                time.perf_counter() - start_time
            )
            self.reconcile_total.labels(controller=controller, outcome=outcome).inc()

    def set_queue_depth(self, queue: str, depth: int) -> None:
        self.queue_depth.labels(queue=queue).set(depth)

    def record_queue_retry(self, queue: str) -> None:
        self.queue_retries.labels(queue=queue).inc()

    def record_mutation(self, kind: str, status: str) -> None:
        self.mutations_total.labels(kind=kind, status=status).inc()

    def record_measurement(self, provider: str, phase: str) -> None:
        self.measurements_total.labels(provider=provider, phase=phase).inc()

    def record_analysis_completed(self, phase: str) -> None:
        self.analysis_run_phase_total.labels(phase=phase).inc()

    def set_rollout_phase(self, namespace: str, name: str, phase: str) -> None:
        """Flip the phase gauge so exactly one phase reads 1 for the Rollout."""

        for candidate in _ROLLOUT_PHASES:
            self.rollout_phase.labels(namespace=namespace, name=name, phase=candidate).set(
                1.0 if candidate == phase else 0.0
            )

    def forget_rollout(self, namespace: str, name: str) -> None:
        for candidate in _ROLLOUT_PHASES:
            try:
                self.rollout_phase.remove(namespace, name, candidate)
            except KeyError:
                continue

    def set_cache_objects(self, kind: str, count: int) -> None:
        self.cache_objects.labels(kind=kind).set(count)

    def render_prometheus(self) -> str:
        """Render the registry in the Prometheus text exposition format."""

        if self.registry is None:
            return generate_latest().decode("utf-8")
        return generate_latest(self.registry).decode("utf-8")


# Global metrics collector instance
_collector: Optional[MetricsCollector] = None


def get_metrics_collector(registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get the process-wide metrics collector, creating it on first use."""

    global _collector
    if _collector is None:
        _collector = MetricsCollector(registry)
    return _collector


def start_metrics_server(port: int = 9090, addr: str = "") -> None:
    """Start the Prometheus metrics HTTP server.

    Args:
        port: Port to listen on
        addr: Address to bind to (empty string for all interfaces)
    """
    start_http_server(port, addr)


__all__ = [
    "MetricsCollector",
    "get_metrics_collector",
    "start_metrics_server",
]
