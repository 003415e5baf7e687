# SPDX-License-Identifier: MIT
"""Metric provider interface and the process-wide provider registry.

Concrete integrations (Prometheus, Datadog, web hooks, jobs) live outside this
package and register themselves by type name. The engine only sees
:class:`MetricProvider`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from core.utils.plugins import PluginRegistry
from domain.analysis import AnalysisPhase, AnalysisRun, Measurement, Metric

__all__ = [
    "MeasurementResult",
    "MetricProvider",
    "ProviderRegistry",
    "default_provider_registry",
]


@dataclass(slots=True)
class MeasurementResult:
    """Outcome of one provider call.

    ``phase`` is optional: when left ``None`` the engine derives the verdict
    from the metric's success/failure conditions applied to ``value``. A
    non-empty ``error`` always yields an ``Error`` measurement. Returning
    ``phase=Running`` with ``resume_after`` (seconds) marks the measurement as
    in flight; the engine calls :meth:`MetricProvider.resume` later instead of
    starting a new one.
    """

    value: Any = None
    phase: Optional[AnalysisPhase] = None
    error: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    resume_after: Optional[float] = None

    @classmethod
    def failed_call(cls, error: str) -> "MeasurementResult":
        return cls(phase=AnalysisPhase.ERROR, error=error)


class MetricProvider(ABC):
    """Executes measurements for one provider type.

    Implementations must be safe to call concurrently for different runs and
    metrics; the engine never overlaps calls for the same metric of one run.
    """

    #: Type name used in ``metric.provider.type``.
    type: str = ""

    @abstractmethod
    def measure(self, run: AnalysisRun, metric: Metric) -> MeasurementResult:
        """Start (and usually complete) a measurement."""

    def resume(self, run: AnalysisRun, metric: Metric, measurement: Measurement) -> MeasurementResult:
        """Check on an in-flight measurement. Synchronous providers never see this."""

        return self.measure(run, metric)


class ProviderRegistry(PluginRegistry[MetricProvider]):
    """Registry of provider factories; instances are created once and shared."""

    def __init__(self) -> None:
        super().__init__("metric provider")
        self._instances: Dict[str, MetricProvider] = {}

    def register_provider(self, provider: MetricProvider, *, name: str | None = None) -> None:
        resolved = name or provider.type
        if not resolved:
            raise ValueError("provider has no type name")
        self.register(resolved, lambda: provider, replace=True)
        with self._lock:
            self._instances[resolved] = provider

    def register(self, name: str, factory: Any, *, replace: bool = False) -> None:
        super().register(name, factory, replace=replace)
        with self._lock:
            self._instances.pop(name, None)

    def get(self, name: str) -> MetricProvider:
        with self._lock:
            instance = self._instances.get(name)
            if instance is None:
                instance = self.create(name)
                self._instances[name] = instance
            return instance


_DEFAULT_REGISTRY = ProviderRegistry()


def default_provider_registry() -> ProviderRegistry:
    return _DEFAULT_REGISTRY
