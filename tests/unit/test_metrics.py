# SPDX-License-Identifier: MIT
from __future__ import annotations

import pytest
from prometheus_client import CollectorRegistry

from core.utils.metrics import MetricsCollector


@pytest.fixture()
def collector() -> MetricsCollector:
    return MetricsCollector(CollectorRegistry())


def _value(collector: MetricsCollector, name: str, /, **labels: str) -> float | None:
    assert collector.registry is not None
    return collector.registry.get_sample_value(name, labels)


def test_measure_reconcile_counts_outcomes(collector: MetricsCollector) -> None:
    with collector.measure_reconcile("rollouts"):
        pass
    with collector.measure_reconcile("rollouts") as ctx:
        ctx["outcome"] = "requeued"
    with pytest.raises(RuntimeError):
        with collector.measure_reconcile("rollouts") as ctx:
            ctx["outcome"] = "requeued"
            raise RuntimeError("boom")

    assert _value(collector, "rollouts_reconcile_total", controller="rollouts", outcome="success") == 1
    assert _value(collector, "rollouts_reconcile_total", controller="rollouts", outcome="requeued") == 1
    assert _value(collector, "rollouts_reconcile_total", controller="rollouts", outcome="error") == 1
    assert _value(collector, "rollouts_reconcile_duration_seconds_count", controller="rollouts") == 3


def test_rollout_phase_gauge_is_one_hot(collector: MetricsCollector) -> None:
    collector.set_rollout_phase("default", "web", "Progressing")
    collector.set_rollout_phase("default", "web", "Healthy")

    assert _value(collector, "rollouts_rollout_phase", namespace="default", name="web", phase="Healthy") == 1
    assert _value(collector, "rollouts_rollout_phase", namespace="default", name="web", phase="Progressing") == 0

    collector.forget_rollout("default", "web")
    collector.forget_rollout("default", "web")
    assert _value(collector, "rollouts_rollout_phase", namespace="default", name="web", phase="Healthy") is None


def test_counters_and_gauges(collector: MetricsCollector) -> None:
    collector.record_mutation("ScaleReplicaSet", "applied")
    collector.record_measurement("prometheus", "Successful")
    collector.record_analysis_completed("Failed")
    collector.record_queue_retry("rollouts")
    collector.set_queue_depth("rollouts", 7)
    collector.set_cache_objects("Rollout", 2)

    assert _value(collector, "rollouts_mutations_total", kind="ScaleReplicaSet", status="applied") == 1
    assert _value(collector, "rollouts_analysis_measurements_total", provider="prometheus", phase="Successful") == 1
    assert _value(collector, "rollouts_analysis_run_completed_total", phase="Failed") == 1
    assert _value(collector, "rollouts_queue_retries_total", queue="rollouts") == 1
    assert _value(collector, "rollouts_queue_depth", queue="rollouts") == 7
    assert _value(collector, "rollouts_cache_objects", kind="Rollout") == 2


def test_render_prometheus(collector: MetricsCollector) -> None:
    collector.record_mutation("CreateReplicaSet", "applied")
    text = collector.render_prometheus()
    assert 'rollouts_mutations_total{kind="CreateReplicaSet",status="applied"} 1.0' in text
