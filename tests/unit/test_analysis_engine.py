# SPDX-License-Identifier: MIT
from __future__ import annotations

import threading
from typing import Any, Iterator, List, Mapping

import pytest

from analysis.engine import AnalysisEngine, aggregate_phases, assess_metric, judge_measurement
from analysis.providers import MeasurementResult, ProviderRegistry
from domain.analysis import (
    AnalysisPhase,
    AnalysisRun,
    AnalysisRunSpec,
    Metric,
    MetricResult,
)
from domain.meta import ObjectMeta
from tests.helpers import FakeClock, FakeProvider


def _metric(**fields: Any) -> Metric:
    payload = {"name": "success-rate", "provider": {"fake": {}}, "successCondition": "result >= 0.95", **fields}
    return Metric.model_validate(payload)


def _run(*metrics: Metric, terminate: bool = False) -> AnalysisRun:
    return AnalysisRun(
        metadata=ObjectMeta(name="web-abc-1-0", namespace="default"),
        spec=AnalysisRunSpec(metrics=list(metrics), terminate=terminate),
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture()
def engine(clock: FakeClock, provider: FakeProvider) -> Iterator[AnalysisEngine]:
    registry = ProviderRegistry()
    registry.register_provider(provider)
    with AnalysisEngine(registry, measurement_timeout=5.0, max_workers=2, default_interval=30.0, clock=clock) as instance:
        yield instance


def _advance(engine: AnalysisEngine, run: AnalysisRun, status_holder: List[Any]) -> AnalysisRun:
    status, requeue = engine.reconcile(run)
    status_holder.append(requeue)
    return run.model_copy(update={"status": status})


def test_single_measurement_succeeds(engine: AnalysisEngine, provider: FakeProvider) -> None:
    provider.values["success-rate"] = [0.99]
    status, requeue = engine.reconcile(_run(_metric()))

    assert status.phase == AnalysisPhase.SUCCESSFUL
    assert requeue is None
    result = status.result_for("success-rate")
    assert result is not None
    assert result.successful == 1
    assert result.measurements[0].value == "0.99"
    assert status.completed_at is not None


def test_failure_limit_counts_failed_measurements(
    engine: AnalysisEngine, provider: FakeProvider, clock: FakeClock
) -> None:
    provider.values["success-rate"] = [0.5, 0.5]
    run = _run(_metric(interval="10s", count=3, failureLimit=2))
    requeues: List[Any] = []

    run = _advance(engine, run, requeues)
    assert run.status.phase == AnalysisPhase.RUNNING
    assert requeues[-1] == pytest.approx(10.0)

    clock.advance(10)
    run = _advance(engine, run, requeues)
    assert run.status.phase == AnalysisPhase.FAILED
    assert "failureLimit" in (run.status.message or "")
    assert requeues[-1] is None


def test_measurement_not_due_does_not_call_provider(
    engine: AnalysisEngine, provider: FakeProvider, clock: FakeClock
) -> None:
    run = _run(_metric(interval="10s", count=3))
    requeues: List[Any] = []
    run = _advance(engine, run, requeues)
    clock.advance(4)
    run = _advance(engine, run, requeues)

    assert provider.calls == ["success-rate"]
    assert requeues[-1] == pytest.approx(6.0)


def test_total_failure_counting_ignores_interleaved_successes(
    engine: AnalysisEngine, provider: FakeProvider, clock: FakeClock
) -> None:
    provider.values["success-rate"] = [0.5, 0.99, 0.5]
    run = _run(_metric(interval="5s", count=5, failureLimit=2, failureCounting="Total"))
    requeues: List[Any] = []
    for _ in range(3):
        run = _advance(engine, run, requeues)
        clock.advance(5)

    result = run.status.result_for("success-rate")
    assert result is not None
    assert result.failed == 2
    assert result.consecutive_failed == 1
    assert run.status.phase == AnalysisPhase.FAILED


def test_provider_exception_becomes_error(engine: AnalysisEngine, provider: FakeProvider) -> None:
    provider.error = "backend unavailable"
    status, _ = engine.reconcile(_run(_metric()))

    assert status.phase == AnalysisPhase.ERROR
    result = status.result_for("success-rate")
    assert result is not None
    assert result.error == 1
    assert result.measurements[0].phase == AnalysisPhase.ERROR
    assert "backend unavailable" in (result.measurements[0].message or "")


def test_unknown_provider_is_an_error(engine: AnalysisEngine) -> None:
    metric = Metric.model_validate({"name": "latency", "provider": {"missing": {}}})
    status, _ = engine.reconcile(_run(metric))

    assert status.phase == AnalysisPhase.ERROR
    assert "no metric provider registered as 'missing'" in (status.metric_results[0].measurements[0].message or "")


def test_between_conditions_is_inconclusive(engine: AnalysisEngine, provider: FakeProvider) -> None:
    provider.values["success-rate"] = [0.9]
    metric = _metric(failureCondition="result < 0.8")
    status, requeue = engine.reconcile(_run(metric))

    assert status.phase == AnalysisPhase.INCONCLUSIVE
    assert requeue is None


def test_dry_run_metric_does_not_fail_the_run(engine: AnalysisEngine, provider: FakeProvider) -> None:
    provider.values["success-rate"] = [0.1]
    provider.values["latency"] = [120]
    gated = Metric.model_validate({"name": "latency", "provider": {"fake": {}}, "successCondition": "result < 500"})
    status, _ = engine.reconcile(_run(_metric(dryRun=True), gated))

    assert status.phase == AnalysisPhase.SUCCESSFUL
    dry = status.result_for("success-rate")
    assert dry is not None and dry.phase == AnalysisPhase.FAILED and dry.dry_run


def test_initial_delay_postpones_first_measurement(engine: AnalysisEngine, provider: FakeProvider) -> None:
    status, requeue = engine.reconcile(_run(_metric(initialDelay="20s")))

    assert provider.calls == []
    assert status.phase == AnalysisPhase.RUNNING
    assert status.metric_results[0].phase == AnalysisPhase.PENDING
    assert requeue == pytest.approx(20.0)


def _terminate(run: AnalysisRun, status: Any) -> AnalysisRun:
    spec = run.spec.model_copy(update={"terminate": True})
    return run.model_copy(update={"status": status, "spec": spec})


def test_terminated_run_keeps_its_phase(engine: AnalysisEngine, provider: FakeProvider) -> None:
    provider.values["success-rate"] = [0.5]
    run = _run(_metric(interval="10s", count=5, failureLimit=3))
    status, _ = engine.reconcile(run)
    assert status.phase == AnalysisPhase.RUNNING

    terminated = _terminate(run, status)
    final, requeue = engine.reconcile(terminated)

    assert final.phase == AnalysisPhase.RUNNING
    assert final.terminated
    assert final.message == "run terminated"
    assert final.completed_at is not None
    assert requeue is None
    result = final.result_for("success-rate")
    assert result is not None
    assert result.phase == AnalysisPhase.RUNNING
    assert result.failed == 1

    settled = terminated.model_copy(update={"status": final})
    assert settled.settled
    again, requeue = engine.reconcile(settled)
    assert again == final
    assert requeue is None
    assert provider.calls == ["success-rate"]


def test_run_terminated_before_first_pass_stays_pending(engine: AnalysisEngine, provider: FakeProvider) -> None:
    status, requeue = engine.reconcile(_run(_metric(), terminate=True))

    assert status.phase == AnalysisPhase.PENDING
    assert status.terminated
    assert requeue is None
    assert provider.calls == []


def test_terminal_run_is_returned_untouched(engine: AnalysisEngine, provider: FakeProvider) -> None:
    run = _run(_metric())
    status, _ = engine.reconcile(run)
    again, requeue = engine.reconcile(run.model_copy(update={"status": status}))

    assert again == status
    assert requeue is None
    assert provider.calls == ["success-rate"]


def test_measurement_retention_trims_history(
    engine: AnalysisEngine, provider: FakeProvider, clock: FakeClock
) -> None:
    run = _run(_metric(interval="1s", count=10, measurementRetention=2))
    requeues: List[Any] = []
    for _ in range(4):
        run = _advance(engine, run, requeues)
        clock.advance(1)

    result = run.status.result_for("success-rate")
    assert result is not None
    assert result.count == 4
    assert len(result.measurements) == 2


def test_asynchronous_measurement_is_resumed(clock: FakeClock) -> None:
    class JobProvider(FakeProvider):
        def __init__(self) -> None:
            super().__init__()
            self.resumed = 0

        def measure(self, run: AnalysisRun, metric: Metric) -> MeasurementResult:
            self.calls.append(metric.name)
            return MeasurementResult(phase=AnalysisPhase.RUNNING, resume_after=15, metadata={"job": "j-1"})

        def resume(self, run: AnalysisRun, metric: Metric, measurement: Any) -> MeasurementResult:
            self.resumed += 1
            assert measurement.metadata == {"job": "j-1"}
            return MeasurementResult(value=1.0)

    provider = JobProvider()
    registry = ProviderRegistry()
    registry.register_provider(provider)
    with AnalysisEngine(registry, clock=clock) as engine:
        run = _run(_metric())
        status, requeue = engine.reconcile(run)
        assert status.phase == AnalysisPhase.RUNNING
        assert requeue == pytest.approx(15.0)

        clock.advance(15)
        final, _ = engine.reconcile(run.model_copy(update={"status": status}))

    assert provider.resumed == 1
    assert provider.calls == ["success-rate"]
    assert final.phase == AnalysisPhase.SUCCESSFUL
    assert len(final.metric_results[0].measurements) == 1


def test_terminated_run_resumes_in_flight_measurement(clock: FakeClock) -> None:
    class JobProvider(FakeProvider):
        def measure(self, run: AnalysisRun, metric: Metric) -> MeasurementResult:
            self.calls.append(metric.name)
            return MeasurementResult(phase=AnalysisPhase.RUNNING, resume_after=15)

        def resume(self, run: AnalysisRun, metric: Metric, measurement: Any) -> MeasurementResult:
            self.calls.append(f"resume:{metric.name}")
            return MeasurementResult(value=0.4)

    provider = JobProvider()
    registry = ProviderRegistry()
    registry.register_provider(provider)
    with AnalysisEngine(registry, clock=clock) as engine:
        run = _run(_metric(interval="10s", count=5))
        status, _ = engine.reconcile(run)
        terminated = _terminate(run, status)

        draining, requeue = engine.reconcile(terminated)
        assert requeue == pytest.approx(15.0)
        assert draining.completed_at is None
        assert not terminated.model_copy(update={"status": draining}).settled

        clock.advance(15)
        final, requeue = engine.reconcile(terminated.model_copy(update={"status": draining}))

    assert provider.calls == ["success-rate", "resume:success-rate"]
    assert requeue is None
    assert final.phase == AnalysisPhase.RUNNING
    assert final.completed_at is not None
    result = final.result_for("success-rate")
    assert result is not None
    assert result.in_flight is None
    assert result.measurements[-1].value == "0.4"


class HangingProvider(FakeProvider):
    """Blocks every call until ``release`` is set."""

    type = "hang"

    def __init__(self) -> None:
        super().__init__()
        self.release = threading.Event()

    def measure(self, run: AnalysisRun, metric: Metric) -> MeasurementResult:
        self.calls.append(metric.name)
        self.release.wait(5)
        return MeasurementResult(value=1.0)


def test_hung_provider_does_not_starve_other_providers(clock: FakeClock, provider: FakeProvider) -> None:
    hanging = HangingProvider()
    registry = ProviderRegistry()
    registry.register_provider(provider)
    registry.register_provider(hanging)
    stuck = Metric.model_validate({"name": "latency", "provider": {"hang": {}}})
    engine = AnalysisEngine(
        registry, measurement_timeout=0.2, max_workers=1, busy_retry=2.0, clock=clock
    )
    try:
        status, _ = engine.reconcile(_run(stuck))
        assert status.phase == AnalysisPhase.ERROR
        assert "timed out after 0.2s" in (status.metric_results[0].measurements[0].message or "")

        healthy, requeue = engine.reconcile(_run(_metric()))
        assert healthy.phase == AnalysisPhase.SUCCESSFUL
        assert requeue is None

        busy, requeue = engine.reconcile(_run(stuck))
        assert busy.phase == AnalysisPhase.RUNNING
        assert busy.metric_results[0].measurements == []
        assert requeue == pytest.approx(2.0)
        assert hanging.calls == ["latency"]
    finally:
        hanging.release.set()
        engine.close()


def test_repeated_timeouts_reach_the_failure_limit(clock: FakeClock) -> None:
    hanging = HangingProvider()
    registry = ProviderRegistry()
    registry.register_provider(hanging)
    metric = Metric.model_validate(
        {"name": "latency", "provider": {"hang": {}}, "interval": "10s", "failureLimit": 3}
    )
    run = _run(metric)
    requeues: List[Any] = []
    engine = AnalysisEngine(registry, measurement_timeout=0.1, max_workers=4, clock=clock)
    try:
        for _ in range(3):
            run = _advance(engine, run, requeues)
            clock.advance(10)
        run = _advance(engine, run, requeues)
    finally:
        hanging.release.set()
        engine.close()

    assert run.status.phase == AnalysisPhase.ERROR
    assert hanging.calls == ["latency"] * 3
    assert requeues[2] is None
    assert requeues[3] is None
    result = run.status.result_for("latency")
    assert result is not None
    assert result.error == 3
    assert all("timed out" in (m.message or "") for m in result.measurements)


@pytest.mark.parametrize(
    ("phases", "expected"),
    [
        ([], AnalysisPhase.SUCCESSFUL),
        ([AnalysisPhase.SUCCESSFUL, AnalysisPhase.SUCCESSFUL], AnalysisPhase.SUCCESSFUL),
        ([AnalysisPhase.SUCCESSFUL, AnalysisPhase.ERROR, AnalysisPhase.FAILED], AnalysisPhase.FAILED),
        ([AnalysisPhase.RUNNING, AnalysisPhase.ERROR], AnalysisPhase.ERROR),
        ([AnalysisPhase.SUCCESSFUL, AnalysisPhase.INCONCLUSIVE], AnalysisPhase.INCONCLUSIVE),
        ([AnalysisPhase.SUCCESSFUL, AnalysisPhase.RUNNING], AnalysisPhase.RUNNING),
        ([AnalysisPhase.PENDING, AnalysisPhase.INCONCLUSIVE], AnalysisPhase.RUNNING),
    ],
)
def test_aggregate_phases(phases: List[AnalysisPhase], expected: AnalysisPhase) -> None:
    assert aggregate_phases(phases) == expected


def test_judge_measurement_prefers_failure_condition() -> None:
    metric = _metric(failureCondition="result < 0.99")
    phase, _ = judge_measurement(metric, MeasurementResult(value=0.97))
    assert phase == AnalysisPhase.FAILED


def test_judge_measurement_reports_broken_condition_as_inconclusive() -> None:
    metric = _metric(successCondition="result[5] > 1")
    phase, message = judge_measurement(metric, MeasurementResult(value=[1]))
    assert phase == AnalysisPhase.INCONCLUSIVE
    assert message


def test_assess_metric_error_limit_defaults_to_failure_limit() -> None:
    metric = _metric(failureLimit=3)
    result = MetricResult(name="success-rate", count=2, error=2, consecutive_error=2)
    assert assess_metric(metric, result)[0] == AnalysisPhase.RUNNING

    result.consecutive_error = 3
    assert assess_metric(metric, result)[0] == AnalysisPhase.ERROR


def _metrics_from(mapping: Mapping[str, Any]) -> Metric:
    return Metric.model_validate(mapping)


def test_provider_shorthand_is_expanded() -> None:
    metric = _metrics_from({"name": "m", "provider": {"prometheus": {"query": "up"}}})
    assert metric.provider.type == "prometheus"
    assert metric.provider.config == {"query": "up"}
