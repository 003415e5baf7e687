# SPDX-License-Identifier: MIT
"""AnalysisRun reconciliation: schedule measurements, judge them, aggregate.

:meth:`AnalysisEngine.reconcile` is level-triggered. It looks at the run's
spec and recorded status, issues every measurement that is due (in parallel,
each bounded by a timeout), folds the results into the per-metric counters and
returns the new status together with the delay until the next measurement is
due. A run that already reached a terminal phase is returned untouched. A
terminated run schedules nothing new: in-flight measurements are resumed until
they finish and its phase stays where it was when termination was requested.
"""

from __future__ import annotations

import json
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from core.errors import BulkheadFullError, PluginNotFoundError
from core.utils.bulkhead import BulkheadCall, BulkheadRegistry
from core.utils.logging import get_logger
from core.utils.metrics import MetricsCollector
from domain.analysis import (
    AnalysisPhase,
    AnalysisRun,
    AnalysisRunStatus,
    FailureCounting,
    Measurement,
    Metric,
    MetricResult,
)
from domain.meta import utcnow

from .conditions import ConditionError, evaluate_condition
from .providers import MeasurementResult, MetricProvider, ProviderRegistry, default_provider_registry

__all__ = [
    "AnalysisEngine",
    "aggregate_phases",
    "assess_metric",
    "judge_measurement",
]

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def judge_measurement(metric: Metric, result: MeasurementResult) -> Tuple[AnalysisPhase, Optional[str]]:
    """Return the verdict and an optional message for one provider result."""

    if result.error:
        return AnalysisPhase.ERROR, result.error
    if result.phase is not None:
        return result.phase, None
    try:
        if metric.failure_condition and evaluate_condition(metric.failure_condition, result.value):
            return AnalysisPhase.FAILED, None
        if metric.success_condition:
            if evaluate_condition(metric.success_condition, result.value):
                return AnalysisPhase.SUCCESSFUL, None
            # Both conditions defined and neither matched.
            if metric.failure_condition:
                return AnalysisPhase.INCONCLUSIVE, None
            return AnalysisPhase.FAILED, None
    except ConditionError as exc:
        return AnalysisPhase.INCONCLUSIVE, str(exc)
    return AnalysisPhase.SUCCESSFUL, None


def assess_metric(metric: Metric, result: MetricResult) -> Tuple[AnalysisPhase, Optional[str]]:
    """Derive a metric's phase from its counters."""

    if metric.failure_counting == FailureCounting.CONSECUTIVE:
        failures = result.consecutive_failed
    else:
        failures = result.failed
    if failures >= metric.failure_limit:
        return AnalysisPhase.FAILED, (
            f"failed ({failures}) reached failureLimit ({metric.failure_limit})"
        )
    if result.consecutive_error >= metric.error_limit:
        return AnalysisPhase.ERROR, (
            f"consecutive errors ({result.consecutive_error}) reached limit ({metric.error_limit})"
        )
    if result.inconclusive >= metric.inconclusive_limit:
        return AnalysisPhase.INCONCLUSIVE, (
            f"inconclusive ({result.inconclusive}) reached inconclusiveLimit ({metric.inconclusive_limit})"
        )
    required = metric.effective_count
    if required > 0 and result.successful >= required:
        return AnalysisPhase.SUCCESSFUL, None
    if result.count == 0 and result.in_flight is None:
        return AnalysisPhase.PENDING, None
    return AnalysisPhase.RUNNING, None


def aggregate_phases(phases: Iterable[AnalysisPhase]) -> AnalysisPhase:
    """Weakest-link aggregation of metric phases into a run phase."""

    collected = list(phases)
    if not collected:
        return AnalysisPhase.SUCCESSFUL
    if AnalysisPhase.FAILED in collected:
        return AnalysisPhase.FAILED
    if AnalysisPhase.ERROR in collected:
        return AnalysisPhase.ERROR
    if all(phase == AnalysisPhase.SUCCESSFUL for phase in collected):
        return AnalysisPhase.SUCCESSFUL
    if all(phase.is_terminal for phase in collected):
        return AnalysisPhase.INCONCLUSIVE
    return AnalysisPhase.RUNNING


def _format_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple, dict)):
        return json.dumps(value, default=str)
    return str(value)


@dataclass(slots=True)
class _Call:
    metric: Metric
    result: MetricResult
    provider_type: str
    started_at: datetime
    resuming: bool
    handle: Optional[BulkheadCall[MeasurementResult]] = None
    outcome: Optional[MeasurementResult] = None
    deferred: bool = False


class AnalysisEngine:
    """Runs AnalysisRuns against registered metric providers.

    Provider calls for each provider type run in their own bulkhead of
    ``max_workers`` threads. When every worker of a type is busy (for example
    because its backend hangs) the measurement is deferred by ``busy_retry``
    seconds rather than judged.
    """

    def __init__(
        self,
        providers: ProviderRegistry | None = None,
        *,
        measurement_timeout: float = 30.0,
        max_workers: int = 8,
        default_interval: float = 30.0,
        busy_retry: float = 1.0,
        clock: Clock = utcnow,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._providers = providers or default_provider_registry()
        self._timeout = measurement_timeout
        self._default_interval = timedelta(seconds=default_interval)
        self._busy_retry = timedelta(seconds=busy_retry)
        self._clock = clock
        self._metrics = metrics
        self._bulkheads = BulkheadRegistry(max_workers, thread_prefix="measure")

    def close(self) -> None:
        self._bulkheads.shutdown()

    def __enter__(self) -> "AnalysisEngine":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    def reconcile(self, run: AnalysisRun) -> Tuple[AnalysisRunStatus, Optional[float]]:
        """Advance ``run`` by one pass.

        Returns the new status and the number of seconds until the run wants
        to be looked at again (``None`` once terminal or terminated with
        nothing left in flight).
        """

        status = run.status.model_copy(deep=True)
        if status.phase.is_terminal:
            return status, None

        now = self._clock()
        if run.spec.terminate:
            return self._drain(run, status, now)

        if status.started_at is None:
            status.started_at = now
        results = self._ensure_results(run, status)

        calls, wake_times = self._plan(run, status, results, now)
        self._execute(run, calls)
        finished = self._clock()
        deferred = set()
        for call in calls:
            if call.deferred:
                deferred.add(call.metric.name)
                wake_times.append(finished + self._busy_retry)
            else:
                self._record(call, finished)

        for metric in run.spec.metrics:
            result = results[metric.name]
            if result.phase.is_terminal:
                continue
            phase, message = assess_metric(metric, result)
            result.phase = phase
            if message:
                result.message = message
            if not phase.is_terminal and metric.name not in deferred:
                wake = self._next_due(metric, result, status.started_at)
                if wake is not None:
                    wake_times.append(wake)

        self._finish(run, status, results, finished)
        if status.phase.is_terminal:
            return status, None
        return status, self._delay(wake_times, finished)

    def _drain(
        self, run: AnalysisRun, status: AnalysisRunStatus, now: datetime
    ) -> Tuple[AnalysisRunStatus, Optional[float]]:
        """Let in-flight measurements of a terminated run finish.

        Nothing new is scheduled and neither metric nor run phases are
        reassessed: the run keeps the phase it had when it was terminated.
        """

        results = self._ensure_results(run, status)
        if not status.terminated:
            status.terminated = True
            status.message = "run terminated"
            if self._metrics is not None:
                self._metrics.record_analysis_completed("Terminated")
            logger.info("AnalysisRun terminated", run=run.metadata.key, phase=status.phase.value)

        calls, wake_times = self._plan(run, status, results, now, in_flight_only=True)
        self._execute(run, calls)
        finished = self._clock()
        for call in calls:
            if call.deferred:
                wake_times.append(finished + self._busy_retry)
            else:
                self._record(call, finished)
        for result in results.values():
            in_flight = result.in_flight
            if in_flight is not None and in_flight.resume_at is not None and in_flight.resume_at > finished:
                wake_times.append(in_flight.resume_at)

        if not wake_times:
            if status.completed_at is None:
                status.completed_at = finished
            return status, None
        return status, self._delay(wake_times, finished)

    def _delay(self, wake_times: List[datetime], now: datetime) -> float:
        if not wake_times:
            return self._default_interval.total_seconds()
        return max((min(wake_times) - now).total_seconds(), 0.0)

    # ------------------------------------------------------------------
    @staticmethod
    def _ensure_results(run: AnalysisRun, status: AnalysisRunStatus) -> Dict[str, MetricResult]:
        existing = {result.name: result for result in status.metric_results}
        ordered: List[MetricResult] = []
        for metric in run.spec.metrics:
            result = existing.get(metric.name)
            if result is None:
                result = MetricResult(name=metric.name, dry_run=metric.dry_run)
            ordered.append(result)
        status.metric_results = ordered
        return {result.name: result for result in ordered}

    def _next_due(self, metric: Metric, result: MetricResult, started_at: datetime) -> Optional[datetime]:
        in_flight = result.in_flight
        if in_flight is not None:
            return in_flight.resume_at or in_flight.started_at
        last = result.last_measurement
        if last is None:
            return started_at + (metric.initial_delay or timedelta(0))
        interval = metric.interval or self._default_interval
        return (last.finished_at or last.started_at or started_at) + interval

    def _plan(
        self,
        run: AnalysisRun,
        status: AnalysisRunStatus,
        results: Dict[str, MetricResult],
        now: datetime,
        *,
        in_flight_only: bool = False,
    ) -> Tuple[List[_Call], List[datetime]]:
        calls: List[_Call] = []
        waits: List[datetime] = []
        for metric in run.spec.metrics:
            result = results[metric.name]
            if result.phase.is_terminal:
                continue
            in_flight = result.in_flight
            if in_flight_only and in_flight is None:
                continue
            due = self._next_due(metric, result, status.started_at or now)
            if due is not None and due > now:
                waits.append(due)
                continue
            calls.append(
                _Call(
                    metric=metric,
                    result=result,
                    provider_type=metric.provider.type,
                    started_at=in_flight.started_at if in_flight and in_flight.started_at else now,
                    resuming=in_flight is not None,
                )
            )
        return calls, waits

    def _submit(self, run: AnalysisRun, call: _Call) -> None:
        try:
            provider = self._providers.get(call.provider_type)
        except PluginNotFoundError as exc:
            call.outcome = MeasurementResult.failed_call(str(exc))
            return
        in_flight = call.result.in_flight
        try:
            if call.resuming and in_flight is not None:
                call.handle = self._bulkheads.submit(
                    call.provider_type, provider.resume, run, call.metric, in_flight
                )
            else:
                call.handle = self._bulkheads.submit(call.provider_type, provider.measure, run, call.metric)
        except BulkheadFullError as exc:
            call.deferred = True
            logger.warning(
                "Metric provider busy, deferring measurement",
                run=run.metadata.key,
                metric=call.metric.name,
                provider=call.provider_type,
                error_message=str(exc),
            )

    def _execute(self, run: AnalysisRun, calls: List[_Call]) -> None:
        for call in calls:
            self._submit(run, call)
        for call in calls:
            if call.handle is None:
                continue
            try:
                call.outcome = call.handle.result(timeout=self._timeout)
            except FutureTimeoutError:
                call.outcome = MeasurementResult.failed_call(
                    f"measurement timed out after {self._timeout:g}s"
                )
                logger.warning(
                    "Metric provider call timed out",
                    run=run.metadata.key,
                    metric=call.metric.name,
                    provider=call.provider_type,
                )
            except Exception as exc:  # provider code is third-party
                call.outcome = MeasurementResult.failed_call(f"{type(exc).__name__}: {exc}")
                logger.warning(
                    "Metric provider call failed",
                    run=run.metadata.key,
                    metric=call.metric.name,
                    provider=call.provider_type,
                    error_type=type(exc).__name__,
                    error_message=str(exc),
                )

    def _record(self, call: _Call, now: datetime) -> None:
        outcome = call.outcome or MeasurementResult.failed_call("provider returned no result")
        phase, message = judge_measurement(call.metric, outcome)
        result = call.result
        measurement = Measurement(
            phase=phase,
            started_at=call.started_at,
            value=_format_value(outcome.value),
            message=message,
            metadata=dict(outcome.metadata),
        )
        if phase == AnalysisPhase.RUNNING:
            wait = outcome.resume_after
            if wait is None:
                wait = self._default_interval.total_seconds()
            measurement.resume_at = now + timedelta(seconds=max(wait, 0.0))
        else:
            measurement.finished_at = now

        if call.resuming:
            result.measurements[-1] = measurement
        else:
            result.measurements.append(measurement)

        if self._metrics is not None:
            self._metrics.record_measurement(call.provider_type, phase.value)
        if phase == AnalysisPhase.RUNNING:
            return

        result.count += 1
        if phase == AnalysisPhase.SUCCESSFUL:
            result.successful += 1
            result.consecutive_failed = 0
            result.consecutive_error = 0
        elif phase == AnalysisPhase.FAILED:
            result.failed += 1
            result.consecutive_failed += 1
            result.consecutive_error = 0
        elif phase == AnalysisPhase.INCONCLUSIVE:
            result.inconclusive += 1
            result.consecutive_error = 0
        elif phase == AnalysisPhase.ERROR:
            result.error += 1
            result.consecutive_error += 1
            if message:
                result.message = message

        retention = call.metric.measurement_retention
        if len(result.measurements) > retention:
            del result.measurements[: len(result.measurements) - retention]

    def _finish(
        self,
        run: AnalysisRun,
        status: AnalysisRunStatus,
        results: Dict[str, MetricResult],
        now: datetime,
    ) -> None:
        phases: List[AnalysisPhase] = []
        for metric in run.spec.metrics:
            phase = results[metric.name].phase
            if metric.dry_run and phase.is_terminal:
                phase = AnalysisPhase.SUCCESSFUL
            phases.append(phase)
        phase = aggregate_phases(phases)
        status.phase = phase
        if not phase.is_terminal:
            status.message = None
            return

        status.completed_at = now
        status.message = self._summary(run, results, phase)
        if self._metrics is not None:
            self._metrics.record_analysis_completed(phase.value)
        logger.info("AnalysisRun completed", run=run.metadata.key, phase=phase.value)

    @staticmethod
    def _summary(run: AnalysisRun, results: Dict[str, MetricResult], phase: AnalysisPhase) -> Optional[str]:
        if phase == AnalysisPhase.SUCCESSFUL:
            return None
        for metric in run.spec.metrics:
            result = results[metric.name]
            if result.phase == phase and not metric.dry_run:
                return f"metric '{metric.name}' assessed {phase.value}: {result.message or ''}".rstrip(": ")
        return None
