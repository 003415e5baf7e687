# SPDX-License-Identifier: MIT
from __future__ import annotations

from typing import Dict, List, Optional, Tuple

import pytest
from prometheus_client import CollectorRegistry

from controller.base import QueueController
from controller.queue import WorkQueue
from core.config.settings import QueueBackoff
from core.errors import ConflictError, SpecValidationError
from core.utils.metrics import MetricsCollector


class FixedClock:
    def __init__(self) -> None:
        self.value = 50.0

    def __call__(self) -> float:
        return self.value


class ScriptedController(QueueController):
    name = "scripted"

    def __init__(self, queue: WorkQueue, metrics: MetricsCollector) -> None:
        super().__init__(queue, metrics=metrics)
        self.results: Dict[str, object] = {}
        self.failures: List[Tuple[str, str, int]] = []
        self.successes: List[str] = []

    def sync(self, key: str) -> Optional[float]:
        result = self.results.get(key)
        if isinstance(result, BaseException):
            raise result
        return result  # type: ignore[return-value]

    def on_failure(self, key: str, error: BaseException, attempts: int) -> None:
        self.failures.append((key, type(error).__name__, attempts))

    def on_success(self, key: str) -> None:
        self.successes.append(key)


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture()
def metrics() -> MetricsCollector:
    return MetricsCollector(CollectorRegistry())


@pytest.fixture()
def controller(clock: FixedClock, metrics: MetricsCollector) -> ScriptedController:
    queue = WorkQueue("scripted", backoff=QueueBackoff(base_delay=2.0, max_delay=60.0), clock=clock)
    return ScriptedController(queue, metrics)


def _outcomes(metrics: MetricsCollector, outcome: str) -> Optional[float]:
    return metrics.registry.get_sample_value(
        "rollouts_reconcile_total", {"controller": "scripted", "outcome": outcome}
    )


def test_success_without_requeue(controller: ScriptedController, metrics: MetricsCollector) -> None:
    controller.queue.add("default/web")

    assert controller.process_next(timeout=0)

    assert controller.successes == ["default/web"]
    assert controller.queue.pending_delayed() == {}
    assert _outcomes(metrics, "success") == 1


def test_requested_requeue_is_scheduled(controller: ScriptedController, metrics: MetricsCollector) -> None:
    controller.results["default/web"] = 15.0
    controller.queue.add("default/web")

    controller.process_next(timeout=0)

    assert controller.queue.pending_delayed() == {"default/web": pytest.approx(15.0)}
    assert _outcomes(metrics, "requeued") == 1


def test_transient_failures_back_off(controller: ScriptedController, clock: FixedClock, metrics: MetricsCollector) -> None:
    controller.results["default/web"] = ConflictError("stale")
    controller.queue.add("default/web")

    controller.process_next(timeout=0)
    assert controller.queue.pending_delayed() == {"default/web": pytest.approx(2.0)}

    clock.value += 2.0
    controller.process_next(timeout=0)
    assert controller.queue.pending_delayed() == {"default/web": pytest.approx(4.0)}

    assert controller.failures == [("default/web", "ConflictError", 1), ("default/web", "ConflictError", 2)]
    assert _outcomes(metrics, "retry") == 2

    controller.results["default/web"] = None
    clock.value += 4.0
    controller.process_next(timeout=0)
    assert controller.queue.num_requeues("default/web") == 0


def test_permanent_failures_are_dropped(controller: ScriptedController, metrics: MetricsCollector) -> None:
    controller.results["default/web"] = SpecValidationError("bad spec")
    controller.queue.add("default/web")

    controller.process_next(timeout=0)

    assert controller.queue.pending_delayed() == {}
    assert len(controller.queue) == 0
    assert controller.failures == [("default/web", "SpecValidationError", 1)]
    assert _outcomes(metrics, "failed") == 1


def test_unexpected_errors_are_retried_and_do_not_escape(
    controller: ScriptedController, metrics: MetricsCollector
) -> None:
    controller.results["default/web"] = KeyError("boom")
    controller.queue.add("default/web")

    assert controller.process_next(timeout=0)

    assert controller.queue.pending_delayed() == {"default/web": pytest.approx(2.0)}
    assert controller.failures == [("default/web", "KeyError", 1)]
    assert _outcomes(metrics, "error") == 1


def test_process_next_reports_idle_and_shutdown(controller: ScriptedController) -> None:
    assert not controller.process_next(timeout=0)
    controller.queue.shut_down()
    assert not controller.process_next(timeout=0)


def test_workers_start_once_and_stop(controller: ScriptedController) -> None:
    controller.start()
    with pytest.raises(RuntimeError, match="already running"):
        controller.start()
    controller.stop(timeout=2.0)
    assert controller.queue.shutting_down
