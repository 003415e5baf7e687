# SPDX-License-Identifier: MIT
from __future__ import annotations

import threading
import time
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Iterator

import pytest

from core.errors import BulkheadFullError, TransientError
from core.utils.bulkhead import Bulkhead, BulkheadRegistry


@pytest.fixture()
def release() -> Iterator[threading.Event]:
    event = threading.Event()
    yield event
    event.set()


def test_rejects_non_positive_size() -> None:
    with pytest.raises(ValueError):
        Bulkhead("prometheus", 0)


def test_call_returns_result_and_frees_slot() -> None:
    bulkhead = Bulkhead("prometheus", 2)
    try:
        assert bulkhead.submit(lambda a, b: a + b, 2, 3).result(timeout=1.0) == 5
        deadline = time.monotonic() + 1.0
        while bulkhead.active_count and time.monotonic() < deadline:
            time.sleep(0.01)
        assert bulkhead.available_slots == 2
    finally:
        bulkhead.shutdown()


def test_errors_raised_by_the_call_propagate() -> None:
    def boom() -> None:
        raise ValueError("query failed")

    bulkhead = Bulkhead("prometheus", 1)
    try:
        with pytest.raises(ValueError, match="query failed"):
            bulkhead.submit(boom).result(timeout=1.0)
    finally:
        bulkhead.shutdown()


def test_saturated_bulkhead_rejects(release: threading.Event) -> None:
    bulkhead = Bulkhead("job", 1)
    try:
        hung = bulkhead.submit(release.wait, 5)
        with pytest.raises(FutureTimeoutError):
            hung.result(timeout=0.05)

        with pytest.raises(BulkheadFullError) as excinfo:
            bulkhead.submit(lambda: 1)
        assert isinstance(excinfo.value, TransientError)
        assert excinfo.value.detail == {"bulkhead": "job"}
        assert bulkhead.total_rejected == 1
        assert bulkhead.active_count == 1
    finally:
        release.set()
        bulkhead.shutdown()


def test_timeout_counts_from_call_start() -> None:
    started = threading.Event()

    def slow() -> str:
        started.set()
        time.sleep(0.1)
        return "done"

    bulkhead = Bulkhead("web", 2)
    try:
        call = bulkhead.submit(slow)
        started.wait(1.0)
        time.sleep(0.05)
        # Most of the budget has passed on the wall clock; the call still fits.
        assert call.started
        assert call.result(timeout=0.5) == "done"
    finally:
        bulkhead.shutdown()


def test_registry_isolates_dependencies(release: threading.Event) -> None:
    registry = BulkheadRegistry(1, thread_prefix="measure")
    try:
        registry.submit("job", release.wait, 5)
        with pytest.raises(BulkheadFullError):
            registry.submit("job", lambda: 1)
        assert registry.submit("prometheus", lambda: "ok").result(timeout=1.0) == "ok"
        assert registry.get("job") is registry.get("job")
    finally:
        release.set()
        registry.shutdown()
