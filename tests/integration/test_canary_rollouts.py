# SPDX-License-Identifier: MIT
from __future__ import annotations

from typing import Any, Iterator, List

import pytest

from domain.meta import POD_TEMPLATE_HASH_LABEL, REVISION_ANNOTATION, SCALE_DOWN_DEADLINE_ANNOTATION
from domain.rollout import PauseReason, RolloutPhase
from rollout import actions
from tests.helpers import Harness, canary_strategy, make_analysis_template, make_rollout, template_hash

H1 = template_hash("web:1")
H2 = template_hash("web:2")
STEPS: List[Any] = [{"setWeight": 25}, {"pause": {}}]
ANALYSIS_STEPS: List[Any] = [{"setWeight": 25}, {"analysis": "success-rate"}]


@pytest.fixture()
def harness() -> Iterator[Harness]:
    instance = Harness()
    yield instance
    instance.close()


def _selector(harness: Harness, service: str) -> str:
    return harness.service(service).spec.selector[POD_TEMPLATE_HASH_LABEL]


def _deploy(harness: Harness, steps: List[Any], *, routing: bool = False, templates=()) -> None:
    harness.seed(make_rollout(canary_strategy(steps, routing=routing)), *templates)
    rollout = harness.run()
    assert rollout.status.phase == RolloutPhase.HEALTHY
    harness.update_rollout(make_rollout(canary_strategy(steps, routing=routing), image="web:2"))


def test_first_deploy_becomes_stable(harness: Harness) -> None:
    harness.seed(make_rollout(canary_strategy(STEPS)))

    rollout = harness.run()

    assert rollout.status.phase == RolloutPhase.HEALTHY
    assert rollout.status.stable_rs == f"web-{H1}"
    assert rollout.status.observed_generation == rollout.metadata.generation
    assert harness.replica_set("web:1").spec.replicas == 4
    assert _selector(harness, "web-stable") == H1
    assert _selector(harness, "web-canary") == H1
    assert harness.metrics.registry.get_sample_value(
        "rollouts_rollout_phase", {"namespace": "default", "name": "web", "phase": "Healthy"}
    ) == 1


def test_canary_without_router_pauses_then_promotes(harness: Harness) -> None:
    _deploy(harness, STEPS)

    paused = harness.run()
    assert paused.status.phase == RolloutPhase.PAUSED
    assert paused.status.current_step_index == 1
    assert harness.replica_set("web:1").spec.replicas == 3
    assert harness.replica_set("web:2").spec.replicas == 1
    assert harness.replica_set("web:2").metadata.annotations[REVISION_ANNOTATION] == "2"
    assert _selector(harness, "web-stable") == H1
    assert _selector(harness, "web-canary") == H2

    harness.write_status(actions.promote(paused))
    promoted = harness.run()

    assert promoted.status.phase == RolloutPhase.HEALTHY
    assert promoted.status.stable_rs == f"web-{H2}"
    assert harness.replica_set("web:2").spec.replicas == 4
    assert harness.replica_set("web:1").spec.replicas == 0
    assert _selector(harness, "web-stable") == H2


def test_routed_canary_shifts_weight_and_delays_scale_down(harness: Harness) -> None:
    _deploy(harness, STEPS, routing=True)

    paused = harness.run()
    assert paused.status.phase == RolloutPhase.PAUSED
    assert paused.status.canary.weight == 25
    assert harness.router.weights == [25]
    assert harness.replica_set("web:1").spec.replicas == 4

    harness.write_status(actions.promote(paused))
    promoted = harness.run()

    assert promoted.status.phase == RolloutPhase.HEALTHY
    assert harness.router.weights == [25, 100, 0]
    old = harness.replica_set("web:1")
    assert old.spec.replicas == 4
    assert old.metadata.annotations[SCALE_DOWN_DEADLINE_ANNOTATION] == "2024-05-01T12:00:30Z"

    harness.advance(31)
    assert harness.replica_set("web:1").spec.replicas == 0
    assert SCALE_DOWN_DEADLINE_ANNOTATION not in harness.replica_set("web:1").metadata.annotations


def test_failed_analysis_aborts_and_retry_succeeds(harness: Harness) -> None:
    harness.provider.values["success-rate"] = [0.5]
    _deploy(harness, ANALYSIS_STEPS, templates=[make_analysis_template()])

    aborted = harness.run()

    assert aborted.status.abort
    assert aborted.status.phase == RolloutPhase.DEGRADED
    assert "completed with phase Failed" in aborted.status.message
    assert harness.replica_set("web:2").spec.replicas == 0
    assert harness.replica_set("web:1").spec.replicas == 4
    assert _selector(harness, "web-canary") == H1

    harness.provider.values["success-rate"] = [0.99]
    harness.write_status(actions.retry(aborted))
    retried = harness.run()

    assert retried.status.phase == RolloutPhase.HEALTHY
    assert retried.status.stable_rs == f"web-{H2}"
    assert retried.status.abort_count == 1
    assert sorted(run.name for run in harness.runs()) == [f"web-{H2}-2-1", f"web-{H2}-2-1-a1"]


def test_inconclusive_analysis_pauses_for_a_decision(harness: Harness) -> None:
    template = make_analysis_template(
        metrics=[
            {
                "name": "success-rate",
                "provider": {"fake": {"query": "rate({{args.service}})"}},
                "successCondition": "result >= 0.95",
                "failureCondition": "result < 0.5",
            }
        ]
    )
    harness.provider.values["success-rate"] = [0.7]
    _deploy(harness, ANALYSIS_STEPS, templates=[template])

    paused = harness.run()
    assert paused.status.phase == RolloutPhase.PAUSED
    assert [pause.reason for pause in paused.status.pause_conditions] == [PauseReason.INCONCLUSIVE_ANALYSIS]

    harness.write_status(actions.promote(paused))
    assert harness.run().status.phase == RolloutPhase.HEALTHY


def test_rollback_to_previous_revision_skips_steps(harness: Harness) -> None:
    _deploy(harness, STEPS)
    harness.write_status(actions.promote(harness.run()))
    assert harness.run().status.stable_rs == f"web-{H2}"

    harness.update_rollout(make_rollout(canary_strategy(STEPS), image="web:1"))
    rolled_back = harness.run()

    assert rolled_back.status.phase == RolloutPhase.HEALTHY
    assert rolled_back.status.stable_rs == f"web-{H1}"
    assert rolled_back.status.pause_conditions == []
    assert harness.replica_set("web:1").spec.replicas == 4
    assert harness.replica_set("web:1").metadata.annotations[REVISION_ANNOTATION] == "3"
    assert harness.replica_set("web:2").spec.replicas == 0


def test_user_abort_returns_to_stable(harness: Harness) -> None:
    _deploy(harness, STEPS, routing=True)
    paused = harness.run()

    harness.write_status(actions.abort(paused))
    aborted = harness.run()

    assert aborted.status.phase == RolloutPhase.DEGRADED
    assert aborted.status.message == "rollout aborted by user"
    assert harness.router.weights == [25, 0]
    assert harness.replica_set("web:2").spec.replicas == 0


def test_progress_deadline_marks_rollout_degraded() -> None:
    harness = Harness(auto_ready=False)
    try:
        harness.seed(make_rollout(canary_strategy(STEPS)))
        waiting = harness.run()
        assert waiting.status.phase == RolloutPhase.PROGRESSING

        stalled = harness.advance(601)
        assert stalled.status.phase == RolloutPhase.DEGRADED
        assert stalled.status.message == f"rollout revision {H1} made no progress for 600s"

        harness.store.set_replica_set_status("default", f"web-{H1}", available=4)
        assert harness.run().status.phase == RolloutPhase.HEALTHY
    finally:
        harness.close()


def test_spec_paused_freezes_progress(harness: Harness) -> None:
    _deploy(harness, STEPS)
    harness.update_rollout(make_rollout(canary_strategy(STEPS), image="web:2", paused=True))

    rollout = harness.run()

    assert rollout.status.phase == RolloutPhase.PAUSED
    assert rollout.status.message == "manually paused"
    assert rollout.status.current_step_index == 0


def test_weight_steps_with_timed_pause_and_analysis(harness: Harness) -> None:
    steps: List[Any] = [
        {"setWeight": 20},
        {"pause": {"duration": "30s"}},
        {"setWeight": 50},
        {"analysis": "success-rate"},
        {"setWeight": 100},
    ]
    harness.provider.values["success-rate"] = [0.99]
    _deploy(harness, steps, routing=True, templates=[make_analysis_template()])

    paused = harness.run()
    assert paused.status.phase == RolloutPhase.PAUSED
    assert paused.status.current_step_index == 1
    assert harness.router.weights == [20]

    harness.advance(15)
    assert harness.rollout().status.current_step_index == 1

    promoted = harness.advance(16)

    assert promoted.status.phase == RolloutPhase.HEALTHY
    assert promoted.status.stable_rs == f"web-{H2}"
    assert harness.router.weights[:3] == [20, 50, 100]
    (run,) = harness.runs()
    assert run.name == f"web-{H2}-2-3"
    assert run.phase.value == "Successful"
