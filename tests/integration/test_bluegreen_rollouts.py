# SPDX-License-Identifier: MIT
from __future__ import annotations

from typing import Iterator

import pytest

from domain.meta import POD_TEMPLATE_HASH_LABEL
from domain.rollout import PauseReason, RolloutPhase
from rollout import actions
from tests.helpers import Harness, blue_green_strategy, make_analysis_template, make_rollout, template_hash

H1 = template_hash("web:1")
H2 = template_hash("web:2")


@pytest.fixture()
def harness() -> Iterator[Harness]:
    instance = Harness()
    yield instance
    instance.close()


def _selector(harness: Harness, service: str) -> str:
    return harness.service(service).spec.selector[POD_TEMPLATE_HASH_LABEL]


def test_manual_promotion(harness: Harness) -> None:
    strategy = blue_green_strategy(autoPromotionEnabled=False)
    harness.seed(make_rollout(strategy))
    assert harness.run().status.phase == RolloutPhase.HEALTHY
    assert _selector(harness, "web-active") == H1

    harness.update_rollout(make_rollout(strategy, image="web:2"))
    paused = harness.run()

    assert paused.status.phase == RolloutPhase.PAUSED
    assert [pause.reason for pause in paused.status.pause_conditions] == [PauseReason.BLUE_GREEN_PAUSE]
    assert _selector(harness, "web-active") == H1
    assert _selector(harness, "web-preview") == H2
    assert harness.replica_set("web:2").spec.replicas == 4

    harness.write_status(actions.promote(paused))
    promoted = harness.run()

    assert promoted.status.phase == RolloutPhase.HEALTHY
    assert promoted.status.stable_rs == f"web-{H2}"
    assert _selector(harness, "web-active") == H2
    assert harness.replica_set("web:1").spec.replicas == 4

    harness.advance(31)
    assert harness.replica_set("web:1").spec.replicas == 0


def test_pre_promotion_analysis_failure_keeps_active_on_stable(harness: Harness) -> None:
    strategy = blue_green_strategy(prePromotionAnalysis={"templates": [{"templateName": "success-rate"}]})
    harness.seed(make_rollout(strategy), make_analysis_template())
    harness.run()
    harness.provider.values["success-rate"] = [0.1]

    harness.update_rollout(make_rollout(strategy, image="web:2"))
    aborted = harness.run()

    assert aborted.status.abort
    assert aborted.status.phase == RolloutPhase.DEGRADED
    assert _selector(harness, "web-active") == H1
    assert harness.replica_set("web:2").spec.replicas == 0


def test_post_promotion_analysis_success_completes(harness: Harness) -> None:
    strategy = blue_green_strategy(postPromotionAnalysis={"templates": [{"templateName": "success-rate"}]})
    harness.seed(make_rollout(strategy), make_analysis_template())
    harness.run()

    harness.update_rollout(make_rollout(strategy, image="web:2"))
    rollout = harness.run()

    assert rollout.status.phase == RolloutPhase.HEALTHY
    assert rollout.status.stable_rs == f"web-{H2}"
    assert [run.name for run in harness.runs()] == [f"web-{H2}-2-post"]
    assert harness.runs()[0].status.phase.value == "Successful"
