# SPDX-License-Identifier: MIT
from __future__ import annotations

from typing import List

from hypothesis import given
from hypothesis import strategies as st

from controller.queue import WorkQueue

keys = st.lists(st.sampled_from(["default/a", "default/b", "default/c", "team/a"]), max_size=20)


@given(keys)
def test_each_key_is_handed_out_once(added: List[str]) -> None:
    queue = WorkQueue("prop", clock=lambda: 0.0)
    for key in added:
        queue.add(key)

    handed_out = []
    while (key := queue.get(timeout=0)) is not None:
        handed_out.append(key)

    assert handed_out == list(dict.fromkeys(added))


@given(keys, keys)
def test_keys_added_while_processing_come_back_once(first: List[str], during: List[str]) -> None:
    queue = WorkQueue("prop", clock=lambda: 0.0)
    for key in first:
        queue.add(key)
    in_flight = []
    while (key := queue.get(timeout=0)) is not None:
        in_flight.append(key)
    for key in during:
        queue.add(key)
    for key in in_flight:
        queue.done(key)

    second = []
    while (key := queue.get(timeout=0)) is not None:
        second.append(key)

    assert sorted(second) == sorted(set(during))
