# SPDX-License-Identifier: MIT
from __future__ import annotations

from typing import Any, List, Tuple

from prometheus_client import CollectorRegistry

from controller.cache import ObjectCache
from controller.client import EventType, Kind
from core.utils.metrics import MetricsCollector
from domain.meta import ObjectMeta, OwnerReference
from domain.workloads import ReplicaSet
from tests.helpers import canary_strategy, make_replica_set, make_rollout, make_service


def _versioned(obj: Any, version: str) -> Any:
    return obj.model_copy(update={"metadata": obj.metadata.model_copy(update={"resource_version": version})})


def _recorder(cache: ObjectCache, kind: Kind) -> List[Tuple[EventType, str]]:
    events: List[Tuple[EventType, str]] = []
    cache.add_handler(kind, lambda event, obj: events.append((event, obj.metadata.key)))
    return events


def test_older_resource_version_is_ignored() -> None:
    cache = ObjectCache()
    rollout = make_rollout(canary_strategy([]))
    events = _recorder(cache, Kind.ROLLOUT)

    cache.apply_event(Kind.ROLLOUT, EventType.ADDED, _versioned(rollout, "7"))
    cache.apply_event(Kind.ROLLOUT, EventType.MODIFIED, _versioned(rollout, "5"))

    assert cache.rollout("default/web").metadata.resource_version == "7"
    assert events == [(EventType.ADDED, "default/web")]


def test_event_type_follows_cache_contents() -> None:
    cache = ObjectCache()
    service = make_service("web-stable")
    events = _recorder(cache, Kind.SERVICE)

    cache.apply_event(Kind.SERVICE, EventType.MODIFIED, service)
    cache.apply_event(Kind.SERVICE, EventType.ADDED, service)
    cache.apply_event(Kind.SERVICE, EventType.DELETED, service)
    cache.apply_event(Kind.SERVICE, EventType.DELETED, service)

    assert events == [
        (EventType.ADDED, "default/web-stable"),
        (EventType.MODIFIED, "default/web-stable"),
        (EventType.DELETED, "default/web-stable"),
    ]


def test_owner_index_filters_by_uid() -> None:
    cache = ObjectCache()
    rollout = make_rollout(canary_strategy([]))
    owned = make_replica_set(rollout, "web:1", replicas=4)
    stranger = make_replica_set(rollout, "web:2", replicas=1)
    stranger = stranger.model_copy(
        update={
            "metadata": stranger.metadata.model_copy(
                update={"owner_references": [OwnerReference(kind="Rollout", name="web", uid="other-uid")]}
            )
        }
    )
    unowned = ReplicaSet(metadata=ObjectMeta(name="loose", namespace="default"))

    for replica_set in (owned, stranger, unowned):
        cache.apply_event(Kind.REPLICA_SET, EventType.ADDED, replica_set)

    assert [rs.name for rs in cache.replica_sets_for(rollout)] == [owned.name]
    assert cache.owner_key(owned) == "default/web"
    assert cache.owner_key(unowned) is None


def test_replace_emits_deletes_for_missing_objects() -> None:
    cache = ObjectCache()
    events = _recorder(cache, Kind.SERVICE)
    cache.apply_event(Kind.SERVICE, EventType.ADDED, make_service("old"))
    events.clear()

    cache.replace(Kind.SERVICE, [make_service("web-stable"), make_service("web-canary")])

    assert (EventType.DELETED, "default/old") in events
    assert (EventType.ADDED, "default/web-stable") in events
    assert sorted(cache.services_in("default")) == ["web-canary", "web-stable"]
    assert cache.services_in("other") == {}


def test_has_synced_requires_a_full_list() -> None:
    cache = ObjectCache()
    cache.apply_event(Kind.ROLLOUT, EventType.ADDED, make_rollout(canary_strategy([])))
    assert not cache.has_synced(Kind.ROLLOUT)

    cache.replace(Kind.ROLLOUT, [])
    assert cache.has_synced(Kind.ROLLOUT)
    assert not cache.has_synced()

    for kind in Kind:
        cache.replace(kind, [])
    assert cache.has_synced()


def test_failing_handler_does_not_break_dispatch() -> None:
    cache = ObjectCache()

    def broken(event: EventType, obj: Any) -> None:
        raise RuntimeError("handler bug")

    cache.add_handler(Kind.SERVICE, broken)
    events = _recorder(cache, Kind.SERVICE)
    cache.apply_event(Kind.SERVICE, EventType.ADDED, make_service("web-stable"))

    assert events == [(EventType.ADDED, "default/web-stable")]


def test_object_counts_are_exported() -> None:
    metrics = MetricsCollector(CollectorRegistry())
    cache = ObjectCache(metrics=metrics)
    cache.replace(Kind.SERVICE, [make_service("a"), make_service("b")])

    assert metrics.registry.get_sample_value("rollouts_cache_objects", {"kind": "Service"}) == 2
