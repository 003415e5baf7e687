# SPDX-License-Identifier: MIT
"""List/watch feeds that keep the :class:`~controller.cache.ObjectCache` current."""

from __future__ import annotations

import threading
from typing import List, Optional

from controller.cache import ObjectCache
from controller.client import Kind, ObjectStore
from core.errors import ControllerError, TransientError
from core.utils.logging import get_logger
from core.utils.retry import RetryPolicy, run_with_retry

from .kube import WatchExpiredError

__all__ = ["Informer", "InformerSet"]

logger = get_logger(__name__)


class Informer:
    """Mirror one kind into the cache: list, then watch from the list's version.

    Lists are retried with the configured policy. An expired watch triggers a
    fresh list; any other watch failure waits ``retry.initial_backoff`` and
    resumes from the last seen version.
    """

    def __init__(
        self,
        store: ObjectStore,
        cache: ObjectCache,
        kind: Kind,
        *,
        namespace: Optional[str] = None,
        retry: RetryPolicy | None = None,
        watch_timeout_seconds: int = 300,
    ) -> None:
        self.store = store
        self.cache = cache
        self.kind = kind
        self.namespace = namespace
        self.retry = retry or RetryPolicy()
        self.watch_timeout_seconds = watch_timeout_seconds
        self._resource_version: Optional[str] = None

    def relist(self) -> None:
        items, resource_version = run_with_retry(
            self.retry,
            logger.logger,
            lambda: self.store.list(self.kind, self.namespace),
            description=f"list {self.kind.value}",
        )
        self.cache.replace(self.kind, items)
        self._resource_version = resource_version
        logger.info("Listed objects", kind=self.kind.value, count=len(items), resource_version=resource_version)

    def watch_once(self) -> None:
        """Consume one watch stream until it times out or fails."""

        stream = self.store.watch(
            self.kind,
            self.namespace,
            resource_version=self._resource_version,
            timeout_seconds=self.watch_timeout_seconds,
        )
        for event in stream:
            version = event.object.metadata.resource_version
            if version:
                self._resource_version = version
            self.cache.apply_event(self.kind, event.type, event.object)

    def run(self, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                if self._resource_version is None:
                    self.relist()
                self.watch_once()
            except WatchExpiredError:
                logger.warning("Watch expired, re-listing", kind=self.kind.value)
                self._resource_version = None
            except TransientError as exc:
                logger.warning("Watch interrupted", kind=self.kind.value, error=str(exc))
                stop.wait(self.retry.initial_backoff)
            except ControllerError:
                logger.exception("Informer failed", kind=self.kind.value)
                self._resource_version = None
                stop.wait(self.retry.max_backoff)


class InformerSet:
    """One informer thread per kind the controllers read."""

    def __init__(
        self,
        store: ObjectStore,
        cache: ObjectCache,
        *,
        namespace: Optional[str] = None,
        retry: RetryPolicy | None = None,
        kinds: tuple[Kind, ...] = tuple(Kind),
    ) -> None:
        self.informers = [
            Informer(store, cache, kind, namespace=namespace, retry=retry) for kind in kinds
        ]
        self._threads: List[threading.Thread] = []

    def sync(self) -> None:
        """Perform the initial list of every kind synchronously."""

        for informer in self.informers:
            informer.relist()

    def start(self, stop: threading.Event) -> None:
        for informer in self.informers:
            thread = threading.Thread(
                target=informer.run,
                args=(stop,),
                name=f"informer-{informer.kind.value.lower()}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def join(self, timeout: Optional[float] = None) -> None:
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
