# SPDX-License-Identifier: MIT
"""Traffic router interface used to shift load between stable and canary.

Integrations for a particular ingress or mesh implement :class:`TrafficRouter`
and register a factory under a provider name. The factory receives the
Rollout and the free-form ``trafficRouting.config`` mapping.
"""

from __future__ import annotations

from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, TypeVar, runtime_checkable

from core.errors import BulkheadFullError, RouterError, TimeoutExceededError
from core.utils.bulkhead import Bulkhead, BulkheadRegistry
from core.utils.fingerprint import fingerprint_payload
from core.utils.logging import get_logger
from core.utils.plugins import PluginRegistry
from domain.rollout import Rollout, SetHeaderRoute, SetMirrorRoute

__all__ = [
    "GuardedRouter",
    "RouterFactory",
    "RouterRegistry",
    "TrafficRouter",
    "default_router_registry",
]

logger = get_logger(__name__)

T = TypeVar("T")


@runtime_checkable
class TrafficRouter(Protocol):
    """Routing primitive for canary traffic management.

    Every operation must be idempotent: the reconciler re-issues the same
    desired state on replays and expects no side effects beyond the first call.
    Failures are reported by raising; partial state must not leak.
    """

    def set_weight(self, weight: int) -> None:
        """Route ``weight`` percent (0-100) of traffic to the canary."""

    def get_weight(self) -> Optional[int]:
        """Return the canary weight the data plane currently applies.

        ``None`` means the router cannot observe its own state; the controller
        then trusts the last weight it recorded.
        """

    def set_header_route(self, route: SetHeaderRoute) -> None:
        """Send requests matching ``route.match`` to the canary."""

    def set_mirror_route(self, route: SetMirrorRoute) -> None:
        """Mirror matching requests to the canary."""

    def remove_managed_routes(self) -> None:
        """Drop every header and mirror route previously created."""


RouterFactory = Callable[[Rollout, Mapping[str, Any]], TrafficRouter]


class GuardedRouter:
    """Bounds router calls with a timeout and normalises their failures.

    Calls run on the bulkhead of the router provider, and the timeout counts
    from the moment a call starts. A saturated bulkhead raises
    :class:`~core.errors.BulkheadFullError`. Otherwise the guard raises
    :class:`~core.errors.TimeoutExceededError` when a call exceeds the budget
    and :class:`~core.errors.RouterError` for any other failure. The controller
    treats all of them as transient.
    """

    def __init__(self, router: TrafficRouter, *, name: str, timeout: float, bulkhead: Bulkhead) -> None:
        self._router = router
        self._name = name
        self._timeout = timeout
        self._bulkhead = bulkhead

    @property
    def name(self) -> str:
        return self._name

    def _call(self, operation: str, func: Callable[..., T], *args: Any) -> T:
        call = self._bulkhead.submit(func, *args)
        try:
            return call.result(timeout=self._timeout)
        except FutureTimeoutError as exc:
            raise TimeoutExceededError(
                f"traffic router '{self._name}' {operation} timed out after {self._timeout:g}s",
                detail={"router": self._name, "operation": operation},
            ) from exc
        except (RouterError, BulkheadFullError):
            raise
        except Exception as exc:  # router code is third-party
            raise RouterError(
                f"traffic router '{self._name}' {operation} failed: {exc}",
                detail={"router": self._name, "operation": operation},
            ) from exc

    def set_weight(self, weight: int) -> None:
        if not 0 <= weight <= 100:
            raise ValueError("weight must be between 0 and 100 inclusive")
        self._call("set_weight", self._router.set_weight, weight)

    def get_weight(self) -> Optional[int]:
        return self._call("get_weight", self._router.get_weight)

    def set_header_route(self, route: SetHeaderRoute) -> None:
        self._call("set_header_route", self._router.set_header_route, route)

    def set_mirror_route(self, route: SetMirrorRoute) -> None:
        self._call("set_mirror_route", self._router.set_mirror_route, route)

    def remove_managed_routes(self) -> None:
        self._call("remove_managed_routes", self._router.remove_managed_routes)


class RouterRegistry(PluginRegistry[TrafficRouter]):
    """Registry of router factories; one router instance is kept per Rollout."""

    def __init__(self, *, timeout: float = 15.0, max_workers: int = 4) -> None:
        super().__init__("traffic router")
        self._timeout = timeout
        self._bulkheads = BulkheadRegistry(max_workers, thread_prefix="router")
        self._routers: Dict[tuple[str, str, str], GuardedRouter] = {}

    def configure(self, *, timeout: float, max_workers: Optional[int] = None) -> None:
        """Apply settings to routers created from now on."""

        self._timeout = timeout
        if max_workers is not None:
            self._bulkheads.max_concurrent = max_workers

    def for_rollout(self, rollout: Rollout) -> Optional[GuardedRouter]:
        """Return the router for ``rollout``; ``None`` without traffic routing."""

        canary = rollout.canary
        if canary is None or canary.traffic_routing is None:
            return None
        provider = canary.traffic_routing.provider
        cache_key = (rollout.key, provider, fingerprint_payload(canary.traffic_routing.config))
        with self._lock:
            router = self._routers.get(cache_key)
            if router is None:
                instance = self.create(provider, rollout, dict(canary.traffic_routing.config))
                router = GuardedRouter(
                    instance, name=provider, timeout=self._timeout, bulkhead=self._bulkheads.get(provider)
                )
                self._routers[cache_key] = router
                logger.debug("Created traffic router", rollout=rollout.key, provider=provider)
            return router

    def forget(self, rollout_key: str) -> None:
        with self._lock:
            for cache_key in [key for key in self._routers if key[0] == rollout_key]:
                del self._routers[cache_key]

    def close(self) -> None:
        self._bulkheads.shutdown()


_DEFAULT_REGISTRY = RouterRegistry()


def default_router_registry() -> RouterRegistry:
    return _DEFAULT_REGISTRY
