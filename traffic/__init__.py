# SPDX-License-Identifier: MIT
"""Traffic routing abstraction."""

from .router import GuardedRouter, RouterFactory, RouterRegistry, TrafficRouter, default_router_registry

__all__ = [
    "GuardedRouter",
    "RouterFactory",
    "RouterRegistry",
    "TrafficRouter",
    "default_router_registry",
]
