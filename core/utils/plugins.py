# SPDX-License-Identifier: MIT
"""Name-to-factory registries for pluggable integrations.

Metric providers and traffic routers ship as separate distributions; the
controller only knows them by type name. Factories are registered in code or
loaded from ``module:attribute`` entrypoints listed in configuration.
"""

from __future__ import annotations

import importlib
from threading import RLock
from typing import Any, Callable, Dict, Generic, Iterable, Mapping, TypeVar

from core.errors import ConfigurationError, PluginNotFoundError

__all__ = ["PluginRegistry", "load_entrypoint"]

T = TypeVar("T")


def load_entrypoint(entrypoint: str) -> Callable[..., Any]:
    """Resolve ``package.module:attr.path`` to a callable."""

    module_name, _, attr_path = entrypoint.partition(":")
    if not module_name or not attr_path:
        raise ConfigurationError(f"Entrypoint '{entrypoint}' must be in '<module>:<callable>' form")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(f"Entrypoint '{entrypoint}' cannot be imported: {exc}") from exc
    target: Any = module
    for part in attr_path.split("."):
        if not hasattr(target, part):
            raise ConfigurationError(f"Entrypoint '{entrypoint}' is invalid")
        target = getattr(target, part)
    if not callable(target):
        raise ConfigurationError(f"Entrypoint '{entrypoint}' does not reference a callable")
    return target


class PluginRegistry(Generic[T]):
    """Thread-safe mapping of type names to factories producing ``T``."""

    def __init__(self, kind: str) -> None:
        self._kind = kind
        self._factories: Dict[str, Callable[..., T]] = {}
        self._lock = RLock()

    def register(self, name: str, factory: Callable[..., T], *, replace: bool = False) -> None:
        with self._lock:
            if name in self._factories and not replace:
                raise ValueError(f"{self._kind} '{name}' is already registered")
            self._factories[name] = factory

    def unregister(self, name: str) -> None:
        with self._lock:
            self._factories.pop(name, None)

    def factory(self, name: str) -> Callable[..., T]:
        with self._lock:
            try:
                return self._factories[name]
            except KeyError:
                raise PluginNotFoundError(
                    f"no {self._kind} registered as '{name}'",
                    detail={"kind": self._kind, "name": name},
                ) from None

    def create(self, name: str, *args: Any, **kwargs: Any) -> T:
        return self.factory(name)(*args, **kwargs)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._factories

    def names(self) -> Iterable[str]:
        with self._lock:
            return sorted(self._factories)

    def load_entrypoints(self, entrypoints: Mapping[str, str]) -> None:
        """Register every ``name -> module:attribute`` pair, replacing existing names."""

        for name, entrypoint in entrypoints.items():
            self.register(name, load_entrypoint(entrypoint), replace=True)
