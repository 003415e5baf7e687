# SPDX-License-Identifier: MIT
"""Exception taxonomy shared by controllers, providers and routers.

Transient errors are requeued with backoff; everything else is converted into
status conditions by the owning controller.
"""

from __future__ import annotations

from typing import Any, Mapping

__all__ = [
    "AlreadyExistsError",
    "BulkheadFullError",
    "ConfigurationError",
    "ConflictError",
    "ControllerError",
    "InvariantViolationError",
    "NotFoundError",
    "PluginNotFoundError",
    "ProviderError",
    "RouterError",
    "SpecValidationError",
    "TimeoutExceededError",
    "TransientError",
]


class ControllerError(RuntimeError):
    """Base class for controller failures."""

    def __init__(self, message: str, *, detail: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.detail = dict(detail or {})


class TransientError(ControllerError):
    """Failure expected to clear on retry (API hiccups, timeouts, stale reads)."""


class ConflictError(TransientError):
    """Optimistic-concurrency conflict: the object changed since it was read."""


class TimeoutExceededError(TransientError):
    """An external call did not finish inside its time budget."""


class BulkheadFullError(TransientError):
    """Every worker reserved for a dependency is busy; try again later."""


class NotFoundError(ControllerError):
    """The addressed object does not exist in the object store."""


class AlreadyExistsError(ControllerError):
    """Create was issued for an object that already exists."""


class RouterError(TransientError):
    """The traffic router rejected or failed to apply a routing change."""


class ProviderError(ControllerError):
    """A metric provider failed to execute a measurement."""


class SpecValidationError(ControllerError):
    """User supplied spec is malformed; retrying will not help."""

    def __init__(self, errors: list[str] | str) -> None:
        self.errors = [errors] if isinstance(errors, str) else list(errors)
        super().__init__("; ".join(self.errors))


class InvariantViolationError(ControllerError):
    """Internal invariant broken; aborts the current reconcile attempt only."""


class PluginNotFoundError(ControllerError):
    """No metric provider or traffic router is registered under the requested name."""


class ConfigurationError(ControllerError):
    """Process configuration (settings, plugin entrypoints) is unusable."""
