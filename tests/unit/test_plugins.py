# SPDX-License-Identifier: MIT
from __future__ import annotations

import pytest

from core.errors import ConfigurationError, PluginNotFoundError
from core.utils.plugins import PluginRegistry, load_entrypoint


def test_register_and_create() -> None:
    registry: PluginRegistry[dict] = PluginRegistry("widget")
    registry.register("plain", lambda **kwargs: dict(kwargs))

    assert registry.create("plain", size=3) == {"size": 3}
    assert "plain" in registry
    assert registry.names() == ["plain"]


def test_duplicate_registration_requires_replace() -> None:
    registry: PluginRegistry[int] = PluginRegistry("widget")
    registry.register("one", lambda: 1)

    with pytest.raises(ValueError, match="already registered"):
        registry.register("one", lambda: 2)

    registry.register("one", lambda: 2, replace=True)
    assert registry.create("one") == 2


def test_missing_plugin_is_reported_with_detail() -> None:
    registry: PluginRegistry[int] = PluginRegistry("traffic router")

    with pytest.raises(PluginNotFoundError) as excinfo:
        registry.factory("istio")

    assert str(excinfo.value) == "no traffic router registered as 'istio'"
    assert excinfo.value.detail == {"kind": "traffic router", "name": "istio"}


def test_unregister_is_idempotent() -> None:
    registry: PluginRegistry[int] = PluginRegistry("widget")
    registry.register("one", lambda: 1)
    registry.unregister("one")
    registry.unregister("one")
    assert "one" not in registry


def test_load_entrypoints_registers_callables() -> None:
    registry: PluginRegistry[object] = PluginRegistry("widget")
    registry.load_entrypoints({"ordered": "collections:OrderedDict", "joiner": "os.path:join"})

    assert registry.names() == ["joiner", "ordered"]
    assert registry.create("joiner", "a", "b").endswith("b")


@pytest.mark.parametrize(
    ("entrypoint", "message"),
    [
        ("collections", "form"),
        (":OrderedDict", "form"),
        ("definitely_not_a_module_xyz:thing", "cannot be imported"),
        ("collections:Missing", "is invalid"),
        ("math:pi", "does not reference a callable"),
    ],
)
def test_bad_entrypoints(entrypoint: str, message: str) -> None:
    with pytest.raises(ConfigurationError, match=message):
        load_entrypoint(entrypoint)
