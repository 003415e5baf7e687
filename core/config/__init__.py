# SPDX-License-Identifier: MIT
"""Configuration helpers for the rollout controller."""

from .settings import (
    ConfigError,
    ControllerSettings,
    QueueBackoff,
    YamlSettingsSource,
    load_settings,
    parse_cli_overrides,
)

__all__ = [
    "ConfigError",
    "ControllerSettings",
    "QueueBackoff",
    "YamlSettingsSource",
    "load_settings",
    "parse_cli_overrides",
]
