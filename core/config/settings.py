# SPDX-License-Identifier: MIT
"""Process configuration for the rollout controller.

Values resolve in priority order: explicit keyword arguments, ``ROLLOUTS_*``
environment variables (nested fields use ``__``), ``.env`` and finally the
YAML file named by ``config_file``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping, Sequence

import yaml
from pydantic import AliasChoices, BaseModel, Field, PositiveFloat, PositiveInt, ValidationError
from pydantic.fields import FieldInfo
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    SettingsError,
)

from core.utils.retry import RetryPolicy

__all__ = [
    "ConfigError",
    "ControllerSettings",
    "QueueBackoff",
    "YamlSettingsSource",
    "load_settings",
    "parse_cli_overrides",
]


class ConfigError(ValueError):
    """Raised when the controller configuration cannot be loaded."""


class QueueBackoff(BaseModel):
    """Per-key exponential backoff used by rate-limited requeues."""

    base_delay: PositiveFloat = Field(0.005, description="Delay applied to the first retry, in seconds.")
    max_delay: PositiveFloat = Field(300.0, description="Upper bound for a single retry delay, in seconds.")


class YamlSettingsSource(PydanticBaseSettingsSource):
    """Lowest-priority settings source that loads values from a YAML file."""

    def __init__(
        self,
        settings_cls: type[BaseSettings],
        init_source: PydanticBaseSettingsSource | None = None,
        env_source: PydanticBaseSettingsSource | None = None,
    ) -> None:
        super().__init__(settings_cls)
        self._init_source = init_source
        self._env_source = env_source

    def __call__(self) -> dict[str, Any]:
        config_path = self._resolve_path()
        if config_path is None:
            return {}
        try:
            text = config_path.read_text(encoding="utf8")
        except FileNotFoundError:
            return {}
        try:
            payload = yaml.safe_load(text) or {}
        except yaml.YAMLError as exc:
            raise SettingsError(f"failed to parse YAML configuration at {config_path}: {exc}") from exc
        if not isinstance(payload, Mapping):
            raise SettingsError(f"configuration file {config_path} must define a mapping")
        return dict(payload)

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return None, field_name, False

    def _resolve_path(self) -> Path | None:
        for source in (self._init_source, self._env_source):
            if source is None:
                continue
            data = source()
            candidate = data.get("config_file") or data.get("config")
            if candidate:
                return Path(candidate).expanduser()
        return None


class ControllerSettings(BaseSettings):
    """Runtime configuration for the controller process."""

    model_config = SettingsConfigDict(
        env_prefix="ROLLOUTS_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf8",
        extra="ignore",
    )

    config_file: Path | None = Field(
        default=None,
        description="Optional YAML configuration file.",
        validation_alias=AliasChoices("config_file", "config"),
    )
    namespace: str | None = Field(
        default=None,
        description="Restrict the controller to one namespace; all namespaces when unset.",
    )
    kubeconfig: Path | None = Field(default=None, description="Kubeconfig path used outside the cluster.")
    in_cluster: bool = Field(False, description="Load the service-account configuration from the pod.")

    rollout_workers: PositiveInt = Field(4, description="Concurrent Rollout reconcile workers.")
    analysis_workers: PositiveInt = Field(4, description="Concurrent AnalysisRun reconcile workers.")
    resync_period_seconds: PositiveFloat = Field(
        900.0, description="Interval at which every cached object is re-enqueued."
    )

    api_timeout_seconds: PositiveFloat = Field(30.0, description="Timeout for object-store calls.")
    router_timeout_seconds: PositiveFloat = Field(15.0, description="Timeout for traffic router calls.")
    router_workers: PositiveInt = Field(4, description="Threads reserved for each traffic router provider.")
    measurement_timeout_seconds: PositiveFloat = Field(
        30.0, description="Timeout for a single metric provider call."
    )
    measurement_workers: PositiveInt = Field(
        8, description="Threads reserved for each metric provider type; a hung backend only exhausts its own."
    )
    measurement_busy_retry_seconds: PositiveFloat = Field(
        1.0, description="Delay before retrying a measurement whose provider had no free thread."
    )
    default_measurement_interval_seconds: PositiveFloat = Field(
        30.0,
        description="Spacing between measurements of a metric that declares no interval.",
    )
    weight_verify_interval_seconds: PositiveFloat = Field(
        5.0, description="Requeue delay while waiting for the router to confirm a weight."
    )
    condition_after_failures: PositiveInt = Field(
        5,
        description="Consecutive transient failures before a ReconcileError condition is surfaced.",
    )

    queue_backoff: QueueBackoff = Field(default_factory=QueueBackoff)
    watch_retry: RetryPolicy = Field(default_factory=RetryPolicy)

    metrics_port: int = Field(9090, ge=0, le=65535, description="Prometheus exporter port; 0 disables it.")
    health_port: int = Field(8085, ge=0, le=65535, description="Health endpoint port; 0 disables it.")
    log_level: str = Field("INFO", description="Root logging level.")
    log_json: bool = Field(True, description="Emit JSON structured logs.")

    metric_providers: dict[str, str] = Field(
        default_factory=dict,
        description="Provider type name to ``module:attribute`` factory entrypoint.",
    )
    traffic_routers: dict[str, str] = Field(
        default_factory=dict,
        description="Router type name to ``module:attribute`` factory entrypoint.",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        yaml_source = YamlSettingsSource(settings_cls, init_settings, env_settings)
        return (init_settings, env_settings, dotenv_settings, yaml_source, file_secret_settings)


def parse_cli_overrides(pairs: Sequence[str] | None) -> dict[str, Any]:
    """Convert CLI ``key=value`` pairs into nested dictionaries."""

    overrides: dict[str, Any] = {}
    if not pairs:
        return overrides

    for raw in pairs:
        if "=" not in raw:
            raise ConfigError(f"Invalid override '{raw}', expected format key=value")
        key, value = raw.split("=", 1)
        parts = [segment.strip() for segment in key.split(".") if segment.strip()]
        if not parts:
            raise ConfigError("Override keys cannot be empty")
        target = overrides
        for segment in parts[:-1]:
            target = target.setdefault(segment, {})
            if not isinstance(target, dict):
                raise ConfigError(f"Override path '{key}' collides with a scalar value")
        try:
            target[parts[-1]] = yaml.safe_load(value)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Unable to parse override '{raw}': {exc}") from exc

    return overrides


def load_settings(
    path: str | Path | None = None,
    *,
    overrides: Mapping[str, Any] | None = None,
) -> ControllerSettings:
    """Build :class:`ControllerSettings`, translating validation failures."""

    kwargs: dict[str, Any] = dict(overrides or {})
    if path is not None:
        kwargs["config_file"] = Path(path)
    try:
        return ControllerSettings(**kwargs)
    except (ValidationError, SettingsError) as exc:
        raise ConfigError(str(exc)) from exc
