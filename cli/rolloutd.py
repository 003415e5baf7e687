# SPDX-License-Identifier: MIT
"""``rolloutd`` command line: run the controller, validate and dry-run manifests."""

from __future__ import annotations

import json
import signal
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Sequence, Tuple

import click
import yaml
from pydantic import ValidationError

from controller.client import RESOURCE_MODELS, Kind, ObjectStore
from core.config.settings import ConfigError as SettingsConfigError
from core.config.settings import ControllerSettings, load_settings, parse_cli_overrides
from core.errors import ControllerError
from core.utils.logging import configure_logging, get_logger
from core.utils.metrics import start_metrics_server
from domain.analysis import AnalysisTemplate
from domain.rollout import Rollout
from rollout import actions
from rollout.mutations import describe
from rollout.reconciler import reconcile
from rollout.snapshot import RolloutSnapshot, TrafficObservation
from rollout.validation import validate_rollout

logger = get_logger(__name__)


class CLIError(click.ClickException):
    """Base class for typed CLI failures with deterministic exit codes."""

    exit_code = 1


class ConfigError(CLIError):
    exit_code = 2


class ManifestError(CLIError):
    exit_code = 3


class InvalidRolloutError(CLIError):
    exit_code = 4


@contextmanager
def step_logger(command: str, name: str) -> Iterator[None]:
    """Echo deterministic start/stop lines around a step."""

    click.echo(f"[{command}] > {name}", err=True)
    start = time.perf_counter()
    try:
        yield
    except Exception:
        click.echo(f"[{command}] x {name} ({time.perf_counter() - start:.2f}s)", err=True)
        raise
    click.echo(f"[{command}] ok {name} ({time.perf_counter() - start:.2f}s)", err=True)


Manifests = Dict[Kind, List[Any]]


def load_manifests(paths: Sequence[Path]) -> Manifests:
    """Parse multi-document YAML files into domain objects grouped by kind."""

    manifests: Manifests = {kind: [] for kind in Kind}
    for path in paths:
        try:
            documents = list(yaml.safe_load_all(path.read_text(encoding="utf-8")))
        except (OSError, yaml.YAMLError) as exc:
            raise ManifestError(f"{path}: {exc}") from exc
        for index, document in enumerate(documents):
            if not document:
                continue
            if not isinstance(document, dict):
                raise ManifestError(f"{path}[{index}]: expected a mapping")
            try:
                kind = Kind(document.get("kind"))
            except ValueError:
                raise ManifestError(f"{path}[{index}]: unsupported kind {document.get('kind')!r}") from None
            try:
                manifests[kind].append(RESOURCE_MODELS[kind].model_validate(document))
            except ValidationError as exc:
                raise ManifestError(f"{path}[{index}] {kind.value}: {exc}") from exc
    return manifests


def _templates_for(manifests: Manifests, namespace: str) -> Dict[str, AnalysisTemplate]:
    return {
        template.metadata.name: template
        for template in manifests[Kind.ANALYSIS_TEMPLATE]
        if template.metadata.namespace == namespace
    }


def _emit(payload: Any, output_format: str) -> None:
    if output_format == "json":
        click.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))
    else:
        click.echo(yaml.safe_dump(payload, sort_keys=False).rstrip())


def _parse_now(value: str | None) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise click.BadParameter(f"invalid timestamp {value!r}") from exc
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _settings(ctx: click.Context) -> ControllerSettings:
    settings = ctx.obj.get("settings")
    if settings is None:
        try:
            settings = load_settings(ctx.obj["config"], overrides=parse_cli_overrides(ctx.obj["overrides"]))
        except SettingsConfigError as exc:
            raise ConfigError(str(exc)) from exc
        ctx.obj["settings"] = settings
    return settings


def _cluster_store(settings: ControllerSettings) -> ObjectStore:
    from interfaces.kube import KubernetesObjectStore, load_api_client

    api_client = load_api_client(kubeconfig=settings.kubeconfig, in_cluster=settings.in_cluster)
    return KubernetesObjectStore(api_client, timeout=settings.api_timeout_seconds)


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML configuration file.",
)
@click.option("--set", "overrides", multiple=True, metavar="KEY=VALUE", help="Override a setting.")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, overrides: Tuple[str, ...]) -> None:
    """Progressive-delivery controller for canary and blue-green Rollouts."""

    ctx.ensure_object(dict)
    ctx.obj["config"] = config_path
    ctx.obj["overrides"] = list(overrides)


@cli.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Run the controller against the cluster until SIGTERM or SIGINT."""

    from controller.manager import ControllerManager
    from observability.health import HealthServer

    settings = _settings(ctx)
    configure_logging(settings.log_level, use_json=settings.log_json)
    store = _cluster_store(settings)
    try:
        manager = ControllerManager(settings, store)
    except ControllerError as exc:
        raise ConfigError(str(exc)) from exc

    stop = threading.Event()

    def _handle_signal(signum: int, _frame: Any) -> None:
        logger.info("Received signal", signal=signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    if settings.metrics_port:
        start_metrics_server(settings.metrics_port)
    health = HealthServer(port=settings.health_port) if settings.health_port else None
    if health is not None:
        health.add_check("cache", lambda: manager.ready)
        health.start()
    try:
        manager.start()
        manager.wait(stop)
    finally:
        if health is not None:
            health.set_live(False)
            health.shutdown()


@cli.command()
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--output", "output_format", type=click.Choice(["text", "json"]), default="text", show_default=True)
def validate(files: Tuple[Path, ...], output_format: str) -> None:
    """Check Rollout manifests and the AnalysisTemplates they reference."""

    manifests = load_manifests(files)
    if not manifests[Kind.ROLLOUT]:
        raise ManifestError("no Rollout found in the given files")
    report: Dict[str, List[str]] = {}
    for rollout in manifests[Kind.ROLLOUT]:
        report[rollout.key] = validate_rollout(rollout, _templates_for(manifests, rollout.namespace))
    if output_format == "json":
        _emit(report, "json")
    else:
        for key, errors in report.items():
            if not errors:
                click.echo(f"{key}: ok")
            for error in errors:
                click.echo(f"{key}: {error}")
    failed = sorted(key for key, errors in report.items() if errors)
    if failed:
        raise InvalidRolloutError(f"invalid rollouts: {', '.join(failed)}")


def _snapshot(manifests: Manifests, rollout: Rollout, now: datetime, weight: int | None) -> RolloutSnapshot:
    def owned(kind: Kind) -> List[Any]:
        return [
            obj
            for obj in manifests[kind]
            if obj.metadata.namespace == rollout.namespace
            and obj.metadata.is_owned_by("Rollout", rollout.name)
        ]

    return RolloutSnapshot(
        rollout=rollout,
        now=now,
        replica_sets=tuple(owned(Kind.REPLICA_SET)),
        services={
            service.name: service
            for service in manifests[Kind.SERVICE]
            if service.metadata.namespace == rollout.namespace
        },
        analysis_runs={run.name: run for run in owned(Kind.ANALYSIS_RUN)},
        analysis_templates=_templates_for(manifests, rollout.namespace),
        experiments={experiment.name: experiment for experiment in owned(Kind.EXPERIMENT)},
        traffic=TrafficObservation(weight=weight),
    )


@cli.command(name="reconcile")
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--now", "now_text", help="Evaluate at this RFC3339 time instead of the current time.")
@click.option("--router-weight", type=click.IntRange(0, 100), help="Weight the traffic router reports.")
@click.option("--output", "output_format", type=click.Choice(["yaml", "json"]), default="yaml", show_default=True)
def reconcile_command(
    files: Tuple[Path, ...],
    now_text: str | None,
    router_weight: int | None,
    output_format: str,
) -> None:
    """Dry-run one reconcile pass over manifests and print the planned changes."""

    manifests = load_manifests(files)
    now = _parse_now(now_text)
    results: List[Dict[str, Any]] = []
    for rollout in manifests[Kind.ROLLOUT]:
        with step_logger("reconcile", rollout.key):
            result = reconcile(_snapshot(manifests, rollout, now, router_weight))
        results.append(
            {
                "rollout": rollout.key,
                "mutations": [describe(mutation) for mutation in result.mutations],
                "status": result.status.to_dict(),
                "requeueAfter": result.requeue_after,
            }
        )
    if not results:
        raise ManifestError("no Rollout found in the given files")
    _emit(results, output_format)


def _rollout_action(
    name: str, past: str, help_text: str, apply: Callable[[Rollout], Rollout], *, spec: bool = False
):
    @click.argument("rollout_name")
    @click.option("-n", "--namespace", default="default", show_default=True)
    @click.pass_context
    def command(ctx: click.Context, rollout_name: str, namespace: str) -> None:
        store = _cluster_store(_settings(ctx))
        try:
            current = store.get(Kind.ROLLOUT, namespace, rollout_name)
            updated = apply(current)
            if spec and updated.spec.paused != current.spec.paused:
                current = store.patch(Kind.ROLLOUT, namespace, rollout_name, {"spec": {"paused": updated.spec.paused}})
                updated = current.model_copy(update={"status": updated.status})
            if updated.status != current.status:
                store.update_status(Kind.ROLLOUT, updated)
        except ControllerError as exc:
            raise CLIError(str(exc)) from exc
        click.echo(f"rollout '{namespace}/{rollout_name}' {past}")

    command.__doc__ = help_text
    return cli.command(name=name)(command)


_rollout_action("promote", "promoted", "Skip the current pause or step.", actions.promote)
_rollout_action("abort", "aborted", "Abort the rollout and return traffic to stable.", actions.abort)
_rollout_action("retry", "retried", "Retry an aborted rollout from the first step.", actions.retry)
_rollout_action("pause", "paused", "Pause the rollout.", actions.pause, spec=True)
_rollout_action("resume", "resumed", "Resume a paused rollout.", actions.resume, spec=True)


@cli.command(name="promote-full")
@click.argument("rollout_name")
@click.option("-n", "--namespace", default="default", show_default=True)
@click.pass_context
def promote_full(ctx: click.Context, rollout_name: str, namespace: str) -> None:
    """Skip every remaining step and analysis."""

    store = _cluster_store(_settings(ctx))
    try:
        current = store.get(Kind.ROLLOUT, namespace, rollout_name)
        store.update_status(Kind.ROLLOUT, actions.promote(current, full=True))
    except ControllerError as exc:
        raise CLIError(str(exc)) from exc
    click.echo(f"rollout '{namespace}/{rollout_name}' fully promoted")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":  # pragma: no cover
    main()
