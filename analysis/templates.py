# SPDX-License-Identifier: MIT
"""Turn AnalysisTemplates plus arguments into a concrete AnalysisRun spec."""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Mapping, Optional

from core.errors import SpecValidationError
from domain.analysis import AnalysisRunSpec, AnalysisTemplate, Argument, Metric

from .conditions import ConditionError, compile_condition

__all__ = [
    "build_run_spec",
    "merge_templates",
    "resolve_args",
    "substitute",
    "validate_metric_conditions",
]

_ARG_REFERENCE = re.compile(r"\{\{\s*args\.([A-Za-z0-9_.-]+)\s*\}\}")


def merge_templates(templates: Iterable[AnalysisTemplate]) -> tuple[List[Metric], List[Argument]]:
    """Concatenate metrics and arguments of several templates.

    Duplicate metric names are rejected. An argument declared by more than one
    template keeps the first non-empty default.
    """

    metrics: List[Metric] = []
    seen: Dict[str, str] = {}
    args: Dict[str, Argument] = {}
    errors: List[str] = []
    for template in templates:
        for metric in template.spec.metrics:
            owner = seen.get(metric.name)
            if owner is not None:
                errors.append(
                    f"metric '{metric.name}' is defined by both '{owner}' and '{template.metadata.name}'"
                )
                continue
            seen[metric.name] = template.metadata.name
            metrics.append(metric)
        for argument in template.spec.args:
            existing = args.get(argument.name)
            if existing is None or (existing.value is None and argument.value is not None):
                args[argument.name] = argument
    if errors:
        raise SpecValidationError(errors)
    return metrics, list(args.values())


def resolve_args(declared: Iterable[Argument], supplied: Mapping[str, Optional[str]]) -> Dict[str, str]:
    """Supplied values override template defaults; every argument must end up with a value."""

    resolved: Dict[str, str] = {}
    missing: List[str] = []
    for argument in declared:
        value = supplied.get(argument.name, argument.value)
        if value is None:
            missing.append(argument.name)
        else:
            resolved[argument.name] = str(value)
    if missing:
        raise SpecValidationError([f"argument '{name}' has no value" for name in missing])
    return resolved


def substitute(value: Any, args: Mapping[str, str]) -> Any:
    """Replace ``{{args.<name>}}`` references inside strings, lists and mappings."""

    if isinstance(value, str):
        def _lookup(match: re.Match[str]) -> str:
            name = match.group(1)
            if name not in args:
                raise SpecValidationError(f"reference to undeclared argument '{name}'")
            return args[name]

        return _ARG_REFERENCE.sub(_lookup, value)
    if isinstance(value, list):
        return [substitute(item, args) for item in value]
    if isinstance(value, dict):
        return {key: substitute(item, args) for key, item in value.items()}
    return value


def validate_metric_conditions(metrics: Iterable[Metric]) -> List[str]:
    errors: List[str] = []
    for metric in metrics:
        for label, expression in (
            ("successCondition", metric.success_condition),
            ("failureCondition", metric.failure_condition),
        ):
            if not expression or _ARG_REFERENCE.search(expression):
                continue
            try:
                compile_condition(expression)
            except ConditionError as exc:
                errors.append(f"metric '{metric.name}' {label}: {exc}")
    return errors


def build_run_spec(
    templates: Iterable[AnalysisTemplate],
    supplied: Mapping[str, Optional[str]],
) -> AnalysisRunSpec:
    """Merge ``templates``, bind arguments and return a ready-to-run spec.

    Raises:
        SpecValidationError: duplicate metrics, missing or undeclared
            arguments, or unparsable conditions.
    """

    metrics, declared = merge_templates(templates)
    declared_names = {argument.name for argument in declared}
    extra = [Argument(name=name, value=value) for name, value in supplied.items() if name not in declared_names]
    args = resolve_args([*declared, *extra], supplied)
    bound = [Metric.model_validate(substitute(metric.to_dict(), args)) for metric in metrics]
    errors = validate_metric_conditions(bound)
    if errors:
        raise SpecValidationError(errors)
    return AnalysisRunSpec(
        metrics=bound,
        args=[Argument(name=name, value=value) for name, value in sorted(args.items())],
    )
