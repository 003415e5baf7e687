# SPDX-License-Identifier: MIT
"""Shared utilities for the rollout controller."""

from .bulkhead import Bulkhead, BulkheadCall, BulkheadRegistry
from .fingerprint import canonical_dumps, fingerprint_payload, pod_template_hash, steps_hash
from .logging import (
    JSONFormatter,
    StructuredLogger,
    configure_logging,
    get_logger,
    reconcile_context,
)
from .metrics import (
    MetricsCollector,
    get_metrics_collector,
    start_metrics_server,
)
from .plugins import PluginRegistry, load_entrypoint
from .retry import RetryPolicy, run_with_retry

__all__ = [
    "Bulkhead",
    "BulkheadCall",
    "BulkheadRegistry",
    "JSONFormatter",
    "MetricsCollector",
    "PluginRegistry",
    "RetryPolicy",
    "StructuredLogger",
    "canonical_dumps",
    "configure_logging",
    "fingerprint_payload",
    "get_logger",
    "get_metrics_collector",
    "load_entrypoint",
    "pod_template_hash",
    "reconcile_context",
    "run_with_retry",
    "start_metrics_server",
    "steps_hash",
]
