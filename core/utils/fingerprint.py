# SPDX-License-Identifier: MIT
"""Stable content fingerprints for pod templates and step lists.

A revision of a Rollout is identified by the fingerprint of its pod template.
The fingerprint must not depend on dictionary ordering or on how the object
was serialised, so payloads are first normalised into canonical JSON.
"""

from __future__ import annotations

import json
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from hashlib import blake2b
from typing import Any, Mapping

POD_TEMPLATE_HASH_SIZE = 5


def _normalise(value: Any) -> Any:
    """Normalise arbitrary structures into JSON-compatible primitives."""

    if isinstance(value, Mapping):
        return {
            str(key): _normalise(val)
            for key, val in sorted(value.items(), key=lambda item: str(item[0]))
        }
    if isinstance(value, (list, tuple)):
        return [_normalise(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted(
            (_normalise(item) for item in value),
            key=lambda item: json.dumps(item, sort_keys=True),
        )
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return _normalise(value.value)
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, bytes):
        return value.hex()
    return value


def canonical_dumps(payload: Any) -> str:
    """Return a canonical JSON representation for hashing purposes."""

    normalised = _normalise(payload)
    return json.dumps(normalised, separators=(",", ":"), sort_keys=True, ensure_ascii=False)


def fingerprint_payload(payload: Any, *, digest_size: int = 16) -> str:
    """Produce a deterministic hex fingerprint for the supplied payload."""

    representation = canonical_dumps(payload)
    digest = blake2b(representation.encode("utf-8"), digest_size=digest_size)
    return digest.hexdigest()


def pod_template_hash(template: Mapping[str, Any], *, ignore_label: str | None = None) -> str:
    """Return the short revision identity of a pod template.

    ``ignore_label`` names a label injected by the controller itself; it is
    excluded so that stamping a template with its own hash keeps the hash.
    """

    stripped = dict(template)
    metadata = dict(stripped.get("metadata") or {})
    labels = {
        key: value
        for key, value in (metadata.get("labels") or {}).items()
        if key != ignore_label
    }
    if labels:
        metadata["labels"] = labels
    else:
        metadata.pop("labels", None)
    if metadata:
        stripped["metadata"] = metadata
    else:
        stripped.pop("metadata", None)
    return fingerprint_payload(stripped, digest_size=POD_TEMPLATE_HASH_SIZE)


def steps_hash(steps: Any) -> str:
    """Fingerprint an ordered step list; order is significant."""

    return fingerprint_payload(steps, digest_size=POD_TEMPLATE_HASH_SIZE)


__all__ = [
    "canonical_dumps",
    "fingerprint_payload",
    "pod_template_hash",
    "steps_hash",
]
