# SPDX-License-Identifier: MIT
"""Object metadata, status conditions and wire-format plumbing.

Resources are exchanged with the object store as camelCase JSON documents.
:class:`ResourceModel` maps them onto snake_case attributes and back.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel

API_GROUP = "rollouts.dev"
API_VERSION = f"{API_GROUP}/v1alpha1"

POD_TEMPLATE_HASH_LABEL = "rollouts.dev/pod-template-hash"
ROLLOUT_NAME_LABEL = "rollouts.dev/rollout"
ANALYSIS_TYPE_LABEL = "rollouts.dev/analysis-type"
REVISION_ANNOTATION = "rollouts.dev/revision"
SCALE_DOWN_DEADLINE_ANNOTATION = "rollouts.dev/scale-down-deadline"
PROMOTED_AT_ANNOTATION = "rollouts.dev/promoted-at"

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_duration(value: Any) -> Any:
    """Parse ``30``, ``"30"``, ``"30s"``, ``"1h30m"`` or ``"250ms"`` into a timedelta."""

    if value is None or isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ValueError("duration must be a number of seconds or a duration string")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError("duration must not be negative")
        return timedelta(seconds=value)
    text = str(value).strip()
    if not text:
        raise ValueError("duration must not be empty")
    if text.isdigit():
        return timedelta(seconds=int(text))
    position = 0
    seconds = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text):
        raise ValueError(f"invalid duration {text!r}")
    return timedelta(seconds=seconds)


def format_duration(value: timedelta) -> str:
    total = value.total_seconds()
    if total != int(total):
        return f"{int(round(total * 1000))}ms"
    total = int(total)
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if seconds or not parts:
        parts.append(f"{seconds}s")
    return "".join(parts)


Duration = Annotated[
    timedelta,
    BeforeValidator(parse_duration),
    PlainSerializer(format_duration, return_type=str),
]


class ResourceModel(BaseModel):
    """Base for wire models: camelCase aliases, unknown fields ignored."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_dict(self) -> Dict[str, Any]:
        """Serialise to the JSON document stored in the cluster."""

        return self.model_dump(by_alias=True, exclude_none=True, mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Any:
        return cls.model_validate(data)


class OwnerReference(ResourceModel):
    api_version: str = API_VERSION
    kind: str
    name: str
    uid: str = ""
    controller: Optional[bool] = True
    block_owner_deletion: Optional[bool] = True


class ObjectMeta(ResourceModel):
    name: str
    namespace: str = "default"
    uid: str = ""
    generation: int = 0
    resource_version: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    owner_references: List[OwnerReference] = Field(default_factory=list)
    creation_timestamp: Optional[datetime] = None
    deletion_timestamp: Optional[datetime] = None

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    def controller_owner(self) -> Optional[OwnerReference]:
        for reference in self.owner_references:
            if reference.controller:
                return reference
        return None

    def is_owned_by(self, kind: str, name: str, uid: str = "") -> bool:
        owner = self.controller_owner()
        if owner is None or owner.kind != kind or owner.name != name:
            return False
        return not uid or not owner.uid or owner.uid == uid


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class Condition(ResourceModel):
    """Observation of one aspect of an object's state."""

    type: str
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[datetime] = None
    last_update_time: Optional[datetime] = None


def object_key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def split_key(key: str) -> tuple[str, str]:
    namespace, _, name = key.rpartition("/")
    return namespace or "default", name


__all__ = [
    "ANALYSIS_TYPE_LABEL",
    "API_GROUP",
    "API_VERSION",
    "Condition",
    "ConditionStatus",
    "Duration",
    "ObjectMeta",
    "OwnerReference",
    "POD_TEMPLATE_HASH_LABEL",
    "PROMOTED_AT_ANNOTATION",
    "REVISION_ANNOTATION",
    "ROLLOUT_NAME_LABEL",
    "ResourceModel",
    "SCALE_DOWN_DEADLINE_ANNOTATION",
    "format_duration",
    "object_key",
    "parse_duration",
    "split_key",
    "utcnow",
]
