# SPDX-License-Identifier: MIT
"""Object-store adapters: the Kubernetes API, list/watch feeds and an in-memory store."""

from .informers import Informer, InformerSet
from .kube import KubernetesObjectStore, WatchExpiredError, load_api_client
from .memory import InMemoryObjectStore, merge_patch

__all__ = [
    "InMemoryObjectStore",
    "Informer",
    "InformerSet",
    "KubernetesObjectStore",
    "WatchExpiredError",
    "load_api_client",
    "merge_patch",
]
