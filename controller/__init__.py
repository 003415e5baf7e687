# SPDX-License-Identifier: MIT
"""Queue-driven controllers for Rollouts and AnalysisRuns."""

from .analysisruns import AnalysisRunController
from .base import QueueController
from .cache import ObjectCache
from .client import EventType, Kind, ObjectStore, WatchEvent
from .executor import MutationExecutor
from .queue import QueueShutDown, WorkQueue
from .rollouts import RolloutController

__all__ = [
    "AnalysisRunController",
    "EventType",
    "Kind",
    "MutationExecutor",
    "ObjectCache",
    "ObjectStore",
    "QueueController",
    "QueueShutDown",
    "RolloutController",
    "WatchEvent",
    "WorkQueue",
]
