# SPDX-License-Identifier: MIT
"""Pytest fixtures and environment setup.

Ensures the repository root is importable so tests resolve the in-tree
packages without installing them, and keeps controller settings read from
the developer's environment out of the test run.
"""

from __future__ import annotations

import os
import pathlib
import sys

import pytest

ROOT = pathlib.Path(__file__).resolve().parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def _isolate_controller_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("ROLLOUTS_"):
            monkeypatch.delenv(key, raising=False)
