# SPDX-License-Identifier: MIT
from __future__ import annotations

import os
from pathlib import Path

import pytest

import container_entrypoint


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("", 0o027), ("077", 0o077), ("  022 ", 0o022)],
)
def test_parse_umask(raw: str, expected: int) -> None:
    assert container_entrypoint.parse_umask(raw) == expected


def test_parse_umask_rejects_garbage() -> None:
    with pytest.raises(ValueError, match="Invalid umask value"):
        container_entrypoint.parse_umask("rwx")


def test_env_file_does_not_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    env_file = tmp_path / "controller.env"
    env_file.write_text(
        "# controller\nROLLOUTS_LOG_LEVEL=DEBUG\nROLLOUTS_NAMESPACE=payments\nnot a pair\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("ROLLOUTS_NAMESPACE", "default")
    monkeypatch.delenv("ROLLOUTS_LOG_LEVEL", raising=False)

    container_entrypoint.load_env_file(env_file)

    assert os.environ["ROLLOUTS_LOG_LEVEL"] == "DEBUG"
    assert os.environ["ROLLOUTS_NAMESPACE"] == "default"


def test_main_execs_the_controller(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = []
    monkeypatch.delenv("ROLLOUTS_ENV_FILE", raising=False)
    monkeypatch.setattr(container_entrypoint.os, "umask", lambda mask: 0)
    monkeypatch.setattr(container_entrypoint.os, "execvp", lambda exe, argv: calls.append((exe, argv)))

    container_entrypoint.main([])

    ((executable, argv),) = calls
    assert argv[1:] == ["-m", "cli.rolloutd", "run"]
    assert argv[0] == executable
