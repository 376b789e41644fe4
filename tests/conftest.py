"""Shared pytest fixtures for the nodestart test suite.

Provides reusable fixtures for:
- Isolated config locations (no real user config is ever read)
- Settings that keep the run offline
- A scriptable fake for ``subprocess.run``
"""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Any, Callable

import pytest

from nodestart_cli import GeneratorSettings, ProjectRequest


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the config lookup at a file that does not exist yet."""
    config_file = tmp_path / "config" / "config.json"
    monkeypatch.setenv("NODESTART_CONFIG", str(config_file))
    return config_file


@pytest.fixture
def write_config(isolated_config: Path) -> Callable[[dict[str, Any]], Path]:
    def _write(data: dict[str, Any]) -> Path:
        isolated_config.parent.mkdir(parents=True, exist_ok=True)
        isolated_config.write_text(json.dumps(data), encoding="utf-8")
        return isolated_config

    return _write


@pytest.fixture
def offline_settings() -> GeneratorSettings:
    return GeneratorSettings(resolve_versions=False, auto_install=False)


@pytest.fixture
def demo_request() -> ProjectRequest:
    return ProjectRequest(name="demo", package_manager="pnpm", framework="fastify")


@pytest.fixture
def workdir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Run the test from an empty working directory."""
    cwd = tmp_path / "work"
    cwd.mkdir()
    monkeypatch.chdir(cwd)
    return cwd


class FakeRun:
    """Stand-in for ``subprocess.run`` driven by a table of canned results.

    ``results`` maps a command prefix (tuple) to ``(returncode, stdout, stderr)``.
    Unknown commands succeed with empty output. Every call is recorded.
    """

    def __init__(self, results: dict[tuple, tuple[int, str, str]] | None = None) -> None:
        self.results = results or {}
        self.calls: list[list[str]] = []

    def __call__(self, cmd, check=False, **kwargs):
        self.calls.append(list(cmd))
        returncode, stdout, stderr = 0, "", ""
        for prefix, result in self.results.items():
            if tuple(cmd[: len(prefix)]) == prefix:
                returncode, stdout, stderr = result
                break
        if check and returncode != 0:
            raise subprocess.CalledProcessError(returncode, cmd, stdout, stderr)
        return subprocess.CompletedProcess(cmd, returncode, stdout, stderr)

    def commands(self, *prefix: str) -> list[list[str]]:
        return [c for c in self.calls if tuple(c[: len(prefix)]) == prefix]


@pytest.fixture
def fake_run(monkeypatch: pytest.MonkeyPatch) -> FakeRun:
    fake = FakeRun()
    monkeypatch.setattr("nodestart_cli.subprocess.run", fake)
    return fake
