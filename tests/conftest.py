"""
BuildGate Repository
Introductory remarks: This module is part of the BuildGate codebase.

Shared fixtures for the test suite.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, List

import pytest

from buildgate.utils import env as env_utils


class FakeClock:
    """
    FakeClock: Manually advanced clock shared by stores and coordinators.
    """

    def __init__(self, start: float = 1_000.0) -> None:
        self._now = start
        self.sleeps: List[float] = []

    def time(self) -> float:
        return self._now

    def sleep(self, duration: float) -> None:
        self.sleeps.append(duration)
        self._now += duration

    def advance(self, seconds: float) -> None:
        self._now += seconds


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    _isolated_env: Function description.
    :param monkeypatch:
    :returns:
    """

    for key in list(os.environ):
        if key.startswith("BUILDGATE_") or key.startswith("CODEBUILD_"):
            monkeypatch.delenv(key, raising=False)
    for key in ("PKG_METADATA_TABLE", "LOG_LEVEL", "LOG_FILE", "AWS_PROFILE"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(env_utils, "_ENV_LOADED", True)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_crate(tmp_path: Path) -> Callable[..., Path]:
    """Write a Cargo.toml whose dependencies come from the private registry."""

    def _make(name: str, *dependencies: str, registry: str = "internal") -> Path:
        root = tmp_path / name
        root.mkdir(parents=True, exist_ok=True)
        lines = [
            "[package]",
            f'name = "{name}"',
            'version = "0.1.0"',
            "",
            "[dependencies]",
            'serde = "1"',
        ]
        for dependency in dependencies:
            lines.append(
                f'{dependency} = {{ version = "0.1", registry = "{registry}" }}'
            )
        (root / "Cargo.toml").write_text("\n".join(lines) + "\n", encoding="utf-8")
        return root

    return _make
