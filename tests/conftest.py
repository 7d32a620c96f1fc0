"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import psutil
import pytest

from mysql_sandbox.config import SandboxConfig, load_config

pytest_plugins = ["pytester"]


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords or "posix_process" in item.keywords:
            item.add_marker(skip_marker)


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instantly."""

    def __init__(self, start: float = 0.0) -> None:
        """Initialise the clock at *start* seconds."""
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeProcess:
    """Stand-in for ``psutil.Popen`` used by supervisor tests."""

    def __init__(self, pid: int = 4242) -> None:
        """Initialise a running fake process."""
        self.pid = pid
        self.returncode: int | None = None
        self.killed = False
        self.wait_error: BaseException | None = None
        self.stuck = False

    def poll(self) -> int | None:
        return self.returncode

    def kill(self) -> None:
        self.killed = True
        if not self.stuck:
            self.returncode = -9

    def wait(self, timeout: float | None = None) -> int | None:
        if self.wait_error is not None:
            raise self.wait_error
        return self.returncode


class FakePopen:
    """Callable that records launches and hands out :class:`FakeProcess` objects."""

    def __init__(self, *, pid: int = 4242, error: OSError | None = None) -> None:
        """Configure the PID handed out, or the error raised on launch."""
        self.pid = pid
        self.error = error
        self.calls: list[tuple[list[str], dict[str, Any]]] = []
        self.processes: list[FakeProcess] = []

    def __call__(self, command: list[str], **kwargs: Any) -> FakeProcess:
        self.calls.append((command, kwargs))
        if self.error is not None:
            raise self.error
        process = FakeProcess(pid=self.pid + len(self.processes))
        self.processes.append(process)
        return process


@pytest.fixture
def fake_clock() -> FakeClock:
    """Return a fresh fake clock."""
    return FakeClock()


@pytest.fixture
def fake_popen() -> FakePopen:
    """Return a recording popen replacement."""
    return FakePopen()


@pytest.fixture
def no_process_scan(monkeypatch: pytest.MonkeyPatch) -> None:
    """Hide the host's process table from the name-based orphan sweep."""
    monkeypatch.setattr(psutil, "process_iter", lambda *args, **kwargs: iter(()))


@pytest.fixture
def sandbox_config(tmp_path: Path) -> Callable[..., SandboxConfig]:
    """Return a factory building configs rooted at the temporary path."""

    def _factory(**overrides: object) -> SandboxConfig:
        binary = tmp_path / "dist" / "mysqld"
        if not binary.exists():
            binary.parent.mkdir(parents=True, exist_ok=True)
            binary.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
            binary.chmod(0o755)
        values: dict[str, object] = {
            "base_dir": str(tmp_path / "sandbox"),
            "server_binary": str(binary),
            "readiness": {"connector": "tcp"},
        }
        values.update(overrides)
        return load_config(
            config_file=tmp_path / "missing-config.yml",
            env={},
            overrides=values,
        )

    return _factory
