"""Tests for instance directory preparation and removal."""
from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from mysql_sandbox.directories import CleanupTimeoutError, DirectoryManager
from mysql_sandbox.models import InstanceLayout

if TYPE_CHECKING:
    from conftest import FakeClock


def _manager(clock: FakeClock, retry_interval: float = 0.05) -> DirectoryManager:
    return DirectoryManager(retry_interval=retry_interval, clock=clock, sleep=clock.sleep)


def test_prepare_creates_layout_directories(tmp_path: Path, fake_clock: FakeClock) -> None:
    layout = InstanceLayout.fresh(tmp_path)

    _manager(fake_clock).prepare(layout.directories)

    for path in layout.directories:
        assert path.is_dir()
    assert list(layout.data_dir.iterdir()) == []


def test_prepare_wipes_existing_contents(tmp_path: Path, fake_clock: FakeClock) -> None:
    stale = tmp_path / "tempServer"
    (stale / "data" / "old").mkdir(parents=True)
    (stale / "mysqld_test").write_text("stale", encoding="utf-8")

    _manager(fake_clock).prepare([stale])

    assert stale.is_dir()
    assert list(stale.iterdir()) == []


def test_prepare_logs_and_continues_after_failure(
    tmp_path: Path,
    fake_clock: FakeClock,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    blocked = tmp_path / "blocked"
    allowed = tmp_path / "allowed"
    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == blocked:
            raise PermissionError("denied")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    with caplog.at_level(logging.WARNING, logger="mysql_sandbox.directories"):
        _manager(fake_clock).prepare([blocked, allowed])

    assert not blocked.exists()
    assert allowed.is_dir()
    assert "Could not create or delete directory" in caplog.text
    assert str(blocked) in caplog.text


def test_remove_all_removes_nested_layout(tmp_path: Path, fake_clock: FakeClock) -> None:
    layout = InstanceLayout.fresh(tmp_path)
    manager = _manager(fake_clock)
    manager.prepare(layout.directories)
    (layout.data_dir / "ibdata1").write_bytes(b"\0" * 16)

    manager.remove_all(layout.directories, timeout=0.5)

    for path in layout.directories:
        assert not path.exists()
    assert fake_clock.sleeps == []


def test_remove_all_ignores_missing_paths(tmp_path: Path, fake_clock: FakeClock) -> None:
    _manager(fake_clock).remove_all([tmp_path / "never-created"], timeout=0.5)


def test_remove_all_retries_until_directory_is_released(
    tmp_path: Path,
    fake_clock: FakeClock,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    target = tmp_path / "tempServer"
    target.mkdir()
    real_rmtree = shutil.rmtree
    attempts: list[Path] = []

    def flaky_rmtree(path: Path, *args: object, **kwargs: object) -> None:
        attempts.append(Path(path))
        if len(attempts) <= 2:
            raise PermissionError("file in use")
        real_rmtree(path, *args, **kwargs)

    monkeypatch.setattr(shutil, "rmtree", flaky_rmtree)

    _manager(fake_clock).remove_all([target], timeout=0.5)

    assert not target.exists()
    assert len(attempts) == 3
    assert fake_clock.sleeps == [0.05, 0.05]


def test_remove_all_raises_after_timeout(
    tmp_path: Path,
    fake_clock: FakeClock,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    target = tmp_path / "tempServer"
    target.mkdir()
    failure = PermissionError("file in use")

    def locked_rmtree(path: Path, *args: object, **kwargs: object) -> None:
        raise failure

    monkeypatch.setattr(shutil, "rmtree", locked_rmtree)

    with pytest.raises(CleanupTimeoutError) as excinfo:
        _manager(fake_clock, retry_interval=0.1).remove_all([target], timeout=0.5)

    error = excinfo.value
    assert error.path == target
    assert error.timeout == 0.5
    assert error.last_error is failure
    assert error.__cause__ is failure
    assert str(target) in str(error)
    assert "0.5s timeout" in str(error)
    # The loop gives up on the first failed attempt past the window.
    assert fake_clock.now > 0.5
    assert fake_clock.now < 0.5 + 0.1 + 1e-9
    assert target.exists()


def test_remove_all_treats_vanished_directory_as_removed(
    tmp_path: Path,
    fake_clock: FakeClock,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    target = tmp_path / "tempServer"
    target.mkdir()

    def vanished(path: Path, *args: object, **kwargs: object) -> None:
        raise FileNotFoundError(str(path))

    monkeypatch.setattr(shutil, "rmtree", vanished)

    _manager(fake_clock).remove_all([target], timeout=0.5)

    assert fake_clock.sleeps == []
