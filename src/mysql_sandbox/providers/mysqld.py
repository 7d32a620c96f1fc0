"""Supervisor for the ``mysqld`` child process."""
from __future__ import annotations

import logging
import os
import subprocess
import sys
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import psutil

from ..directories import CleanupTimeoutError, DirectoryManager
from ..models import InstanceLayout, InstanceState
from ..readiness import ConnectionTarget, ProcessExitedError, ReadinessProbe, StartupTimeoutError
from ..state import InstanceRegistry, RegistryIOError

LOGGER = logging.getLogger(__name__)

DEFAULT_EXECUTABLE_NAME = "mysqld_test"
SERVER_LOG_NAME = "server.log"
OUTPUT_TAIL_LINES = 20

# Storage-engine tuning passed through to the server untouched.
INNODB_ARGUMENTS: tuple[str, ...] = (
    "--innodb_fast_shutdown=2",
    "--innodb_doublewrite=OFF",
    "--innodb_log_file_size=1048576",
    "--innodb_data_file_path=ibdata1:10M;ibdata2:10M:autoextend",
)


class LaunchError(RuntimeError):
    """Raised when the server process cannot be started."""


class ProcessKillError(RuntimeError):
    """Raised when the owned server process cannot be killed."""


class OrphanKillError(RuntimeError):
    """Describes a leftover process that could not be killed during a sweep."""

    def __init__(self, pid: int, reason: str) -> None:
        """Record the process identifier and the failure reason."""
        self.pid = pid
        self.reason = reason
        super().__init__(f"Could not kill process {pid}: {reason}")


@dataclass(slots=True)
class ReapResult:
    """Outcome of a sweep for leftover server processes."""

    killed: list[int] = field(default_factory=list)
    failures: list[OrphanKillError] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "killed": list(self.killed),
            "failures": [{"pid": failure.pid, "reason": failure.reason} for failure in self.failures],
        }


@dataclass(slots=True)
class ProcessSupervisor:
    """Launch, watch and kill the server process for one instance at a time."""

    registry: InstanceRegistry
    directories: DirectoryManager
    probe: ReadinessProbe
    executable_name: str = DEFAULT_EXECUTABLE_NAME
    exit_timeout: float = 10.0
    cleanup_timeout: float = 0.5
    extra_args: tuple[str, ...] = ()
    popen: Callable[..., Any] = field(default=psutil.Popen, repr=False)
    state: InstanceState = InstanceState.STOPPED
    _process: Any = field(default=None, init=False, repr=False)

    @property
    def executable_filename(self) -> str:
        """Return the executable file name for the current platform."""
        if sys.platform == "win32" and not self.executable_name.lower().endswith(".exe"):
            return f"{self.executable_name}.exe"
        return self.executable_name

    @property
    def is_running(self) -> bool:
        """Return ``True`` while the owned process has not exited."""
        return self._process is not None and self._process.poll() is None

    @property
    def process_id(self) -> int:
        """Return the owned process id, or ``-1`` once it has exited."""
        if self.is_running:
            return int(self._process.pid)
        return -1

    def build_arguments(self, layout: InstanceLayout, port: int) -> list[str]:
        """Return the server command-line flags for *layout* and *port*."""
        return [
            "--standalone",
            "--console",
            f"--basedir={layout.working_root}",
            f"--lc-messages-dir={layout.working_root}",
            f"--datadir={layout.data_dir}",
            "--skip-grant-tables",
            "--enable-named-pipe",
            f"--port={port}",
            *INNODB_ARGUMENTS,
            *self.extra_args,
        ]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self, layout: InstanceLayout, port: int, target: ConnectionTarget) -> None:
        """Launch the server and block until it accepts connections."""
        if self.is_running:
            raise LaunchError(f"Server process {self.process_id} is already running.")

        self.state = InstanceState.STARTING
        command = [str(layout.working_root / self.executable_filename)]
        command.extend(self.build_arguments(layout, port))
        LOGGER.info("Running %s", " ".join(command))

        try:
            self._process = self._launch(command, layout.working_root)
            try:
                self.registry.record(self._process.pid)
            except RegistryIOError as exc:
                raise LaunchError(f"Could not start server process: {exc}") from exc
            try:
                self.probe.wait_until_ready(target, alive=lambda: self.is_running)
            except ProcessExitedError as exc:
                code = self._process.poll()
                output = _read_output_tail(layout.working_root / SERVER_LOG_NAME)
                message = f"Server process exited with code {code} during startup."
                if output:
                    message = f"{message}\n{output}"
                raise LaunchError(message) from exc
        except (LaunchError, StartupTimeoutError):
            self.state = InstanceState.FAILED
            self._cleanup_after_failure(layout)
            raise

        self.state = InstanceState.RUNNING
        LOGGER.info("Server process %d is accepting connections on port %d", self._process.pid, port)

    def shutdown(self, layout: InstanceLayout) -> None:
        """Kill the owned process, then remove its directories and the registry file."""
        self.state = InstanceState.SHUTTING_DOWN
        try:
            self._kill_owned()
        except ProcessKillError as exc:
            LOGGER.error("Could not close database server process: %s", exc)
            self.state = InstanceState.FAILED
            raise

        try:
            self.directories.remove_all(layout.directories, self.cleanup_timeout)
            self.registry.clear()
        except (CleanupTimeoutError, RegistryIOError):
            self.state = InstanceState.FAILED
            raise
        self.state = InstanceState.STOPPED

    def kill_previous_instances(self, layout: InstanceLayout) -> ReapResult:
        """Kill leftover server processes and remove stale directories.

        Processes are found by executable name and through the registry file.
        Per-process failures are logged and collected; only a directory that
        cannot be removed aborts the sweep.
        """
        result = ReapResult()
        if self._process is not None:
            owned_pid = int(self._process.pid)
            was_running = self.is_running
            self._kill_owned()
            if was_running:
                result.killed.append(owned_pid)
        self.state = InstanceState.STOPPED

        for proc in self._matching_processes():
            self._reap(proc.pid, proc, result)

        for pid in self.registry.read_orphans():
            handled = set(result.killed) | {failure.pid for failure in result.failures}
            if pid in handled or pid == os.getpid():
                continue
            try:
                proc = psutil.Process(pid)
            except psutil.Error as exc:
                self._record_failure(result, pid, _describe_psutil_error(exc))
                continue
            self._reap(pid, proc, result)

        try:
            self.registry.clear()
        except RegistryIOError as exc:
            LOGGER.warning("Could not delete running instances file: %s", exc)

        self.directories.remove_all(layout.directories, self.cleanup_timeout)
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _launch(self, command: Sequence[str], cwd: Path) -> Any:
        kwargs: dict[str, Any] = {
            "stdin": subprocess.DEVNULL,
            "stderr": subprocess.STDOUT,
            "cwd": str(cwd),
        }
        if sys.platform == "win32":
            kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW
        else:
            kwargs["start_new_session"] = True

        try:
            with (cwd / SERVER_LOG_NAME).open("ab") as output:
                return self.popen(list(command), stdout=output, **kwargs)
        except OSError as exc:
            raise LaunchError(f"Could not start server process: {exc}") from exc

    def _kill_owned(self) -> None:
        process = self._process
        if process is None:
            return
        pid = process.pid
        try:
            if process.poll() is None:
                LOGGER.debug("Killing server process %d", pid)
                process.kill()
                process.wait(timeout=self.exit_timeout)
        except psutil.NoSuchProcess:
            LOGGER.debug("Server process %d already exited", pid)
        except (psutil.TimeoutExpired, subprocess.TimeoutExpired) as exc:
            raise ProcessKillError(
                f"Server process {pid} did not exit within {self.exit_timeout}s of being killed."
            ) from exc
        except (psutil.Error, OSError) as exc:
            raise ProcessKillError(f"Could not kill server process {pid}: {exc}") from exc
        self._process = None

    def _matching_processes(self) -> Iterator[psutil.Process]:
        names = {self.executable_name, self.executable_filename}
        current = os.getpid()
        for proc in psutil.process_iter(["name"]):
            if proc.pid == current:
                continue
            if proc.info.get("name") in names:
                yield proc

    def _reap(self, pid: int, proc: psutil.Process, result: ReapResult) -> None:
        try:
            proc.kill()
            proc.wait(timeout=self.exit_timeout)
        except psutil.TimeoutExpired:
            self._record_failure(result, pid, f"still running after {self.exit_timeout}s")
            return
        except psutil.Error as exc:
            self._record_failure(result, pid, _describe_psutil_error(exc))
            return
        LOGGER.info("Killed leftover server process %d", pid)
        result.killed.append(pid)

    def _record_failure(self, result: ReapResult, pid: int, reason: str) -> None:
        failure = OrphanKillError(pid, reason)
        LOGGER.warning("%s", failure)
        result.failures.append(failure)

    def _cleanup_after_failure(self, layout: InstanceLayout) -> None:
        try:
            self._kill_owned()
        except ProcessKillError as exc:
            # Keep the registry entry so the next start can reap the process.
            LOGGER.error("Could not kill server process after failed start: %s", exc)
            return
        try:
            self.directories.remove_all(layout.directories, self.cleanup_timeout)
        except CleanupTimeoutError as exc:
            LOGGER.warning("Cleanup after failed start incomplete: %s", exc)
        try:
            self.registry.clear()
        except RegistryIOError as exc:
            LOGGER.warning("Cleanup after failed start incomplete: %s", exc)


def _describe_psutil_error(exc: psutil.Error) -> str:
    if isinstance(exc, psutil.NoSuchProcess):
        return "no such process"
    if isinstance(exc, psutil.AccessDenied):
        return "access denied"
    return str(exc) or type(exc).__name__


def _read_output_tail(path: Path, lines: int = OUTPUT_TAIL_LINES) -> str:
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""
    return "\n".join(text.splitlines()[-lines:])


__all__ = [
    "DEFAULT_EXECUTABLE_NAME",
    "INNODB_ARGUMENTS",
    "LaunchError",
    "OrphanKillError",
    "ProcessKillError",
    "ProcessSupervisor",
    "ReapResult",
]
