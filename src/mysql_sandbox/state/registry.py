"""Crash-recovery record of launched server processes.

The registry is a single plain-text file holding one process identifier per
line. It is written as soon as a server process starts, read on the next
start to find orphans left behind by a crashed run, and deleted on a clean
shutdown. Its absence means there is nothing to reap.
"""
from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

LOGGER = logging.getLogger(__name__)


class RegistryIOError(RuntimeError):
    """Raised when the registry file cannot be written or deleted."""


@dataclass(frozen=True)
class InstanceRegistry:
    """Read and write the running-instances file."""

    path: Path

    def __post_init__(self) -> None:
        """Normalise the registry path after initialisation."""
        object.__setattr__(self, "path", Path(self.path).expanduser())

    def exists(self) -> bool:
        """Return ``True`` when a registry file is present."""
        return self.path.exists()

    def record(self, pid: int) -> None:
        """Atomically replace the registry contents with *pid*."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=f".{self.path.name}."
            )
        except OSError as exc:
            raise RegistryIOError(f"Could not write registry file {self.path}: {exc}") from exc

        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(f"{pid}\n")
            os.replace(tmp_path, self.path)
            os.chmod(self.path, 0o640)
        except OSError as exc:
            raise RegistryIOError(f"Could not write registry file {self.path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def read_orphans(self) -> list[int]:
        """Return the process identifiers recorded by a previous run."""
        if not self.path.exists():
            return []
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            LOGGER.warning("Could not read registry file %s: %s", self.path, exc)
            return []

        pids: list[int] = []
        for line in text.splitlines():
            value = line.strip()
            if not value:
                continue
            try:
                pid = int(value)
            except ValueError:
                LOGGER.warning("Ignoring malformed registry entry %r in %s", value, self.path)
                continue
            if pid <= 0:
                LOGGER.warning("Ignoring invalid process id %d in %s", pid, self.path)
                continue
            pids.append(pid)
        return pids

    def clear(self) -> None:
        """Delete the registry file."""
        try:
            self.path.unlink(missing_ok=True)
        except OSError as exc:
            raise RegistryIOError(
                f"Could not delete registry file {self.path}: {exc}"
            ) from exc


__all__ = ["InstanceRegistry", "RegistryIOError"]
