"""Stage the server executable and its support files into a working root."""
from __future__ import annotations

import logging
import shutil
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from .mysqld import LaunchError

LOGGER = logging.getLogger(__name__)

DEFAULT_BINARY_NAME = "mysqld"


@dataclass(frozen=True, slots=True)
class ServerFiles:
    """Location of the server binary and the files it needs beside it."""

    binary: Path | None = None
    share_files: tuple[Path, ...] = ()

    @classmethod
    def from_paths(cls, binary: Path | None, share_files: Sequence[Path]) -> ServerFiles:
        """Build an instance from configuration values."""
        return cls(binary=binary, share_files=tuple(share_files))

    def resolve_binary(self) -> Path:
        """Return the source binary, falling back to ``mysqld`` on ``PATH``."""
        if self.binary is not None:
            if not self.binary.is_file():
                raise LaunchError(f"Server binary {self.binary} does not exist.")
            return self.binary
        found = shutil.which(DEFAULT_BINARY_NAME)
        if not found:
            raise LaunchError(
                f"No server binary configured and '{DEFAULT_BINARY_NAME}' was not found on PATH."
            )
        return Path(found)

    def install(self, working_root: Path, executable_filename: str) -> Path:
        """Copy the server files into *working_root* and return the executable path."""
        executable = working_root / executable_filename
        try:
            if not executable.exists():
                source = self.resolve_binary()
                LOGGER.debug("Staging %s as %s", source, executable)
                working_root.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, executable)
                executable.chmod(executable.stat().st_mode | 0o755)
            for share_file in self.share_files:
                destination = working_root / share_file.name
                if destination.exists():
                    continue
                shutil.copy2(share_file, destination)
        except OSError as exc:
            raise LaunchError(f"Could not stage server files into {working_root}: {exc}") from exc
        return executable


__all__ = ["DEFAULT_BINARY_NAME", "ServerFiles"]
