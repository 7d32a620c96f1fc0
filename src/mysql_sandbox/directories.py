"""Creation and bounded-retry removal of instance directories."""
from __future__ import annotations

import logging
import shutil
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

LOGGER = logging.getLogger(__name__)


class CleanupTimeoutError(RuntimeError):
    """Raised when a directory cannot be removed within the retry window."""

    def __init__(self, path: Path, timeout: float, last_error: BaseException | None) -> None:
        """Record the offending path, the timeout and the last removal error."""
        self.path = path
        self.timeout = timeout
        self.last_error = last_error
        super().__init__(
            f"Removing directory '{path}' failed after {timeout}s timeout: {last_error}"
        )


@dataclass(slots=True)
class DirectoryManager:
    """Create clean directories and remove them once their owner has exited."""

    retry_interval: float = 0.05
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def prepare(self, paths: Sequence[Path]) -> None:
        """Recreate every path in *paths* as an empty directory.

        Failures are logged and skipped; a directory that could not be created
        surfaces later when the server refuses to start.
        """
        for path in paths:
            try:
                if path.exists():
                    shutil.rmtree(path)
                path.mkdir(parents=True)
            except OSError as exc:
                LOGGER.warning("Could not create or delete directory %s: %s", path, exc)

    def remove_all(self, paths: Sequence[Path], timeout: float) -> None:
        """Remove every path, retrying each until *timeout* seconds have passed."""
        for path in paths:
            self._remove_with_retry(path, timeout)

    # ------------------------------------------------------------------
    def _remove_with_retry(self, path: Path, timeout: float) -> None:
        if not path.exists():
            return
        started = self.clock()
        attempts = 0
        while True:
            attempts += 1
            try:
                shutil.rmtree(path)
                return
            except FileNotFoundError:
                return
            except OSError as exc:
                LOGGER.debug(
                    "Could not delete directory %s (attempt %d): %s", path, attempts, exc
                )
                if self.clock() - started > timeout:
                    raise CleanupTimeoutError(path, timeout, exc) from exc
                self.sleep(self.retry_interval)


__all__ = ["CleanupTimeoutError", "DirectoryManager"]
