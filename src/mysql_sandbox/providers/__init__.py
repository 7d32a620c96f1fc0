"""Provider interfaces for the sandboxed server process."""
from __future__ import annotations

from .assets import ServerFiles
from .mysqld import (
    LaunchError,
    OrphanKillError,
    ProcessKillError,
    ProcessSupervisor,
    ReapResult,
)

__all__ = [
    "LaunchError",
    "OrphanKillError",
    "ProcessKillError",
    "ProcessSupervisor",
    "ReapResult",
    "ServerFiles",
]
