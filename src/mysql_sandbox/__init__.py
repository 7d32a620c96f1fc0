"""mysql-sandbox package bootstrap.

Supervises a single throwaway ``mysqld`` instance for automated tests. The
public surface is :class:`MySqlServer` plus the error types it can raise.
"""
from __future__ import annotations

from .config import ConfigError, SandboxConfig, load_config
from .directories import CleanupTimeoutError
from .models import InstanceLayout, InstanceState
from .providers import LaunchError, OrphanKillError, ProcessKillError, ReapResult
from .readiness import StartupTimeoutError
from .server import MySqlServer, get_or_create, shutdown_instance
from .state import RegistryIOError

__all__ = [
    "CleanupTimeoutError",
    "ConfigError",
    "InstanceLayout",
    "InstanceState",
    "LaunchError",
    "MySqlServer",
    "OrphanKillError",
    "ProcessKillError",
    "ReapResult",
    "RegistryIOError",
    "SandboxConfig",
    "StartupTimeoutError",
    "__version__",
    "get_or_create",
    "get_version",
    "load_config",
    "shutdown_instance",
]

# NOTE: The version is duplicated in ``pyproject.toml``.
__version__ = "0.1.0"


def get_version() -> str:
    """Return the current package version."""
    return __version__
