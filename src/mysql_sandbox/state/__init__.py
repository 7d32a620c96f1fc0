"""State persistence helpers."""
from __future__ import annotations

from .registry import InstanceRegistry, RegistryIOError

__all__ = ["InstanceRegistry", "RegistryIOError"]
