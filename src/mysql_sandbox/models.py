"""Shared data model for supervised server instances."""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

WORKING_DIR_NAME = "tempServer"
DATA_DIR_NAME = "data"


class InstanceState(str, Enum):
    """Lifecycle states of the supervised server process."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class InstanceLayout:
    """Filesystem paths owned by a single instance."""

    working_root: Path
    data_root: Path
    data_dir: Path

    @classmethod
    def fresh(cls, base_dir: Path) -> InstanceLayout:
        """Return a layout under *base_dir* with a newly generated data directory."""
        working_root = base_dir / WORKING_DIR_NAME
        data_root = working_root / DATA_DIR_NAME
        return cls(
            working_root=working_root,
            data_root=data_root,
            data_dir=data_root / str(uuid.uuid4()),
        )

    @property
    def directories(self) -> tuple[Path, Path, Path]:
        """Directories in creation order (parents first)."""
        return (self.working_root, self.data_root, self.data_dir)

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return {
            "working_root": str(self.working_root),
            "data_root": str(self.data_root),
            "data_dir": str(self.data_dir),
        }


__all__ = ["DATA_DIR_NAME", "InstanceLayout", "InstanceState", "WORKING_DIR_NAME"]
