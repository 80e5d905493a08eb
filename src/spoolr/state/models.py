"""State data models for spool directory checkpoints."""

from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt

CHECKPOINT_VERSION = 1


class FileIdentity(BaseModel):
    """Stable identity of a spooled file.

    Attributes:
        name: Filename relative to the spool directory.
        device: Device number the file lives on.
        inode: Inode number of the file.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    device: int
    inode: int

    @classmethod
    def from_stat(cls, path: Path, stat: os.stat_result) -> "FileIdentity":
        """Build an identity from a path and its ``stat`` result."""
        return cls(name=path.name, device=stat.st_dev, inode=stat.st_ino)

    @property
    def stable_key(self) -> tuple[int, int]:
        """Return the ``(device, inode)`` pair that survives renames."""
        return (self.device, self.inode)

    def matches(self, stat: os.stat_result) -> bool:
        """Return True when ``stat`` describes the same underlying file."""
        return self.stable_key == (stat.st_dev, stat.st_ino)


class Checkpoint(BaseModel):
    """Persisted read position for the file currently being consumed."""

    model_config = ConfigDict(extra="forbid")

    version: int = CHECKPOINT_VERSION
    identity: FileIdentity
    offset: NonNegativeInt
    completed: bool = False
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


__all__ = ["CHECKPOINT_VERSION", "FileIdentity", "Checkpoint"]
