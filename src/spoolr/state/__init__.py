"""Durable checkpoint persistence for spool directories."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from spoolr.errors import IdentityCollisionError

from .errors import CheckpointCorruptError, StateError
from .models import CHECKPOINT_VERSION, Checkpoint, FileIdentity

CHECKPOINT_FILENAME = "checkpoint.json"

LOGGER = logging.getLogger(__name__)


class PositionTracker:
    """Persist the committed offset of the active file in a tracker directory.

    The live checkpoint is replaced atomically: a new payload is written to a
    temporary file in the same directory, flushed to disk, then renamed over
    ``checkpoint.json``. Readers therefore observe either the previous
    checkpoint or the new one, never a partial write.
    """

    def __init__(self, spool_directory: Path, tracker_directory: Path) -> None:
        """Initialize the tracker.

        Args:
            spool_directory: Directory whose files the checkpoint refers to.
            tracker_directory: Directory that stores the checkpoint file.
        """
        self._spool_directory = spool_directory
        self._tracker_directory = tracker_directory

    @property
    def tracker_directory(self) -> Path:
        """Return the directory holding the checkpoint."""
        return self._tracker_directory

    @property
    def checkpoint_path(self) -> Path:
        """Return the path of the live checkpoint file."""
        return self._tracker_directory / CHECKPOINT_FILENAME

    def load(self) -> Checkpoint | None:
        """Load the live checkpoint, validating it against the spool directory.

        Returns:
            Checkpoint | None: The checkpoint to resume from, or ``None`` for a fresh start.

        Raises:
            CheckpointCorruptError: If the payload is malformed or its offset is impossible.
            IdentityCollisionError: If an unfinished checkpoint's filename now names another file.
        """
        checkpoint = self.read()
        if checkpoint is None:
            return None

        path = self._spool_directory / checkpoint.identity.name
        try:
            stat = path.stat()
        except FileNotFoundError:
            LOGGER.info("Discarding checkpoint for %s; the file no longer exists.", path)
            self.clear()
            return None

        if not checkpoint.identity.matches(stat):
            if checkpoint.completed:
                LOGGER.info("Discarding completed checkpoint for %s; the name was reused.", path)
                self.clear()
                return None
            raise IdentityCollisionError(
                f"Checkpoint for {path} refers to inode {checkpoint.identity.inode}, "
                f"but the file on disk is inode {stat.st_ino}."
            )

        if checkpoint.offset > stat.st_size:
            raise CheckpointCorruptError(
                f"Checkpoint offset {checkpoint.offset} is beyond the end of {path} "
                f"({stat.st_size} bytes)."
            )
        return checkpoint

    def read(self) -> Checkpoint | None:
        """Return the raw checkpoint without consulting the spool directory.

        Raises:
            CheckpointCorruptError: If the stored payload cannot be parsed.
        """
        path = self.checkpoint_path
        if not path.exists():
            return None

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise CheckpointCorruptError(f"Invalid checkpoint data in {path}: {exc}") from exc

        try:
            checkpoint = Checkpoint.model_validate(data)
        except ValidationError as exc:
            raise CheckpointCorruptError(f"Invalid checkpoint data in {path}: {exc}") from exc

        if checkpoint.version != CHECKPOINT_VERSION:
            raise CheckpointCorruptError(
                f"Unsupported checkpoint version {checkpoint.version} in {path}."
            )
        return checkpoint

    def commit(self, identity: FileIdentity, offset: int, *, completed: bool = False) -> Checkpoint:
        """Atomically persist a new checkpoint.

        Args:
            identity: Identity of the file being read.
            offset: Byte offset of the last committed record boundary.
            completed: Whether every record of the file has been committed.

        Returns:
            Checkpoint: The checkpoint that is now live.
        """
        checkpoint = Checkpoint(
            identity=identity,
            offset=offset,
            completed=completed,
            updated_at=datetime.now(timezone.utc),
        )
        self._write_atomic(checkpoint.model_dump_json(indent=2))
        LOGGER.debug("Checkpoint %s @ %d (completed=%s)", identity.name, offset, completed)
        return checkpoint

    def clear(self) -> None:
        """Remove the live checkpoint if present."""
        self.checkpoint_path.unlink(missing_ok=True)

    def initialize(self) -> Path:
        """Create the tracker directory.

        Returns:
            Path: Directory containing the checkpoint.
        """
        self._tracker_directory.mkdir(parents=True, exist_ok=True)
        return self._tracker_directory

    def _write_atomic(self, payload: str) -> None:
        directory = self.initialize()
        fd, tmp_name = tempfile.mkstemp(prefix=".checkpoint-", suffix=".tmp", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.write("\n")
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self.checkpoint_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


__all__ = [
    "PositionTracker",
    "CHECKPOINT_FILENAME",
    "Checkpoint",
    "FileIdentity",
    "StateError",
    "CheckpointCorruptError",
]
