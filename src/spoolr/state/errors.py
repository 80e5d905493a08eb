"""Checkpoint state errors."""

from spoolr.errors import FatalSpoolError


class StateError(Exception):
    """Base exception for checkpoint persistence operations."""


class CheckpointCorruptError(StateError, FatalSpoolError):
    """Raised when the persisted checkpoint is malformed or inconsistent with disk."""
