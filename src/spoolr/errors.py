"""Exception taxonomy for spool directory reading."""

from __future__ import annotations


class SpoolError(Exception):
    """Base exception for spool reader operations."""


class NoCandidateError(SpoolError):
    """Raised when the spool directory holds no eligible file yet."""


class DeserializerError(SpoolError):
    """Raised when a file cannot be decoded into records."""


class FinalizeError(SpoolError):
    """Raised when a fully committed file cannot be renamed or deleted."""


class FatalSpoolError(SpoolError):
    """Base for errors that halt a reader instance."""


class IdentityCollisionError(FatalSpoolError):
    """Raised when two distinct files resolve to the same tracked identity."""


class SpoolContractError(FatalSpoolError):
    """Raised when a claimed file was modified after it was opened."""


__all__ = [
    "SpoolError",
    "NoCandidateError",
    "DeserializerError",
    "FinalizeError",
    "FatalSpoolError",
    "IdentityCollisionError",
    "SpoolContractError",
]
