"""Custom exceptions for configuration management."""

from __future__ import annotations


class ConfigError(Exception):
    """Raised when configuration data cannot be loaded or validated.

    Attributes:
        source: Layer that supplied the offending data (``file``, ``environment``
            or ``cli``), when known.
    """

    def __init__(self, message: str, *, source: str | None = None) -> None:
        super().__init__(message)
        self.source = source
