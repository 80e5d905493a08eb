"""Configuration models describing spoolr settings."""

from __future__ import annotations

import re
from enum import Enum
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SpoolrBaseModel(BaseModel):
    """Shared configuration for spoolr Pydantic models."""

    model_config = ConfigDict(extra="forbid")


class DeserializerKind(str, Enum):
    """Record formats understood by the reader."""

    LINE = "LINE"
    BLOB = "BLOB"
    LENGTH_PREFIXED = "LENGTH_PREFIXED"


class SpoolSettings(SpoolrBaseModel):
    """Spool directory options governing file selection and completion.

    Attributes:
        spool_directory: Directory the producer deposits immutable files into.
        completed_suffix: Suffix appended to fully consumed files.
        ignore_pattern: Regular expression; filenames matching it in full are never selected.
        tracker_directory: Directory holding the checkpoint; defaults to ``<spool>/.spoolr``.
        delete_policy: Whether completed files are renamed (``never``) or deleted (``immediate``).
        deserializer: Record format used to split files into records.
        consume_order: Whether the oldest or youngest file by modification time is read first.
        min_age_seconds: Minimum age a file must reach before it becomes eligible.
        include_hidden: Whether dot-files are eligible for reading.
        annotate_file_name: Whether records carry the absolute source path as a header.
        file_name_header: Header key used when ``annotate_file_name`` is enabled.
        annotate_base_name: Whether records carry the source filename as a header.
        base_name_header: Header key used when ``annotate_base_name`` is enabled.
        input_charset: Character set the spooled files are encoded in.
        decode_error_policy: How undecodable input bytes are handled.
    """

    spool_directory: Optional[Path] = None
    completed_suffix: str = ".COMPLETED"
    ignore_pattern: str = "^$"
    tracker_directory: Optional[Path] = None
    delete_policy: Literal["never", "immediate"] = "never"
    deserializer: DeserializerKind = DeserializerKind.LINE
    consume_order: Literal["oldest", "youngest"] = "oldest"
    min_age_seconds: float = Field(default=0.0, ge=0)
    include_hidden: bool = False
    annotate_file_name: bool = False
    file_name_header: str = "file"
    annotate_base_name: bool = False
    base_name_header: str = "basename"
    input_charset: str = "utf-8"
    decode_error_policy: Literal["fail", "replace", "ignore"] = "fail"

    @field_validator("completed_suffix")
    @classmethod
    def _suffix_not_empty(cls, value: str) -> str:
        if not value:
            raise ValueError("completed_suffix must not be empty")
        return value

    @field_validator("ignore_pattern")
    @classmethod
    def _pattern_compiles(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"ignore_pattern is not a valid regular expression: {exc}") from exc
        return value

    def resolved_tracker_directory(self) -> Path:
        """Return the tracker directory, falling back to a spool subdirectory.

        Returns:
            Path: Directory that stores the checkpoint file.

        Raises:
            ValueError: If no spool directory is configured.
        """
        if self.tracker_directory is not None:
            return self.tracker_directory.expanduser()
        if self.spool_directory is None:
            raise ValueError("spool_directory is not configured")
        return self.spool_directory.expanduser() / ".spoolr"


class DeserializerSettings(SpoolrBaseModel):
    """Options passed to the configured deserializer.

    Attributes:
        max_line_length: Maximum bytes per line record before truncation.
        output_charset: Character set record bodies are re-encoded into.
        max_blob_length: Maximum bytes per blob record.
    """

    max_line_length: int = Field(default=2048, ge=1)
    output_charset: str = "utf-8"
    max_blob_length: int = Field(default=100_000_000, ge=1)


class WatchSettings(SpoolrBaseModel):
    """Watch loop configuration.

    Attributes:
        batch_size: Maximum records requested per read.
        debounce_seconds: Quiet period after a filesystem event before draining.
        poll_interval_seconds: Interval between drains when no events arrive.
        error_backoff_seconds: Initial delay after a failed drain.
        max_error_backoff_seconds: Upper bound for the failure backoff.
    """

    batch_size: int = Field(default=100, ge=1)
    debounce_seconds: float = 0.5
    poll_interval_seconds: float = 5.0
    error_backoff_seconds: float = 1.0
    max_error_backoff_seconds: float = 60.0


class LoggingSettings(SpoolrBaseModel):
    """Runtime logging configuration.

    Attributes:
        level: Logging verbosity level.
        max_size_mb: Maximum log size before rotation.
        backup_count: Number of historical log files to retain.
    """

    level: str = "WARNING"
    max_size_mb: int = 100
    backup_count: int = 5


class CLIOptions(SpoolrBaseModel):
    """CLI behavior defaults and presentation preferences.

    Attributes:
        quiet_default: Whether commands suppress non-error output by default.
        summary_default: Whether commands only print summary lines by default.
    """

    quiet_default: bool = False
    summary_default: bool = False


class SpoolrConfig(SpoolrBaseModel):
    """Top-level configuration struct for spoolr.

    Attributes:
        spool: Spool directory settings.
        deserializer: Deserializer settings.
        watch: Watch loop settings.
        logging: Logging configuration.
        cli: CLI presentation defaults.
    """

    spool: SpoolSettings = Field(default_factory=SpoolSettings)
    deserializer: DeserializerSettings = Field(default_factory=DeserializerSettings)
    watch: WatchSettings = Field(default_factory=WatchSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    cli: CLIOptions = Field(default_factory=CLIOptions)


__all__ = [
    "SpoolrBaseModel",
    "DeserializerKind",
    "SpoolSettings",
    "DeserializerSettings",
    "WatchSettings",
    "LoggingSettings",
    "CLIOptions",
    "SpoolrConfig",
]
