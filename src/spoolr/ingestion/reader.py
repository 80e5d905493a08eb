"""Reliable, checkpointed reading of a spool directory."""

from __future__ import annotations

import filecmp
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional, Protocol, Sequence

from spoolr.config import ConfigError
from spoolr.config.models import DeserializerSettings, SpoolSettings
from spoolr.errors import (
    FatalSpoolError,
    FinalizeError,
    IdentityCollisionError,
    NoCandidateError,
    SpoolContractError,
)
from spoolr.state import PositionTracker
from spoolr.state.models import FileIdentity

from .deserializers import EventDeserializer, resolve_deserializer
from .discovery import DirectoryScanner
from .models import Record

LOGGER = logging.getLogger(__name__)


class ReliableEventReader(Protocol):
    """Capabilities a pipeline needs from a reader: read, acknowledge, release."""

    def read_events(self, max_batch: int) -> Sequence[Record]: ...

    def commit(self) -> None: ...

    def close(self) -> None: ...


class FilePhase(str, Enum):
    """Lifecycle of the file currently being read."""

    OPENING = "opening"
    READING = "reading"
    COMMITTING = "committing"
    EOF_PENDING_COMMIT = "eof_pending_commit"
    COMPLETING = "completing"
    CLOSED = "closed"


@dataclass(slots=True)
class _ActiveFile:
    path: Path
    identity: FileIdentity
    deserializer: EventDeserializer
    size_bytes: int
    modified_ns: int
    phase: FilePhase = FilePhase.OPENING
    outstanding: bool = False


class ReliableSpoolingFileReader:
    """Deliver records from a spool directory with at-least-once semantics.

    Records returned by :meth:`read_events` are not considered consumed until
    :meth:`commit` succeeds. Calling :meth:`read_events` again without a commit
    replays the same records, and a restarted process resumes from the last
    committed record boundary. Once every record of a file has been committed
    the file is renamed with the completed suffix (or deleted) and the next
    file is selected.

    The reader is single-threaded: one caller drives ``read_events`` and
    ``commit`` in sequence.
    """

    def __init__(
        self,
        settings: SpoolSettings,
        deserializer_settings: DeserializerSettings | None = None,
    ) -> None:
        """Initialize the reader.

        Args:
            settings: Spool directory configuration.
            deserializer_settings: Options passed to the deserializer.

        Raises:
            ConfigError: If the spool directory is missing or the deserializer is unknown.
        """
        if settings.spool_directory is None:
            raise ConfigError("spool.spool_directory must be configured.")
        spool_directory = settings.spool_directory.expanduser()
        if not spool_directory.is_dir():
            raise ConfigError(f"Spool directory does not exist: {spool_directory}")

        try:
            self._deserializer_factory = resolve_deserializer(settings.deserializer)
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc

        self._settings = settings
        self._deserializer_settings = deserializer_settings or DeserializerSettings()
        self._spool_directory = spool_directory
        tracker_directory = settings.resolved_tracker_directory()
        self._tracker = PositionTracker(spool_directory, tracker_directory)
        self._tracker.initialize()
        self._scanner = DirectoryScanner.from_settings(spool_directory, settings)

        self._active: Optional[_ActiveFile] = None
        self._pending_finalize: Optional[tuple[Path, FileIdentity]] = None
        self._recovered = False
        self._fatal: Optional[FatalSpoolError] = None
        self._last_file_read: Optional[Path] = None

    # ------------------------------------------------------------------ #
    # Public API                                                         #
    # ------------------------------------------------------------------ #

    @property
    def spool_directory(self) -> Path:
        return self._spool_directory

    @property
    def scanner(self) -> DirectoryScanner:
        return self._scanner

    @property
    def tracker(self) -> PositionTracker:
        return self._tracker

    @property
    def current_file(self) -> Optional[Path]:
        """Return the path of the file being read, if any."""
        return self._active.path if self._active is not None else None

    @property
    def phase(self) -> FilePhase:
        """Return the lifecycle phase of the current file."""
        return self._active.phase if self._active is not None else FilePhase.CLOSED

    @property
    def last_file_read(self) -> Optional[Path]:
        """Return the path of the most recently completed file."""
        return self._last_file_read

    @property
    def halted(self) -> bool:
        """Return True once a fatal error has stopped the reader."""
        return self._fatal is not None

    def read_events(self, max_batch: int) -> list[Record]:
        """Read up to ``max_batch`` records without moving the committed position.

        Args:
            max_batch: Maximum number of records to return; must be positive.

        Returns:
            list[Record]: Records from the current file, possibly empty when no
            file is ready.

        Raises:
            ValueError: If ``max_batch`` is not positive.
            FinalizeError: If a previously committed file still cannot be completed.
            FatalSpoolError: If the reader has been halted.
        """
        if max_batch < 1:
            raise ValueError("max_batch must be a positive integer")
        self._raise_if_halted()

        with self._halt_on_fatal():
            self._recover()
            self._retry_pending_finalize()

            while True:
                active = self._active if self._active is not None else self._open_next()
                if active is None:
                    return []

                deserializer = active.deserializer
                deserializer.reset()
                active.outstanding = False
                try:
                    records = deserializer.read_events(max_batch)
                except BaseException:
                    deserializer.reset()
                    raise
                if records:
                    active.outstanding = True
                    if len(records) < max_batch:
                        active.phase = FilePhase.EOF_PENDING_COMMIT
                    else:
                        active.phase = FilePhase.READING
                    return [self._annotate(record, active) for record in records]

                # Everything up to EOF is already committed.
                self._finalize(active)

    def commit(self) -> None:
        """Acknowledge the records returned by the last :meth:`read_events` call.

        The committed offset is persisted before the in-memory mark moves, so a
        failed checkpoint write leaves the batch ready to be re-read.

        Raises:
            OSError: If the checkpoint cannot be written.
            FatalSpoolError: If the reader has been halted.
        """
        self._raise_if_halted()

        with self._halt_on_fatal():
            if self._pending_finalize is not None:
                try:
                    self._retry_pending_finalize()
                except FinalizeError as exc:
                    LOGGER.warning("%s", exc)

            active = self._active
            if active is None or not active.outstanding:
                return

            previous = active.phase
            deserializer = active.deserializer
            active.phase = FilePhase.COMMITTING
            try:
                self._tracker.commit(active.identity, deserializer.position)
            except BaseException:
                active.phase = previous
                raise
            deserializer.mark()
            active.outstanding = False

            if previous is FilePhase.EOF_PENDING_COMMIT:
                try:
                    self._finalize(active)
                except FinalizeError as exc:
                    LOGGER.warning("%s", exc)
            else:
                active.phase = FilePhase.READING

    def close(self) -> None:
        """Release the open file handle.

        The checkpoint is left untouched, so a later call re-loads it and
        resumes from the last committed record.
        """
        if self._active is not None:
            self._active.deserializer.close()
            self._active.phase = FilePhase.CLOSED
            self._active = None
        self._pending_finalize = None
        self._recovered = False

    def __enter__(self) -> "ReliableSpoolingFileReader":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------ #
    # Internal helpers                                                   #
    # ------------------------------------------------------------------ #

    @contextmanager
    def _halt_on_fatal(self) -> Iterator[None]:
        """Stop the reader permanently when a fatal error escapes."""
        try:
            yield
        except FatalSpoolError as exc:
            LOGGER.error("Halting reader for %s: %s", self._spool_directory, exc)
            self._fatal = exc
            self.close()
            raise

    def _raise_if_halted(self) -> None:
        if self._fatal is not None:
            raise self._fatal

    def _recover(self) -> None:
        """Resume from the persisted checkpoint on first use."""
        if self._recovered:
            return
        checkpoint = self._tracker.load()
        self._recovered = True
        if checkpoint is None:
            return

        path = self._spool_directory / checkpoint.identity.name
        if checkpoint.completed:
            LOGGER.info("Completing %s left over from a previous run.", path)
            self._pending_finalize = (path, checkpoint.identity)
            return

        LOGGER.info("Resuming %s at offset %d.", path, checkpoint.offset)
        self._active = self._open(path, checkpoint.identity, checkpoint.offset)

    def _open_next(self) -> Optional[_ActiveFile]:
        """Open the next candidate chosen by the scanner, if any."""
        try:
            candidate = self._scanner.select_next()
        except NoCandidateError:
            return None
        LOGGER.info("Opening %s.", candidate.path)
        self._active = self._open(candidate.path, candidate.identity, 0)
        return self._active

    def _open(self, path: Path, identity: FileIdentity, offset: int) -> _ActiveFile:
        stream = path.open("rb")
        try:
            stat = os.fstat(stream.fileno())
            if not identity.matches(stat):
                raise IdentityCollisionError(
                    f"{path} is no longer the file it was selected as "
                    f"(expected inode {identity.inode}, found {stat.st_ino})."
                )
            deserializer = self._deserializer_factory(
                stream,
                self._deserializer_settings,
                input_charset=self._settings.input_charset,
                decode_error_policy=self._settings.decode_error_policy,
            )
            if offset:
                deserializer.seek(offset)
        except BaseException:
            stream.close()
            raise

        return _ActiveFile(
            path=path,
            identity=identity,
            deserializer=deserializer,
            size_bytes=stat.st_size,
            modified_ns=stat.st_mtime_ns,
        )

    def _annotate(self, record: Record, active: _ActiveFile) -> Record:
        extra: dict[str, str] = {}
        if self._settings.annotate_file_name:
            extra[self._settings.file_name_header] = str(active.path.resolve())
        if self._settings.annotate_base_name:
            extra[self._settings.base_name_header] = active.path.name
        return record.with_headers(extra)

    def _finalize(self, active: _ActiveFile) -> None:
        """Checkpoint a fully read file as completed, then rename or delete it.

        Raises:
            SpoolContractError: If the file changed after it was opened.
            FinalizeError: If the rename or delete fails; it is retried later.
        """
        active.phase = FilePhase.COMPLETING
        try:
            stat = active.path.stat()
        except FileNotFoundError as exc:
            raise SpoolContractError(f"File was removed while being read: {active.path}") from exc
        if stat.st_size != active.size_bytes or stat.st_mtime_ns != active.modified_ns:
            raise SpoolContractError(
                f"File has been modified since being read: {active.path}. "
                "Spooled files must not change once they are placed in the spool directory."
            )

        self._tracker.commit(active.identity, active.deserializer.position, completed=True)
        active.deserializer.close()
        active.phase = FilePhase.CLOSED
        self._active = None
        self._pending_finalize = (active.path, active.identity)
        self._retry_pending_finalize()

    def _retry_pending_finalize(self) -> None:
        if self._pending_finalize is None:
            return
        path, identity = self._pending_finalize
        try:
            self._complete_file(path, identity)
        except OSError as exc:
            raise FinalizeError(f"Unable to complete {path}: {exc}") from exc
        self._pending_finalize = None
        self._last_file_read = path

    def _complete_file(self, path: Path, identity: FileIdentity) -> None:
        if self._settings.delete_policy == "immediate":
            path.unlink(missing_ok=True)
            LOGGER.info("Deleted completed file %s.", path)
            return

        destination = path.with_name(path.name + self._settings.completed_suffix)
        if not path.exists():
            if not destination.exists():
                LOGGER.warning("%s was removed before it could be marked completed.", path)
            return

        if destination.exists():
            if filecmp.cmp(path, destination, shallow=False):
                LOGGER.warning(
                    "Completed file %s already exists with the same contents; removing %s.",
                    destination,
                    path,
                )
                path.unlink()
                return
            raise IdentityCollisionError(
                f"File name has been re-used with different files: {destination} already "
                f"exists and differs from {path} (inode {identity.inode})."
            )

        path.rename(destination)
        LOGGER.info("Completed %s -> %s.", path, destination.name)


__all__ = ["ReliableEventReader", "ReliableSpoolingFileReader", "FilePhase"]
