"""Filesystem watch service that drains a spool directory as files arrive."""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Literal, Optional, Sequence

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from spoolr.config.models import WatchSettings
from spoolr.errors import FatalSpoolError, SpoolError
from spoolr.ingestion import Record, ReliableSpoolingFileReader

LOGGER = logging.getLogger(__name__)

CommitPolicy = Literal["always", "on-success"]
RecordSink = Callable[[Sequence[Record]], None]


@dataclass(slots=True)
class DrainResult:
    """Outcome of a single drain pass over the spool directory.

    Attributes:
        batches: Number of non-empty batches handed to the sink.
        records: Number of records handed to the sink.
        committed: Number of records acknowledged through ``commit``.
        completed_files: Files finalized during the pass.
        errors: Sink failures that left a batch uncommitted.
    """

    batches: int = 0
    records: int = 0
    committed: int = 0
    completed_files: list[Path] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def has_activity(self) -> bool:
        return bool(self.records or self.completed_files or self.errors)


class WatchService:
    """Drive a reliable reader from filesystem notifications and a poll timer."""

    def __init__(
        self,
        reader: ReliableSpoolingFileReader,
        sink: RecordSink,
        settings: WatchSettings | None = None,
        *,
        commit_policy: CommitPolicy = "on-success",
        debounce_override: Optional[float] = None,
    ) -> None:
        """Initialize the watch service.

        Args:
            reader: Reader bound to the spool directory being watched.
            sink: Callable receiving each batch of records.
            settings: Watch loop settings.
            commit_policy: ``on-success`` commits only after the sink returns;
                ``always`` commits every batch regardless of sink failures.
            debounce_override: Optional debounce interval override in seconds.
        """
        self._reader = reader
        self._sink = sink
        self._settings = settings or WatchSettings()
        self._commit_policy = commit_policy
        self._observer: Optional[Observer] = None
        self._queue: queue.Queue[Path | None] = queue.Queue()
        self._stop_event = threading.Event()
        self._debounce_seconds = (
            max(0.05, debounce_override)
            if debounce_override and debounce_override > 0
            else max(0.05, self._settings.debounce_seconds)
        )
        self._poll_interval = max(0.1, self._settings.poll_interval_seconds)
        self._initial_backoff = max(0.1, self._settings.error_backoff_seconds)
        self._max_backoff = max(self._initial_backoff, self._settings.max_error_backoff_seconds)
        self._backoff = self._initial_backoff

    # ------------------------------------------------------------------ #
    # Public API                                                         #
    # ------------------------------------------------------------------ #

    def process_once(self) -> DrainResult:
        """Read and commit until the spool directory has nothing more to offer.

        Returns:
            DrainResult: Counters describing the pass.
        """
        result = DrainResult()
        batch_size = self._settings.batch_size
        last_completed = self._reader.last_file_read

        while True:
            records = self._reader.read_events(batch_size)
            last_completed = self._note_completed(result, last_completed)
            if not records:
                break

            result.batches += 1
            result.records += len(records)
            try:
                self._sink(records)
            except Exception as exc:
                LOGGER.warning("Sink rejected a batch of %d records: %s", len(records), exc)
                result.errors.append(f"{exc.__class__.__name__}: {exc}")
                if self._commit_policy == "on-success":
                    break

            self._reader.commit()
            result.committed += len(records)
            last_completed = self._note_completed(result, last_completed)

        return result

    def watch(self, callback: Callable[[DrainResult], None]) -> None:
        """Drain the spool directory whenever it changes, until stopped.

        Args:
            callback: Callable invoked with each pass that did any work.

        Raises:
            RuntimeError: If the service is already running.
            FatalSpoolError: If the reader halts.
        """
        if self._observer is not None:
            raise RuntimeError("WatchService is already running.")

        self._stop_event.clear()
        self._observer = Observer()
        handler = _WatchEventHandler(self._queue, self._reader.tracker.tracker_directory)
        self._observer.schedule(handler, str(self._reader.spool_directory), recursive=False)
        self._observer.start()
        try:
            self._drain(callback)
            self._run_loop(callback)
        finally:
            self.stop()

    def stop(self) -> None:
        """Terminate the watch service and release resources."""
        self._stop_event.set()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
        # Unblock the queue so the loop can exit.
        self._queue.put(None)

    # ------------------------------------------------------------------ #
    # Internal helpers                                                   #
    # ------------------------------------------------------------------ #

    def _run_loop(self, callback: Callable[[DrainResult], None]) -> None:
        flush_deadline: Optional[float] = None

        while not self._stop_event.is_set():
            if flush_deadline is not None:
                timeout = max(0.0, flush_deadline - time.monotonic())
            else:
                timeout = self._poll_interval

            try:
                path = self._queue.get(timeout=timeout)
            except queue.Empty:
                self._drain(callback)
                flush_deadline = None
                continue

            if path is None:
                break
            flush_deadline = time.monotonic() + self._debounce_seconds

    def _drain(self, callback: Callable[[DrainResult], None]) -> None:
        try:
            result = self.process_once()
        except FatalSpoolError:
            raise
        except (SpoolError, OSError) as exc:
            LOGGER.warning(
                "Drain of %s failed (%s); retrying in %.1fs.",
                self._reader.spool_directory,
                exc,
                self._backoff,
            )
            self._stop_event.wait(self._backoff)
            self._backoff = min(self._backoff * 2, self._max_backoff)
            return

        self._backoff = self._initial_backoff
        if result.has_activity:
            callback(result)

    def _note_completed(self, result: DrainResult, previous: Optional[Path]) -> Optional[Path]:
        current = self._reader.last_file_read
        if current is not None and current != previous:
            result.completed_files.append(current)
        return current


class _WatchEventHandler(FileSystemEventHandler):
    """Forward filesystem events into the service queue."""

    def __init__(self, queue_handle: queue.Queue[Path | None], tracker_directory: Path) -> None:
        self._queue = queue_handle
        self._tracker_directory = tracker_directory.resolve()

    def on_created(self, event: FileSystemEvent) -> None:
        """Handle a filesystem create event."""
        self._enqueue(event)

    def on_moved(self, event: FileSystemEvent) -> None:  # pragma: no cover - watchdog-specific
        """Handle a filesystem move event."""
        self._enqueue(event)

    def on_closed(self, event: FileSystemEvent) -> None:  # pragma: no cover - platform-specific
        """Handle a file being closed after writing."""
        self._enqueue(event)

    def _enqueue(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        path = Path(str(getattr(event, "dest_path", "") or event.src_path))
        if self._tracker_directory in path.resolve().parents:
            return
        self._queue.put(path)
