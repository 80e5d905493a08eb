"""Spool directory discovery utilities."""

from __future__ import annotations

import re
import stat as stat_module
import time
from pathlib import Path
from typing import TYPE_CHECKING, Iterator, Literal

from spoolr.errors import IdentityCollisionError, NoCandidateError
from spoolr.state.models import FileIdentity

from .models import FileCandidate

if TYPE_CHECKING:
    from spoolr.config.models import SpoolSettings


class DirectoryScanner:
    """List and order the files of a spool directory that are ready for reading."""

    def __init__(
        self,
        root: Path,
        *,
        completed_suffix: str,
        ignore_pattern: str = "^$",
        tracker_directory: Path | None = None,
        consume_order: Literal["oldest", "youngest"] = "oldest",
        include_hidden: bool = False,
        min_age_seconds: float = 0.0,
    ) -> None:
        self.root = root
        self.completed_suffix = completed_suffix
        self.ignore_pattern = re.compile(ignore_pattern)
        self.tracker_directory = tracker_directory
        self.consume_order = consume_order
        self.include_hidden = include_hidden
        self.min_age_seconds = min_age_seconds

    @classmethod
    def from_settings(cls, spool_directory: Path, settings: SpoolSettings) -> DirectoryScanner:
        """Build a scanner for ``spool_directory`` using the configured filters."""
        return cls(
            spool_directory,
            completed_suffix=settings.completed_suffix,
            ignore_pattern=settings.ignore_pattern,
            tracker_directory=settings.resolved_tracker_directory(),
            consume_order=settings.consume_order,
            include_hidden=settings.include_hidden,
            min_age_seconds=settings.min_age_seconds,
        )

    def list_candidates(self) -> list[FileCandidate]:
        """Return every eligible file directly under the spool directory.

        Returns:
            list[FileCandidate]: Candidates in directory listing order.

        Raises:
            IdentityCollisionError: If two names refer to the same underlying file.
        """
        candidates: list[FileCandidate] = []
        seen: dict[tuple[int, int], Path] = {}
        for candidate in self._iter_candidates():
            key = candidate.identity.stable_key
            previous = seen.get(key)
            if previous is not None:
                raise IdentityCollisionError(
                    f"{previous.name} and {candidate.name} resolve to the same file "
                    f"(device={key[0]}, inode={key[1]})."
                )
            seen[key] = candidate.path
            candidates.append(candidate)
        return candidates

    def select_next(self, exclude: Path | None = None) -> FileCandidate:
        """Pick the next file to read according to the consume order.

        Ties on modification time are broken by filename so ordering stays
        reproducible when several files land within the same clock tick.

        Args:
            exclude: Path that must not be selected, typically the file just read.

        Returns:
            FileCandidate: The candidate to open next.

        Raises:
            NoCandidateError: If no eligible file exists.
        """
        candidates = [c for c in self.list_candidates() if exclude is None or c.path != exclude]
        if not candidates:
            raise NoCandidateError(f"No eligible files in {self.root}")

        if self.consume_order == "youngest":
            return min(candidates, key=lambda c: (-c.modified_ns, c.name))
        return min(candidates, key=lambda c: (c.modified_ns, c.name))

    def is_eligible_name(self, name: str) -> bool:
        """Return True when a filename passes the suffix, hidden and ignore filters."""
        if name.endswith(self.completed_suffix):
            return False
        if not self.include_hidden and name.startswith("."):
            return False
        if self.ignore_pattern.fullmatch(name):
            return False
        return True

    def _iter_candidates(self) -> Iterator[FileCandidate]:
        """Yield candidates that pass every filter."""
        root = self.root
        if not root.is_dir():
            return

        tracker = self.tracker_directory.resolve() if self.tracker_directory else None
        cutoff_ns = time.time_ns() - int(self.min_age_seconds * 1_000_000_000)

        for path in root.iterdir():
            if tracker is not None and path.resolve() == tracker:
                continue
            if not self.is_eligible_name(path.name):
                continue
            try:
                stat = path.stat()
            except OSError:
                continue
            if not stat_module.S_ISREG(stat.st_mode):
                continue
            if self.min_age_seconds > 0 and stat.st_mtime_ns > cutoff_ns:
                continue
            yield FileCandidate(
                path=path,
                identity=FileIdentity.from_stat(path, stat),
                modified_ns=stat.st_mtime_ns,
                size_bytes=stat.st_size,
            )


__all__ = ["DirectoryScanner"]
