"""Data models shared by the ingestion components."""

from __future__ import annotations

from pathlib import Path
from typing import Dict

from pydantic import BaseModel, ConfigDict, Field

from spoolr.state.models import FileIdentity


class Record(BaseModel):
    """A single record read from a spooled file.

    Attributes:
        headers: String metadata attached to the record.
        body: Opaque record payload.
    """

    model_config = ConfigDict(frozen=True)

    headers: Dict[str, str] = Field(default_factory=dict)
    body: bytes = b""

    def with_headers(self, extra: Dict[str, str]) -> "Record":
        """Return a copy of the record with ``extra`` merged into its headers."""
        if not extra:
            return self
        return Record(headers={**self.headers, **extra}, body=self.body)


class FileCandidate(BaseModel):
    """A file eligible for selection by the directory scanner."""

    model_config = ConfigDict(frozen=True)

    path: Path
    identity: FileIdentity
    modified_ns: int
    size_bytes: int

    @property
    def name(self) -> str:
        """Return the candidate's filename."""
        return self.path.name


__all__ = ["Record", "FileCandidate"]
