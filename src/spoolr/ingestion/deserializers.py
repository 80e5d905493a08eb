"""Record deserializers with markable byte cursors.

A deserializer owns an open binary stream for one spooled file and turns it
into :class:`~spoolr.ingestion.models.Record` objects. It tracks two plain
integers: the current read position and the committed mark. ``mark()`` copies
the position into the mark and ``reset()`` seeks back to it, which is how the
reader replays an uncommitted batch. Both values are always record boundaries,
so resuming from a persisted mark never splits or skips a record.
"""

from __future__ import annotations

import codecs
import io
import logging
import struct
from abc import ABC, abstractmethod
from typing import BinaryIO, Dict, Literal, Optional

from spoolr.config.models import DeserializerKind, DeserializerSettings
from spoolr.errors import DeserializerError

from .models import Record

LOGGER = logging.getLogger(__name__)

DecodePolicy = Literal["fail", "replace", "ignore"]

_CODEC_ERRORS: Dict[str, str] = {"fail": "strict", "replace": "replace", "ignore": "ignore"}


class EventDeserializer(ABC):
    """Base class for deserializers reading records from a binary stream."""

    def __init__(
        self,
        stream: BinaryIO,
        settings: DeserializerSettings,
        *,
        input_charset: str = "utf-8",
        decode_error_policy: DecodePolicy = "fail",
    ) -> None:
        self._stream = stream
        self._settings = settings
        self._input_charset = input_charset
        self._codec_errors = _CODEC_ERRORS[decode_error_policy]
        self._position = stream.tell()
        self._mark = self._position

    @property
    def position(self) -> int:
        """Return the byte offset just past the last record read."""
        return self._position

    @property
    def mark_position(self) -> int:
        """Return the committed byte offset."""
        return self._mark

    def read_event(self) -> Optional[Record]:
        """Read the next record, or return ``None`` at end of stream."""
        record = self._read_record()
        if record is not None:
            self._position = self._stream.tell()
        return record

    def read_events(self, count: int) -> list[Record]:
        """Read up to ``count`` records, stopping early at end of stream."""
        records: list[Record] = []
        while len(records) < count:
            record = self.read_event()
            if record is None:
                break
            records.append(record)
        return records

    def mark(self) -> None:
        """Commit the current position as the new mark."""
        self._mark = self._position

    def reset(self) -> None:
        """Rewind the stream to the last mark."""
        self._stream.seek(self._mark)
        self._position = self._mark

    def seek(self, offset: int) -> None:
        """Position both cursor and mark at ``offset``, which must be a record boundary."""
        self._stream.seek(offset)
        self._position = offset
        self._mark = offset

    def close(self) -> None:
        """Close the underlying stream."""
        self._stream.close()

    @property
    def closed(self) -> bool:
        return self._stream.closed

    @abstractmethod
    def _read_record(self) -> Optional[Record]:
        """Read one record from the stream or return ``None`` at end of stream."""

    def _transcode(self, raw: bytes) -> bytes:
        try:
            text = raw.decode(self._input_charset, errors=self._codec_errors)
        except UnicodeDecodeError as exc:
            raise DeserializerError(
                f"Cannot decode bytes at offset {self._position} as {self._input_charset}: {exc}"
            ) from exc
        return text.encode(self._settings.output_charset)


class LineDeserializer(EventDeserializer):
    """Treat every line of the file as one record.

    Lines end at ``\\n``; a preceding ``\\r`` is dropped. A final line without
    a terminator is still a record, and a file holding a single ``\\n`` yields
    one empty record. Lines longer than ``max_line_length`` bytes are cut at
    the last whole character before the limit and the remainder is returned
    as the following record.
    """

    def _read_record(self) -> Optional[Record]:
        limit = self._settings.max_line_length
        raw = self._stream.readline(limit + 1)
        if not raw:
            return None

        if raw.endswith(b"\n"):
            content = raw[:-1]
            if content.endswith(b"\r"):
                content = content[:-1]
        elif len(raw) > limit and raw.endswith(b"\r") and self._consume_newline():
            # Exactly ``limit`` bytes terminated by CRLF.
            content = raw[:-1]
        elif len(raw) > limit:
            LOGGER.warning(
                "Line length exceeds max (%d) at offset %d, truncating line!",
                limit,
                self._position,
            )
            cut = self._character_boundary(raw, limit)
            content = raw[:cut]
            self._stream.seek(cut - len(raw), io.SEEK_CUR)
        else:
            content = raw

        return Record(body=self._transcode(content))

    def _consume_newline(self) -> bool:
        """Consume a ``\\n`` at the cursor if there is one."""
        following = self._stream.read(1)
        if following == b"\n":
            return True
        if following:
            self._stream.seek(-1, io.SEEK_CUR)
        return False

    def _character_boundary(self, raw: bytes, limit: int) -> int:
        """Return the largest cut at or before ``limit`` that does not split a character.

        Bytes that are invalid in the input charset are left to the decode
        error policy, so the cut falls back to ``limit`` for them.
        """
        decoder = codecs.getincrementaldecoder(self._input_charset)()
        try:
            decoder.decode(raw[:limit])
        except UnicodeDecodeError:
            return limit
        pending, _ = decoder.getstate()
        cut = limit - len(pending)
        return cut if cut > 0 else limit


class BlobDeserializer(EventDeserializer):
    """Return the whole file as a single record, split at ``max_blob_length`` bytes."""

    def _read_record(self) -> Optional[Record]:
        raw = self._stream.read(self._settings.max_blob_length)
        if not raw:
            return None
        return Record(body=raw)


class LengthPrefixedDeserializer(EventDeserializer):
    """Read records framed by a 4-byte big-endian length prefix."""

    _HEADER = struct.Struct(">I")

    def _read_record(self) -> Optional[Record]:
        header = self._stream.read(self._HEADER.size)
        if not header:
            return None
        if len(header) < self._HEADER.size:
            raise DeserializerError(f"Truncated length prefix at offset {self._position}")

        (length,) = self._HEADER.unpack(header)
        body = self._stream.read(length)
        if len(body) < length:
            raise DeserializerError(
                f"Truncated record at offset {self._position}: expected {length} bytes, "
                f"found {len(body)}"
            )
        return Record(body=body)


DESERIALIZERS: Dict[DeserializerKind, type[EventDeserializer]] = {
    DeserializerKind.LINE: LineDeserializer,
    DeserializerKind.BLOB: BlobDeserializer,
    DeserializerKind.LENGTH_PREFIXED: LengthPrefixedDeserializer,
}


def resolve_deserializer(kind: DeserializerKind | str) -> type[EventDeserializer]:
    """Return the deserializer class registered for ``kind``.

    Raises:
        ValueError: If no deserializer is registered for ``kind``.
    """
    try:
        return DESERIALIZERS[DeserializerKind(kind)]
    except (KeyError, ValueError) as exc:
        raise ValueError(f"Unsupported deserializer kind: {kind!r}") from exc


def build_deserializer(
    kind: DeserializerKind | str,
    stream: BinaryIO,
    settings: DeserializerSettings,
    *,
    input_charset: str = "utf-8",
    decode_error_policy: DecodePolicy = "fail",
) -> EventDeserializer:
    """Instantiate the deserializer registered for ``kind``.

    Args:
        kind: Configured record format.
        stream: Binary stream positioned at the start of the file.
        settings: Deserializer options.
        input_charset: Character set of the input for text formats.
        decode_error_policy: How undecodable bytes are handled.

    Returns:
        EventDeserializer: Deserializer bound to ``stream``.
    """
    factory = resolve_deserializer(kind)
    return factory(
        stream,
        settings,
        input_charset=input_charset,
        decode_error_policy=decode_error_policy,
    )


__all__ = [
    "EventDeserializer",
    "LineDeserializer",
    "BlobDeserializer",
    "LengthPrefixedDeserializer",
    "DESERIALIZERS",
    "resolve_deserializer",
    "build_deserializer",
]
