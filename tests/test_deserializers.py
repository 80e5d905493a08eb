"""Deserializer tests covering framing, cursors and decoding."""

from __future__ import annotations

import io
import struct

import pytest

from spoolr.config import DeserializerKind
from spoolr.config.models import DeserializerSettings
from spoolr.errors import DeserializerError
from spoolr.ingestion import (
    DESERIALIZERS,
    BlobDeserializer,
    LengthPrefixedDeserializer,
    LineDeserializer,
    build_deserializer,
)
from spoolr.ingestion.deserializers import resolve_deserializer


def _bodies(records: list) -> list[bytes]:
    return [record.body for record in records]


def _line(data: bytes, **kwargs: object) -> LineDeserializer:
    settings = DeserializerSettings(**kwargs)  # type: ignore[arg-type]
    return LineDeserializer(io.BytesIO(data), settings)


def test_line_deserializer_splits_lines() -> None:
    deserializer = _line(b"one\r\ntwo\n\nthree")

    records = deserializer.read_events(10)

    assert _bodies(records) == [b"one", b"two", b"", b"three"]
    assert deserializer.read_event() is None


def test_single_blank_line_is_one_record() -> None:
    deserializer = _line(b"\n")

    assert _bodies(deserializer.read_events(10)) == [b""]


def test_empty_stream_yields_nothing() -> None:
    assert _line(b"").read_events(10) == []


def test_long_lines_are_truncated_and_continued() -> None:
    deserializer = _line(b"abcdefgh\nij\n", max_line_length=4)

    assert _bodies(deserializer.read_events(10)) == [b"abcd", b"efgh", b"ij"]


def test_truncation_never_splits_a_multibyte_character() -> None:
    """A cut landing inside a UTF-8 sequence backs off to the previous character."""
    deserializer = _line("aaaébbb\n".encode("utf-8"), max_line_length=4)

    records = deserializer.read_events(10)

    assert _bodies(records) == [b"aaa", "ébb".encode("utf-8"), b"b"]
    assert deserializer.position == len("aaaébbb\n".encode("utf-8"))


def test_exact_length_crlf_line_is_not_truncated() -> None:
    deserializer = _line(b"abcd\r\nef\r\n", max_line_length=4)

    assert _bodies(deserializer.read_events(10)) == [b"abcd", b"ef"]


def test_carriage_return_at_limit_without_newline_stays_in_stream() -> None:
    deserializer = _line(b"abcd\rxy\n", max_line_length=4)

    assert _bodies(deserializer.read_events(10)) == [b"abcd", b"\rxy"]


def test_reset_replays_from_mark() -> None:
    """Uncommitted records are re-read after ``reset`` and skipped after ``mark``."""
    deserializer = _line(b"a\nb\nc\n")

    assert _bodies(deserializer.read_events(2)) == [b"a", b"b"]
    assert deserializer.position == 4
    assert deserializer.mark_position == 0

    deserializer.reset()
    assert _bodies(deserializer.read_events(2)) == [b"a", b"b"]

    deserializer.mark()
    deserializer.reset()
    assert deserializer.mark_position == 4
    assert _bodies(deserializer.read_events(2)) == [b"c"]


def test_seek_moves_cursor_and_mark() -> None:
    deserializer = _line(b"a\nb\nc\n")

    deserializer.seek(2)

    assert deserializer.mark_position == 2
    assert _bodies(deserializer.read_events(5)) == [b"b", b"c"]


def test_decode_failure_raises_by_default() -> None:
    deserializer = _line(b"ok\n\xff\xfe\n")

    assert _bodies(deserializer.read_events(1)) == [b"ok"]
    with pytest.raises(DeserializerError):
        deserializer.read_event()


def test_decode_replace_policy_substitutes_characters() -> None:
    stream = io.BytesIO(b"a\xffb\n")
    deserializer = LineDeserializer(
        stream, DeserializerSettings(), decode_error_policy="replace"
    )

    (record,) = deserializer.read_events(1)

    assert record.body == "a\ufffdb".encode("utf-8")


def test_input_charset_is_transcoded_to_output_charset() -> None:
    stream = io.BytesIO("café\n".encode("latin-1"))
    deserializer = LineDeserializer(stream, DeserializerSettings(), input_charset="latin-1")

    (record,) = deserializer.read_events(1)

    assert record.body == "café".encode("utf-8")


def test_blob_deserializer_chunks_by_max_length() -> None:
    deserializer = BlobDeserializer(
        io.BytesIO(b"abcdefghij"), DeserializerSettings(max_blob_length=4)
    )

    assert _bodies(deserializer.read_events(10)) == [b"abcd", b"efgh", b"ij"]


def test_length_prefixed_frames() -> None:
    payload = b"".join(struct.pack(">I", len(chunk)) + chunk for chunk in (b"abc", b"", b"xy"))
    deserializer = LengthPrefixedDeserializer(io.BytesIO(payload), DeserializerSettings())

    assert _bodies(deserializer.read_events(10)) == [b"abc", b"", b"xy"]


@pytest.mark.parametrize("payload", [b"\x00\x00", struct.pack(">I", 10) + b"short"])
def test_length_prefixed_truncation_raises(payload: bytes) -> None:
    deserializer = LengthPrefixedDeserializer(io.BytesIO(payload), DeserializerSettings())

    with pytest.raises(DeserializerError):
        deserializer.read_event()


def test_registry_covers_every_kind() -> None:
    assert set(DESERIALIZERS) == set(DeserializerKind)
    assert resolve_deserializer("BLOB") is BlobDeserializer
    with pytest.raises(ValueError):
        resolve_deserializer("AVRO")


def test_build_deserializer_binds_stream() -> None:
    stream = io.BytesIO(b"x\n")

    deserializer = build_deserializer(DeserializerKind.LINE, stream, DeserializerSettings())

    assert isinstance(deserializer, LineDeserializer)
    deserializer.close()
    assert deserializer.closed
