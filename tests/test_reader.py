"""Reliable spooling reader tests."""

from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Any, Sequence

import pytest

from spoolr.config import ConfigError, SpoolSettings
from spoolr.config.models import DeserializerSettings
from spoolr.errors import (
    DeserializerError,
    FatalSpoolError,
    FinalizeError,
    IdentityCollisionError,
    SpoolContractError,
)
from spoolr.ingestion import FilePhase, Record, ReliableSpoolingFileReader
from spoolr.state import CHECKPOINT_FILENAME, CheckpointCorruptError, FileIdentity

HOUR_NS = 3_600 * 1_000_000_000


def _spool_file(spool: Path, name: str, lines: Sequence[str], *, age_hours: float) -> Path:
    """Write newline-terminated ``lines`` and back-date the file.

    Args:
        spool: Spool directory.
        name: Filename to create.
        lines: Lines to write.
        age_hours: Age of the file's modification time.

    Returns:
        Path: The created file.
    """
    path = spool / name
    path.write_bytes("".join(f"{line}\n" for line in lines).encode("utf-8"))
    stamp = time.time_ns() - int(age_hours * HOUR_NS)
    os.utime(path, ns=(stamp, stamp))
    return path


def _reader(spool: Path, **overrides: Any) -> ReliableSpoolingFileReader:
    deserializer = overrides.pop("deserializer_settings", None)
    settings = SpoolSettings(spool_directory=spool, **overrides)
    return ReliableSpoolingFileReader(settings, deserializer)


def _bodies(records: Sequence[Record]) -> list[str]:
    return [record.body.decode("utf-8") for record in records]


@pytest.fixture()
def spool(tmp_path: Path) -> Path:
    directory = tmp_path / "spool"
    directory.mkdir()
    return directory


@pytest.fixture()
def seeded_spool(spool: Path) -> Path:
    """Spool holding files of 0, 1, 2 and 3 lines plus a single blank line."""
    _spool_file(spool, "file0", [], age_hours=5)
    _spool_file(spool, "file1", ["file1line1"], age_hours=4)
    _spool_file(spool, "file2", ["file2line1", "file2line2"], age_hours=3)
    _spool_file(spool, "file3", ["file3line1", "file3line2", "file3line3"], age_hours=2)
    _spool_file(spool, "emptylineFile", [""], age_hours=1)
    return spool


def test_commit_every_cycle_delivers_each_record_once(seeded_spool: Path) -> None:
    """Ten read/commit cycles deliver all seven records, and an eleventh finds nothing.

    Args:
        seeded_spool: Spool directory seeded with the reference files.
    """
    reader = _reader(seeded_spool)
    delivered: list[str] = []

    for _ in range(10):
        records = reader.read_events(10)
        delivered.extend(_bodies(records))
        reader.commit()

    assert len(delivered) == 7
    assert delivered[:3] == ["file1line1", "file2line1", "file2line2"]
    assert delivered[-1] == ""
    assert reader.read_events(10) == []

    remaining = sorted(p.name for p in seeded_spool.iterdir() if p.is_file())
    assert remaining == [
        "emptylineFile.COMPLETED",
        "file0.COMPLETED",
        "file1.COMPLETED",
        "file2.COMPLETED",
        "file3.COMPLETED",
    ]


def test_commit_only_non_empty_batches(seeded_spool: Path) -> None:
    """Committing only non-empty batches still drains everything and writes a checkpoint.

    Args:
        seeded_spool: Spool directory seeded with the reference files.
    """
    reader = _reader(seeded_spool)
    tracker_directory = seeded_spool / ".spoolr"
    delivered = 0
    first_commit = True

    for _ in range(10):
        records = reader.read_events(10)
        if records:
            reader.commit()
            delivered += len(records)
            if first_commit:
                assert (tracker_directory / CHECKPOINT_FILENAME).exists()
                first_commit = False

    assert delivered == 7
    assert not first_commit


def test_read_without_commit_is_idempotent(spool: Path) -> None:
    _spool_file(spool, "a.log", ["a", "b", "c"], age_hours=1)
    reader = _reader(spool)

    first = _bodies(reader.read_events(2))
    second = _bodies(reader.read_events(2))

    assert first == second == ["a", "b"]
    assert reader.phase is FilePhase.READING


def test_commit_advances_past_delivered_records(spool: Path) -> None:
    _spool_file(spool, "a.log", ["a", "b", "c"], age_hours=1)
    reader = _reader(spool)

    assert _bodies(reader.read_events(2)) == ["a", "b"]
    reader.commit()
    assert _bodies(reader.read_events(2)) == ["c"]
    assert reader.phase is FilePhase.EOF_PENDING_COMMIT

    reader.commit()

    assert reader.phase is FilePhase.CLOSED
    assert reader.last_file_read == spool / "a.log"
    assert (spool / "a.log.COMPLETED").exists()
    assert not (spool / "a.log").exists()


def test_completion_waits_for_final_commit(spool: Path) -> None:
    _spool_file(spool, "a.log", ["a"], age_hours=1)
    reader = _reader(spool)

    reader.read_events(10)

    assert (spool / "a.log").exists()
    assert not (spool / "a.log.COMPLETED").exists()


def test_restart_resumes_from_last_commit(spool: Path) -> None:
    """A new reader replays uncommitted records but never committed ones.

    Args:
        spool: Empty spool directory.
    """
    _spool_file(spool, "a.log", ["a", "b", "c", "d", "e"], age_hours=1)
    first = _reader(spool)
    first.read_events(2)
    first.commit()
    assert _bodies(first.read_events(2)) == ["c", "d"]
    first.close()

    second = _reader(spool)

    assert _bodies(second.read_events(10)) == ["c", "d", "e"]
    second.commit()
    assert (spool / "a.log.COMPLETED").exists()


def test_close_then_read_resumes_same_instance(spool: Path) -> None:
    _spool_file(spool, "a.log", ["a", "b", "c"], age_hours=1)
    reader = _reader(spool)
    reader.read_events(1)
    reader.commit()

    reader.close()

    assert _bodies(reader.read_events(10)) == ["b", "c"]


def test_restart_completes_file_checkpointed_as_completed(spool: Path) -> None:
    path = _spool_file(spool, "a.log", ["a"], age_hours=2)
    _spool_file(spool, "b.log", ["b"], age_hours=1)
    reader = _reader(spool)
    identity = FileIdentity.from_stat(path, path.stat())
    reader.tracker.commit(identity, path.stat().st_size, completed=True)

    assert _bodies(reader.read_events(10)) == ["b"]
    assert (spool / "a.log.COMPLETED").exists()


def test_oldest_file_is_read_first(spool: Path) -> None:
    _spool_file(spool, "z-old.log", ["old"], age_hours=3)
    _spool_file(spool, "a-new.log", ["new"], age_hours=1)
    reader = _reader(spool)

    assert _bodies(reader.read_events(10)) == ["old"]
    reader.commit()
    assert _bodies(reader.read_events(10)) == ["new"]


def test_youngest_order_reads_newest_first(spool: Path) -> None:
    _spool_file(spool, "z-old.log", ["old"], age_hours=3)
    _spool_file(spool, "a-new.log", ["new"], age_hours=1)
    reader = _reader(spool, consume_order="youngest")

    assert _bodies(reader.read_events(10)) == ["new"]


def test_delete_policy_removes_completed_files(spool: Path) -> None:
    _spool_file(spool, "a.log", ["a"], age_hours=1)
    reader = _reader(spool, delete_policy="immediate")

    reader.read_events(10)
    reader.commit()

    assert not (spool / "a.log").exists()
    assert not (spool / "a.log.COMPLETED").exists()


def test_annotations_add_file_headers(spool: Path) -> None:
    path = _spool_file(spool, "a.log", ["a"], age_hours=1)
    reader = _reader(spool, annotate_file_name=True, annotate_base_name=True)

    (record,) = reader.read_events(10)

    assert record.headers == {"file": str(path.resolve()), "basename": "a.log"}


def test_custom_header_names(spool: Path) -> None:
    _spool_file(spool, "a.log", ["a"], age_hours=1)
    reader = _reader(spool, annotate_base_name=True, base_name_header="source")

    (record,) = reader.read_events(10)

    assert record.headers == {"source": "a.log"}


def test_corrupt_checkpoint_halts_reader(spool: Path) -> None:
    _spool_file(spool, "a.log", ["a"], age_hours=1)
    reader = _reader(spool)
    reader.tracker.initialize()
    reader.tracker.checkpoint_path.write_text("{garbage", encoding="utf-8")

    with pytest.raises(CheckpointCorruptError):
        reader.read_events(10)

    assert reader.halted
    with pytest.raises(FatalSpoolError):
        reader.read_events(10)
    with pytest.raises(FatalSpoolError):
        reader.commit()


def test_changed_file_is_a_contract_violation(spool: Path) -> None:
    path = _spool_file(spool, "a.log", ["a"], age_hours=1)
    reader = _reader(spool)
    reader.read_events(10)

    with path.open("ab") as handle:
        handle.write(b"late\n")

    with pytest.raises(SpoolContractError):
        reader.commit()
    assert reader.halted


def test_completed_name_collision_with_different_content(spool: Path) -> None:
    _spool_file(spool, "a.log", ["new"], age_hours=1)
    (spool / "a.log.COMPLETED").write_text("old\n", encoding="utf-8")
    reader = _reader(spool)
    reader.read_events(10)

    with pytest.raises(IdentityCollisionError):
        reader.commit()
    assert (spool / "a.log").exists()


def test_completed_name_collision_with_same_content(spool: Path) -> None:
    _spool_file(spool, "a.log", ["same"], age_hours=1)
    (spool / "a.log.COMPLETED").write_text("same\n", encoding="utf-8")
    reader = _reader(spool)
    reader.read_events(10)

    reader.commit()

    assert not (spool / "a.log").exists()
    assert (spool / "a.log.COMPLETED").read_text(encoding="utf-8") == "same\n"


def test_replaced_file_under_checkpoint_is_a_collision(spool: Path) -> None:
    _spool_file(spool, "a.log", ["a", "b"], age_hours=1)
    first = _reader(spool)
    first.read_events(1)
    first.commit()
    first.close()

    replacement = _spool_file(spool, "a.log.tmp", ["x", "y"], age_hours=1)
    os.replace(replacement, spool / "a.log")

    second = _reader(spool)
    with pytest.raises(IdentityCollisionError):
        second.read_events(10)


def test_decode_failure_is_retryable(spool: Path) -> None:
    (spool / "a.log").write_bytes(b"ok\n\xff\n")
    reader = _reader(spool)

    with pytest.raises(DeserializerError):
        reader.read_events(10)
    assert not reader.halted

    # Nothing was acknowledged, so the good record is still pending.
    assert _bodies(reader.read_events(1)) == ["ok"]


def test_blob_deserializer_reads_whole_file(spool: Path) -> None:
    (spool / "payload.bin").write_bytes(b"\x00\x01binary\n")
    reader = _reader(spool, deserializer="BLOB")

    (record,) = reader.read_events(10)

    assert record.body == b"\x00\x01binary\n"


def test_long_lines_respect_deserializer_settings(spool: Path) -> None:
    _spool_file(spool, "a.log", ["abcdefgh"], age_hours=1)
    reader = _reader(spool, deserializer_settings=DeserializerSettings(max_line_length=4))

    assert _bodies(reader.read_events(10)) == ["abcd", "efgh"]


def test_invalid_batch_size_rejected(spool: Path) -> None:
    reader = _reader(spool)

    with pytest.raises(ValueError):
        reader.read_events(0)


def test_missing_spool_directory_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        _reader(tmp_path / "missing")


def test_empty_spool_returns_no_records(spool: Path) -> None:
    with _reader(spool) as reader:
        assert reader.read_events(10) == []
        reader.commit()
        assert reader.current_file is None


def test_multibyte_character_at_line_limit_does_not_wedge_reader(spool: Path) -> None:
    """A default-length cut inside a UTF-8 character still yields decodable records.

    Args:
        spool: Empty spool directory.
    """
    (spool / "a.log").write_bytes(("x" * 2047 + "é\n").encode("utf-8"))
    reader = _reader(spool)

    records = reader.read_events(10)

    assert _bodies(records) == ["x" * 2047, "é"]
    reader.commit()
    assert (spool / "a.log.COMPLETED").exists()


def test_failed_rename_is_retried_before_next_file(
    spool: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A completion that cannot rename blocks progress until it succeeds.

    Args:
        spool: Empty spool directory.
        monkeypatch: Pytest fixture used to make renames fail.
    """
    _spool_file(spool, "a.log", ["a"], age_hours=2)
    _spool_file(spool, "b.log", ["b"], age_hours=1)
    original_rename = Path.rename
    failures = {"remaining": 2}

    def _flaky_rename(self: Path, target: Any) -> Any:
        if self.name == "a.log" and failures["remaining"]:
            failures["remaining"] -= 1
            raise PermissionError("rename blocked")
        return original_rename(self, target)

    monkeypatch.setattr(Path, "rename", _flaky_rename)
    reader = _reader(spool)
    assert _bodies(reader.read_events(10)) == ["a"]

    # The records are acknowledged even though completion failed.
    reader.commit()
    assert (spool / "a.log").exists()

    with pytest.raises(FinalizeError):
        reader.read_events(10)
    assert reader.current_file is None
    assert not reader.halted

    assert _bodies(reader.read_events(10)) == ["b"]
    assert (spool / "a.log.COMPLETED").exists()
    assert not (spool / "a.log").exists()


def test_failed_checkpoint_write_keeps_batch_pending(
    spool: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _spool_file(spool, "a.log", ["a", "b", "c"], age_hours=1)
    reader = _reader(spool)
    assert _bodies(reader.read_events(2)) == ["a", "b"]

    def _failing_replace(src: Any, dst: Any) -> None:
        raise OSError("disk full")

    with monkeypatch.context() as patch:
        patch.setattr(os, "replace", _failing_replace)
        with pytest.raises(OSError):
            reader.commit()

    assert reader.phase is FilePhase.READING
    assert not reader.tracker.checkpoint_path.exists()
    assert _bodies(reader.read_events(2)) == ["a", "b"]
