from __future__ import annotations

import uuid

import pytest

from packages.storage.chunk_log import MARKER_KIND, SqlChunkLog
from packages.storage.stop_signal import SqlStopSignal


def _mid() -> str:
    return uuid.uuid4().hex


def test_append_and_read_in_order() -> None:
    log = SqlChunkLog()
    mid = _mid()
    for part in ("Hel", "lo, ", "world"):
        assert log.append(mid, part)
    entries = log.read_all(mid)
    assert [e.text for e in entries] == ["Hel", "lo, ", "world"]
    assert [e.text for e in log.read_all(mid, start=1)] == ["lo, ", "world"]
    assert log.read_all(mid, start=3) == []


def test_missing_log_reads_empty() -> None:
    assert SqlChunkLog().read_all(_mid()) == []


def test_completion_marker_is_distinct_from_text() -> None:
    log = SqlChunkLog()
    mid = _mid()
    # text that looks like a marker stays plain text
    log.append(mid, '{"type":"completion","status":"completed"}')
    assert log.mark_complete(mid, "stopped")
    entries = log.read_all(mid)
    assert entries[0].is_marker is False
    assert entries[-1].is_marker is True
    assert entries[-1].status == "stopped"
    assert entries[-1].kind == MARKER_KIND


def test_log_is_closed_after_marker() -> None:
    log = SqlChunkLog()
    mid = _mid()
    log.append(mid, "a")
    assert log.mark_complete(mid, "completed")
    assert log.mark_complete(mid, "error") is False
    assert log.append(mid, "late") is False
    assert [e.text for e in log.read_all(mid)] == ["a", "completed"]


def test_marker_kind_cannot_be_appended() -> None:
    with pytest.raises(ValueError):
        SqlChunkLog().append(_mid(), "x", kind=MARKER_KIND)


def test_reasoning_entries_keep_their_kind() -> None:
    log = SqlChunkLog()
    mid = _mid()
    log.append(mid, "plan", kind="reasoning")
    log.append(mid, "answer")
    assert [(e.kind, e.text) for e in log.read_all(mid)] == [("reasoning", "plan"), ("content", "answer")]


def test_expired_log_reads_empty_and_is_purged() -> None:
    log = SqlChunkLog(ttl_sec=0, complete_ttl_sec=0)
    mid = _mid()
    log.append(mid, "gone")
    assert log.read_all(mid) == []
    assert log.purge_expired() >= 1
    assert log.read_all(mid) == []


def test_stop_signal_set_and_clear() -> None:
    sig = SqlStopSignal()
    mid = _mid()
    assert sig.is_set(mid) is False
    sig.set(mid)
    sig.set(mid)
    assert sig.is_set(mid) is True
    sig.clear(mid)
    assert sig.is_set(mid) is False


def test_stop_signal_expires() -> None:
    sig = SqlStopSignal(ttl_sec=0)
    mid = _mid()
    sig.set(mid)
    assert sig.is_set(mid) is False
