"""Tests for :mod:`watchit.source`."""
from __future__ import annotations

import errno
import os
import queue
import re
import threading
import time
from pathlib import Path

import pytest

from watchit.source import (
    PollingSource,
    RawEvent,
    RawOp,
    Signal,
    SignalKind,
    SourceError,
    _diff_snapshots,
    regex_filter_hook,
)


@pytest.fixture()
def run_source():
    started: list[tuple[PollingSource, threading.Thread]] = []

    def runner(source: PollingSource, interval: float = 0.02) -> PollingSource:
        thread = threading.Thread(target=source.start, args=(interval,), daemon=True)
        thread.start()
        assert source.wait(timeout=5)
        started.append((source, thread))
        return source

    yield runner

    for source, thread in started:
        source.close()
        thread.join(timeout=5)


def next_signal(source: PollingSource, *, kind: SignalKind, timeout: float = 5.0) -> Signal:
    while True:
        signal = source.signals.get(timeout=timeout)
        if signal.kind is kind:
            return signal


def append(path: Path, text: str) -> None:
    with open(path, "a", encoding="utf-8") as handle:
        handle.write(text)


def test_add_missing_path_fails(tmp_path: Path):
    source = PollingSource()
    with pytest.raises(SourceError, match="cannot watch"):
        source.add(tmp_path / "missing")


def test_start_without_paths_fails():
    source = PollingSource()
    with pytest.raises(SourceError, match="no paths"):
        source.start(0.1)


def test_start_with_tiny_interval_fails(tmp_path: Path):
    source = PollingSource()
    source.add(tmp_path)
    with pytest.raises(SourceError, match="shorter"):
        source.start(0)


def test_close_before_start_signals_closed_once(tmp_path: Path):
    source = PollingSource()
    source.add(tmp_path)

    source.close()
    source.close()

    assert source.signals.get_nowait().kind is SignalKind.CLOSED
    with pytest.raises(queue.Empty):
        source.signals.get_nowait()
    with pytest.raises(SourceError, match="closed"):
        source.start(0.1)


def test_flat_and_recursive_listing(tmp_path: Path):
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    (tmp_path / "top.md").write_text("x")
    (nested / "deep.md").write_text("x")

    flat = PollingSource()
    flat.add(tmp_path)
    recursive = PollingSource()
    recursive.add_recursive(tmp_path)

    assert set(flat.watched_files()) == {tmp_path / "top.md"}
    assert set(recursive.watched_files()) == {tmp_path / "top.md", nested / "deep.md"}


def test_filter_hook_limits_watched_files(tmp_path: Path):
    (tmp_path / "keep.md").write_text("x")
    (tmp_path / "skip.txt").write_text("x")

    source = PollingSource()
    source.add_filter_hook(regex_filter_hook(re.compile(r".+\.(md)$")))
    source.add(tmp_path)

    assert set(source.watched_files()) == {tmp_path / "keep.md"}


def test_regex_hook_full_path():
    hook = regex_filter_hook(re.compile(r"/docs/"), use_full_path=True)
    assert hook(Path("/srv/docs/readme.md"))
    assert not hook(Path("/srv/src/readme.md"))


def test_write_is_delivered(tmp_path: Path, run_source):
    target = tmp_path / "test.md"
    target.write_text("hello\n")
    source = PollingSource()
    source.add(tmp_path)
    run_source(source)

    append(target, "more\n")

    signal = next_signal(source, kind=SignalKind.EVENT)
    assert signal.event == RawEvent(op=RawOp.WRITE, path=target)


def test_op_filter_drops_other_operations(tmp_path: Path, run_source):
    source = PollingSource()
    source.filter_ops(RawOp.WRITE)
    source.add(tmp_path)
    run_source(source)

    (tmp_path / "new.md").write_text("created\n")
    target = tmp_path / "new.md"
    deadline = time.monotonic() + 5
    while target not in source.watched_files() and time.monotonic() < deadline:
        time.sleep(0.01)
    append(target, "written\n")

    signal = next_signal(source, kind=SignalKind.EVENT)
    assert signal.event is not None
    assert signal.event.op is RawOp.WRITE


def test_deleted_root_is_reported(tmp_path: Path, run_source):
    watched = tmp_path / "watched"
    watched.mkdir()
    source = PollingSource()
    source.add(watched)
    run_source(source)

    watched.rmdir()

    signal = next_signal(source, kind=SignalKind.ERROR)
    assert isinstance(signal.error, SourceError)
    assert "deleted" in str(signal.error)


def test_max_events_caps_a_cycle(tmp_path: Path):
    paths = [tmp_path / name for name in ("a.md", "b.md", "c.md")]
    for path in paths:
        path.write_text("x")
    source = PollingSource()
    source.set_max_events(1)
    source.add(tmp_path)

    for path in paths:
        append(path, "more")
    source._deliver(source._retrieve_file_list())

    signal = source.signals.get_nowait()
    assert signal.event == RawEvent(op=RawOp.WRITE, path=paths[0])
    with pytest.raises(queue.Empty):
        source.signals.get_nowait()


def test_negative_max_events_rejected():
    with pytest.raises(ValueError):
        PollingSource().set_max_events(-1)


def test_diff_detects_create_remove_rename_and_chmod(tmp_path: Path):
    kept = tmp_path / "kept.md"
    doomed = tmp_path / "doomed.md"
    moving = tmp_path / "moving.md"
    for path in (kept, doomed, moving):
        path.write_text("x")
    before = {path: path.stat() for path in (kept, doomed, moving)}

    # Created before the unlink so it cannot reuse the removed inode.
    fresh = tmp_path / "fresh.md"
    fresh.write_text("x")
    os.chmod(kept, 0o600 if (kept.stat().st_mode & 0o777) != 0o600 else 0o644)
    doomed.unlink()
    renamed = tmp_path / "renamed.md"
    moving.rename(renamed)
    after = {path: path.stat() for path in (kept, renamed, fresh)}

    events = _diff_snapshots(before, after)

    assert events == [
        RawEvent(op=RawOp.CHMOD, path=kept),
        RawEvent(op=RawOp.RENAME, path=renamed, old_path=moving),
        RawEvent(op=RawOp.CREATE, path=fresh),
        RawEvent(op=RawOp.REMOVE, path=doomed),
    ]


def test_diff_reports_move_across_directories(tmp_path: Path):
    other = tmp_path / "other"
    other.mkdir()
    source_path = tmp_path / "note.md"
    source_path.write_text("x")
    before = {source_path: source_path.stat()}

    moved = other / "note.md"
    source_path.rename(moved)
    after = {moved: moved.stat()}

    assert _diff_snapshots(before, after) == [RawEvent(op=RawOp.MOVE, path=moved, old_path=source_path)]


def test_transient_stat_error_is_reported_and_polling_continues(tmp_path: Path, run_source, monkeypatch):
    target = tmp_path / "test.md"
    target.write_text("hello\n")
    source = PollingSource()
    source.add(tmp_path)

    armed = threading.Event()
    failures: list[Path] = []
    real_stat = Path.stat

    def flaky_stat(self, *args, **kwargs):
        if self == tmp_path and armed.is_set() and not failures:
            failures.append(self)
            raise PermissionError(errno.EACCES, "Permission denied", str(self))
        return real_stat(self, *args, **kwargs)

    monkeypatch.setattr(Path, "stat", flaky_stat)
    run_source(source)
    armed.set()

    error = next_signal(source, kind=SignalKind.ERROR)
    assert isinstance(error.error, SourceError)
    assert "Permission denied" in str(error.error)
    assert target in source.watched_files()

    append(target, "more\n")

    signal = next_signal(source, kind=SignalKind.EVENT)
    assert signal.event == RawEvent(op=RawOp.WRITE, path=target)


def test_interrupted_start_then_close_signals_closed_once(tmp_path: Path, monkeypatch):
    source = PollingSource()
    source.add(tmp_path)

    def interrupted(timeout=None):
        raise KeyboardInterrupt

    monkeypatch.setattr(source._close_event, "wait", interrupted)
    with pytest.raises(KeyboardInterrupt):
        source.start(0.01)
    source.close()

    closed = []
    while True:
        try:
            closed.append(source.signals.get_nowait())
        except queue.Empty:
            break
    assert [signal.kind for signal in closed].count(SignalKind.CLOSED) == 1
