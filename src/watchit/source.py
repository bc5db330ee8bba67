"""Raw filesystem event sources and a polling implementation."""
from __future__ import annotations

import logging
import os
import queue
import re
import threading
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)

Snapshot = Dict[Path, os.stat_result]
FilterHook = Callable[[Path], bool]

MIN_INTERVAL = 0.001


class SourceError(Exception):
    """Raised (or reported) when the event source cannot do its job."""


class RawOp(Enum):
    """Native operation codes emitted by event sources."""

    CREATE = auto()
    WRITE = auto()
    REMOVE = auto()
    RENAME = auto()
    CHMOD = auto()
    MOVE = auto()


class SignalKind(Enum):
    EVENT = auto()
    ERROR = auto()
    CLOSED = auto()


@dataclass(frozen=True)
class RawEvent:
    """A single change as observed by the source."""

    op: RawOp
    path: Path
    old_path: Optional[Path] = None


@dataclass(frozen=True)
class Signal:
    """Message placed on a source's signal queue."""

    kind: SignalKind
    event: Optional[RawEvent] = None
    error: Optional[SourceError] = None


CLOSED = Signal(kind=SignalKind.CLOSED)


class EventSource:
    """Interface every raw event source implements.

    Consumers read :attr:`signals` until a ``CLOSED`` signal arrives. All
    configuration calls are expected before :meth:`start`.
    """

    signals: "queue.Queue[Signal]"

    def add(self, path: str | Path) -> None:
        raise NotImplementedError

    def add_recursive(self, path: str | Path) -> None:
        raise NotImplementedError

    def add_filter_hook(self, hook: FilterHook) -> None:
        raise NotImplementedError

    def filter_ops(self, *ops: RawOp) -> None:
        raise NotImplementedError

    def set_max_events(self, count: int) -> None:
        raise NotImplementedError

    def start(self, interval: float) -> None:
        raise NotImplementedError

    def wait(self, timeout: Optional[float] = None) -> bool:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def watched_files(self) -> Snapshot:
        raise NotImplementedError


def regex_filter_hook(regex: re.Pattern[str], *, use_full_path: bool = False) -> FilterHook:
    """Build a hook keeping only files whose name (or full path) matches *regex*."""

    def hook(path: Path) -> bool:
        subject = str(path) if use_full_path else path.name
        return regex.search(subject) is not None

    return hook


class PollingSource(EventSource):
    """Detects changes by periodically listing the watched paths."""

    def __init__(self) -> None:
        self.signals: "queue.Queue[Signal]" = queue.Queue()
        self._names: Dict[Path, bool] = {}
        self._files: Snapshot = {}
        self._hooks: List[FilterHook] = []
        self._ops: Set[RawOp] = set()
        self._max_events = 0
        self._lock = threading.Lock()
        self._started = threading.Event()
        self._close_event = threading.Event()
        self._running = False
        self._closed = False
        self._closed_sent = False

    def add(self, path: str | Path) -> None:
        self._add(path, recursive=False)

    def add_recursive(self, path: str | Path) -> None:
        self._add(path, recursive=True)

    def add_filter_hook(self, hook: FilterHook) -> None:
        with self._lock:
            self._hooks.append(hook)

    def filter_ops(self, *ops: RawOp) -> None:
        with self._lock:
            self._ops = set(ops)

    def set_max_events(self, count: int) -> None:
        if count < 0:
            raise ValueError("max events must not be negative")
        with self._lock:
            self._max_events = count

    def watched_files(self) -> Snapshot:
        with self._lock:
            return dict(self._files)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until polling has begun; return False on timeout."""

        return self._started.wait(timeout)

    def start(self, interval: float) -> None:
        """Poll the watched paths every *interval* seconds until closed."""

        if interval < MIN_INTERVAL:
            raise SourceError(f"poll interval {interval}s is shorter than {MIN_INTERVAL}s")
        with self._lock:
            if self._closed:
                raise SourceError("source has been closed")
            if self._running:
                raise SourceError("source is already running")
            if not self._names:
                raise SourceError("no paths have been added")
            self._running = True

        logger.debug("Polling %s paths every %.3fs", len(self._names), interval)
        self._started.set()
        try:
            while not self._close_event.is_set():
                file_list = self._retrieve_file_list()
                self._deliver(file_list)
                with self._lock:
                    self._files = file_list
                if self._close_event.wait(interval):
                    break
        finally:
            with self._lock:
                self._running = False
                self._closed = True
            self._signal_closed()

    def close(self) -> None:
        """Stop polling; a ``CLOSED`` signal is queued exactly once."""

        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._close_event.set()
            running = self._running
        if not running:
            self._signal_closed()

    def _signal_closed(self) -> None:
        with self._lock:
            if self._closed_sent:
                return
            self._closed_sent = True
        self.signals.put(CLOSED)

    def _add(self, path: str | Path, *, recursive: bool) -> None:
        root = Path(os.path.abspath(path))
        try:
            root.stat()
            listing = self._list(root, recursive=recursive)
        except OSError as exc:
            raise SourceError(f"cannot watch {root}: {exc.strerror or exc}") from exc

        with self._lock:
            self._names[root] = recursive
            self._files.update(listing)
        logger.debug("Watching %s (%s, %s files)", root, "recursive" if recursive else "flat", len(listing))

    def _list(self, root: Path, *, recursive: bool) -> Snapshot:
        results: Snapshot = {}
        if root.is_file():
            candidates: Iterable[Path] = [root]
        elif recursive:
            candidates = root.rglob("*")
        else:
            candidates = root.glob("*")

        with self._lock:
            hooks = list(self._hooks)
        for path in candidates:
            if not path.is_file():
                continue
            if not all(hook(path) for hook in hooks):
                continue
            try:
                results[path] = path.stat()
            except FileNotFoundError:
                continue
        return results

    def _retrieve_file_list(self) -> Snapshot:
        with self._lock:
            names = list(self._names.items())

        file_list: Snapshot = {}
        for root, recursive in names:
            try:
                root.stat()
            except FileNotFoundError:
                with self._lock:
                    self._names.pop(root, None)
                self._report(SourceError(f"watched path was deleted: {root}"))
                continue
            except OSError as exc:
                file_list.update(self._previous_under(root))
                self._report(SourceError(f"failed to stat {root}: {exc}"))
                continue

            try:
                file_list.update(self._list(root, recursive=recursive))
            except OSError as exc:
                # Keep the last known state so the failure does not look like removals.
                file_list.update(self._previous_under(root))
                self._report(SourceError(f"failed to list {root}: {exc}"))
        return file_list

    def _previous_under(self, root: Path) -> Snapshot:
        with self._lock:
            return {
                path: info
                for path, info in self._files.items()
                if path == root or root in path.parents
            }

    def _deliver(self, file_list: Snapshot) -> None:
        with self._lock:
            previous = self._files
            ops = set(self._ops)
            max_events = self._max_events

        delivered = 0
        for event in _diff_snapshots(previous, file_list):
            if ops and event.op not in ops:
                continue
            delivered += 1
            if max_events and delivered > max_events:
                break
            self.signals.put(Signal(kind=SignalKind.EVENT, event=event))

    def _report(self, error: SourceError) -> None:
        self.signals.put(Signal(kind=SignalKind.ERROR, error=error))


def _diff_snapshots(old: Snapshot, new: Snapshot) -> List[RawEvent]:
    events: List[RawEvent] = []
    removed: Dict[Path, os.stat_result] = {}

    for path in sorted(old):
        before = old[path]
        after = new.get(path)
        if after is None:
            removed[path] = before
            continue
        if before.st_mtime_ns != after.st_mtime_ns or before.st_size != after.st_size:
            events.append(RawEvent(op=RawOp.WRITE, path=path))
        if before.st_mode != after.st_mode:
            events.append(RawEvent(op=RawOp.CHMOD, path=path))

    created = {path: new[path] for path in sorted(new) if path not in old}

    for old_path, before in list(removed.items()):
        match = _find_same_file(before, created)
        if match is None:
            continue
        new_path, _ = match
        op = RawOp.RENAME if new_path.parent == old_path.parent else RawOp.MOVE
        events.append(RawEvent(op=op, path=new_path, old_path=old_path))
        del created[new_path]
        del removed[old_path]

    for path in created:
        events.append(RawEvent(op=RawOp.CREATE, path=path))
    for path in removed:
        events.append(RawEvent(op=RawOp.REMOVE, path=path))
    return events


def _find_same_file(
    info: os.stat_result, candidates: Dict[Path, os.stat_result]
) -> Optional[Tuple[Path, os.stat_result]]:
    for path, other in candidates.items():
        if other.st_ino == info.st_ino and other.st_dev == info.st_dev:
            return path, other
    return None
