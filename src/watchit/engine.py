"""Watch engine: installs filters on a raw source and dispatches its events."""
from __future__ import annotations

import logging
import re
import threading
from enum import Enum
from typing import Optional

from .config import WatchConfig
from .events import Handler, operation_name, translate
from .source import EventSource, PollingSource, RawOp, SignalKind, SourceError, regex_filter_hook

logger = logging.getLogger(__name__)

# Only the most significant change per path and polling cycle is observed.
MAX_EVENTS_PER_CYCLE = 1


class SetupError(Exception):
    """Raised when filters or watch targets cannot be installed."""


class StartError(Exception):
    """Raised when the raw source fails to begin polling."""


class EngineState(str, Enum):
    UNCONFIGURED = "unconfigured"
    CONFIGURED = "configured"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"


class WatchEngine:
    """Forwards filtered write events on the configured directories to a handler.

    The handler is always called from a single dispatch thread, one event at a
    time, in the order the source produced them.
    """

    def __init__(
        self,
        config: WatchConfig,
        handler: Handler,
        *,
        source: Optional[EventSource] = None,
    ) -> None:
        self._config = config
        self._handler = handler
        self._source = source or PollingSource()
        self._state = EngineState.UNCONFIGURED
        self._dispatcher: Optional[threading.Thread] = None
        self._poller: Optional[threading.Thread] = None
        self._start_error: Optional[SourceError] = None

    @property
    def config(self) -> WatchConfig:
        return self._config

    @property
    def source(self) -> EventSource:
        return self._source

    @property
    def state(self) -> EngineState:
        return self._state

    def setup(self) -> None:
        """Install filters and register every configured directory.

        Directories registered before a failing one stay registered.
        """

        if self._state is not EngineState.UNCONFIGURED:
            raise SetupError(f"engine cannot be set up while {self._state.value}")

        source = self._source
        source.set_max_events(MAX_EVENTS_PER_CYCLE)
        source.filter_ops(RawOp.WRITE)

        try:
            regex = re.compile(self._config.pattern)
        except re.error as exc:
            self._state = EngineState.FAILED
            raise SetupError(f"couldn't compile regex: {self._config.pattern}") from exc
        source.add_filter_hook(regex_filter_hook(regex))

        for directory in self._config.dirs:
            try:
                if self._config.recursive:
                    source.add_recursive(directory)
                else:
                    source.add(directory)
            except SourceError as exc:
                self._state = EngineState.FAILED
                kind = "recursive dir" if self._config.recursive else "dir"
                raise SetupError(f"failed to watch {kind}: {directory}") from exc

        self._state = EngineState.CONFIGURED
        logger.info(
            "Watching %s (pattern=%s, recursive=%s)",
            ", ".join(self._config.dirs),
            self._config.pattern,
            self._config.recursive,
        )

    def start(self, *, block: bool = True) -> None:
        """Begin watching.

        With ``block=True`` this returns only once the source is closed. With
        ``block=False`` polling runs on a background thread and this returns as
        soon as it has begun.
        """

        if self._state is not EngineState.CONFIGURED:
            raise StartError(f"engine cannot be started while {self._state.value}")

        # The consumer must be ready before the first event can be produced.
        self._dispatcher = threading.Thread(target=self._dispatch, name="watchit-dispatch", daemon=True)
        self._dispatcher.start()
        self._state = EngineState.RUNNING

        if block:
            self._run_source()
            self._raise_if_failed()
            self._dispatcher.join()
            return

        self._poller = threading.Thread(target=self._run_source, name="watchit-poll", daemon=True)
        self._poller.start()
        while not self._source.wait(timeout=0.05):
            if not self._poller.is_alive():
                break
        self._raise_if_failed()
        self._log_watched_files()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Close the raw source and wait for the dispatch thread to finish."""

        self._source.close()
        for thread in (self._poller, self._dispatcher):
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout)

    def _run_source(self) -> None:
        try:
            self._source.start(self._config.poll_interval)
        except SourceError as exc:
            self._start_error = exc
            self._source.close()

    def _raise_if_failed(self) -> None:
        if self._start_error is None:
            return
        self._state = EngineState.FAILED
        if self._dispatcher is not None:
            self._dispatcher.join()
        raise StartError("failed to start watching files") from self._start_error

    def _log_watched_files(self) -> None:
        watched = self._source.watched_files()
        logger.info("Watching %s files", len(watched))
        for path in sorted(watched):
            logger.debug("Watched file: %s", path)

    def _dispatch(self) -> None:
        signals = self._source.signals
        while True:
            signal = signals.get()
            if signal.kind is SignalKind.CLOSED:
                break
            if signal.kind is SignalKind.ERROR:
                logger.warning("Watch error: %s", signal.error)
                continue
            if signal.event is None:
                continue

            op = translate(signal.event.op)
            path = str(signal.event.path)
            try:
                self._handler(op, path)
            except Exception:
                logger.exception("Handler failed for %s %s", operation_name(op), path)

        if self._state is EngineState.RUNNING:
            self._state = EngineState.STOPPED
        logger.debug("Dispatch loop finished")
