"""Graceful stop requests from the keyboard or a sentinel file.

A stop is advisory: the scheduler checks it between iterations, so the
agent invocation in flight always finishes. Ctrl+C is a separate path
(SIGINT) and is left untouched by the cbreak terminal mode used here.
"""

from __future__ import annotations

import logging
import os
import select
import sys
import termios
import threading
import tty
from collections.abc import Callable
from pathlib import Path
from typing import Any, TextIO

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from attoloop.protocol.io import ensure_parent, remove_quietly
from attoloop.protocol.models import StopSource, StopState, utc_now

logger = logging.getLogger(__name__)

_KEY_POLL_SECONDS = 0.2
_JOIN_TIMEOUT_SECONDS = 2.0


def request_file_stop(stop_file: Path) -> Path:
    """Create the sentinel; its content is informational only."""
    ensure_parent(stop_file)
    stop_file.write_text(f"Stop requested at {utc_now().isoformat()}\n", encoding="utf-8")
    return stop_file


class _SentinelHandler(FileSystemEventHandler):
    def __init__(self, signal: StopSignal) -> None:
        super().__init__()
        self._signal = signal
        self._filename = signal.stop_file.name

    def _name(self, raw_path: Any) -> str:
        return Path(os.fsdecode(raw_path)).name

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._name(event.src_path) == self._filename:
            self._signal.set_file_stop()

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        if self._name(getattr(event, "dest_path", "")) == self._filename:
            self._signal.set_file_stop()
        elif self._name(event.src_path) == self._filename:
            self._signal.clear_file_stop()

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._name(event.src_path) == self._filename:
            self._signal.clear_file_stop()


class StopSignal:
    """One stop flag fed by a key listener thread and a file observer."""

    def __init__(
        self,
        stop_file: Path,
        *,
        key: str = "s",
        stdin: TextIO | None = None,
        observer_factory: Callable[[], Any] = Observer,
        on_change: Callable[[StopState], Any] | None = None,
    ) -> None:
        self.stop_file = Path(stop_file)
        self.key = key.lower()
        self._stdin = stdin if stdin is not None else sys.stdin
        self._observer_factory = observer_factory
        self._on_change = on_change
        self._state = StopState()
        self._lock = threading.Lock()
        self._observer: Any = None
        self._listener: threading.Thread | None = None
        self._listener_stop = threading.Event()
        self._saved_termios: list[Any] | None = None
        self._tty_fd: int | None = None
        self._initialized = False

    @property
    def keyboard_enabled(self) -> bool:
        return self._listener is not None

    def init(self) -> None:
        if self._initialized:
            return
        self._initialized = True
        if self.stop_file.exists():
            logger.info("Stop file present before start: %s", self.stop_file)
            self.set_file_stop()
        self._watch_file()
        self._install_key_listener()

    def is_stop_requested(self) -> bool:
        return self._state.requested

    def get_state(self) -> StopState:
        with self._lock:
            return StopState(requested=self._state.requested, source=self._state.source)

    def toggle(self) -> StopState:
        with self._lock:
            if self._state.requested and self._state.source is StopSource.FILE:
                logger.info("Stop came from %s; delete the file to cancel it", self.stop_file)
                return StopState(requested=True, source=StopSource.FILE)
            self._state.requested = not self._state.requested
            self._state.source = StopSource.KEYBOARD if self._state.requested else StopSource.NONE
            state = StopState(requested=self._state.requested, source=self._state.source)
        self._notify(state)
        return state

    def set_file_stop(self) -> None:
        with self._lock:
            if self._state.requested and self._state.source is StopSource.FILE:
                return
            self._state.requested = True
            self._state.source = StopSource.FILE
            state = StopState(requested=True, source=StopSource.FILE)
        self._notify(state)

    def clear_file_stop(self) -> None:
        with self._lock:
            if self._state.source is not StopSource.FILE:
                return
            self._state.requested = False
            self._state.source = StopSource.NONE
            state = StopState()
        self._notify(state)

    def cleanup(self, delete_file: bool = True) -> None:
        """Restore the terminal, stop listeners, optionally remove the sentinel."""
        self._initialized = False
        self._listener_stop.set()
        if self._listener is not None:
            try:
                self._listener.join(timeout=_JOIN_TIMEOUT_SECONDS)
            except RuntimeError as exc:
                logger.debug("Key listener join failed: %s", exc)
            self._listener = None

        if self._saved_termios is not None and self._tty_fd is not None:
            try:
                termios.tcsetattr(self._tty_fd, termios.TCSADRAIN, self._saved_termios)
            except (termios.error, OSError, ValueError) as exc:
                logger.warning("Could not restore terminal settings: %s", exc)
            self._saved_termios = None
            self._tty_fd = None

        observer, self._observer = self._observer, None
        if observer is not None:
            try:
                observer.stop()
                observer.join(timeout=_JOIN_TIMEOUT_SECONDS)
            except Exception as exc:
                logger.debug("Stop-file observer shutdown error: %s", exc)

        if delete_file:
            try:
                if remove_quietly(self.stop_file):
                    logger.debug("Removed stop file %s", self.stop_file)
            except OSError as exc:
                logger.warning("Could not remove stop file %s: %s", self.stop_file, exc)

    def _notify(self, state: StopState) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(state)
        except Exception as exc:
            logger.debug("Stop signal callback error: %s", exc)

    def _watch_file(self) -> None:
        directory = self.stop_file.parent
        if not directory.is_dir():
            logger.debug("Stop file directory %s missing; file stop disabled", directory)
            return
        observer = self._observer_factory()
        try:
            observer.schedule(_SentinelHandler(self), str(directory), recursive=False)
            observer.start()
        except Exception as exc:
            logger.warning("Could not watch stop file %s: %s", self.stop_file, exc)
            return
        self._observer = observer

    def _install_key_listener(self) -> None:
        stream = self._stdin
        try:
            if stream is None or not stream.isatty():
                return
            fd = stream.fileno()
            self._saved_termios = termios.tcgetattr(fd)
            # cbreak keeps ISIG, so Ctrl+C still raises SIGINT.
            tty.setcbreak(fd)
        except (termios.error, OSError, ValueError) as exc:
            logger.debug("Keyboard stop unavailable: %s", exc)
            self._saved_termios = None
            return
        self._tty_fd = fd
        self._listener_stop.clear()
        self._listener = threading.Thread(
            target=self._listen, args=(fd,), name="attoloop-stop-key", daemon=True
        )
        self._listener.start()

    def _listen(self, fd: int) -> None:
        while not self._listener_stop.is_set():
            try:
                ready, _, _ = select.select([fd], [], [], _KEY_POLL_SECONDS)
                if not ready:
                    continue
                data = os.read(fd, 1)
            except (OSError, ValueError) as exc:
                logger.debug("Key listener stopped: %s", exc)
                return
            if not data:
                return
            if data.decode("utf-8", errors="ignore").lower() == self.key:
                state = self.toggle()
                logger.info("Stop %s via keyboard", "requested" if state.requested else "cancelled")
