"""Debounced change notifications for the status artifact.

The agent may rewrite ``.status.json`` many times per second. Raw filesystem
events restart a debounce timer; only when the timer expires is the file
re-read and compared with the last emitted snapshot. Writes that change
nothing but ``lastUpdated`` are dropped when ``meaningful_only`` is set.
"""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from attoloop.protocol.models import (
    ChangeEvent,
    IncrementalStatus,
    StatusDelta,
    StatusSnapshot,
)
from attoloop.status.store import StatusStore

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[ChangeEvent], Any]

DEFAULT_DEBOUNCE_MS = 2000
_JOIN_TIMEOUT_SECONDS = 5.0


def _progress_counts(snapshot: StatusSnapshot | None) -> tuple[int, int] | None:
    if isinstance(snapshot, IncrementalStatus) and snapshot.progress is not None:
        return snapshot.progress.completed, snapshot.progress.total
    return None


def compute_delta(previous: StatusSnapshot | None, current: StatusSnapshot) -> StatusDelta:
    prev_counts = _progress_counts(previous) or (0, 0)
    cur_counts = _progress_counts(current) or (0, 0)
    if previous is None:
        return StatusDelta(
            progress_changed=_progress_counts(current) is not None,
            completed_delta=cur_counts[0],
            total_delta=cur_counts[1],
            completion_status_changed=current.complete,
            summary_changed=current.summary is not None,
        )
    return StatusDelta(
        progress_changed=_progress_counts(previous) != _progress_counts(current),
        completed_delta=cur_counts[0] - prev_counts[0],
        total_delta=cur_counts[1] - prev_counts[1],
        completion_status_changed=previous.complete != current.complete,
        summary_changed=previous.summary != current.summary,
    )


class _StatusFileHandler(FileSystemEventHandler):
    def __init__(self, filename: str, on_event: Callable[[], None]) -> None:
        super().__init__()
        self._filename = filename
        self._on_event = on_event

    def _matches(self, raw_path: Any) -> bool:
        return Path(os.fsdecode(raw_path)).name == self._filename

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._matches(event.src_path):
            self._on_event()

    def on_modified(self, event: FileSystemEvent) -> None:
        self.on_created(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        # Atomic writers rename a temp file over the artifact.
        dest = getattr(event, "dest_path", "")
        if not event.is_directory and dest and self._matches(dest):
            self._on_event()


class ChangeWatcher:
    """Watches one status file from a background observer thread."""

    def __init__(
        self,
        store: StatusStore,
        *,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        meaningful_only: bool = True,
        observer_factory: Callable[[], Any] = Observer,
    ) -> None:
        self.store = store
        self.debounce_ms = debounce_ms
        self.meaningful_only = meaningful_only
        self._observer_factory = observer_factory
        self._lock = threading.Lock()
        self._observer: Any = None
        self._timer: threading.Timer | None = None
        self._retry_timer: threading.Timer | None = None
        self._last: StatusSnapshot | None = None
        self._subscribers: list[ChangeCallback] = []
        self._stopped = True
        self._emitted = 0

    @property
    def emitted(self) -> int:
        return self._emitted

    @property
    def last_snapshot(self) -> StatusSnapshot | None:
        return self._last

    def subscribe(self, callback: ChangeCallback) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: ChangeCallback) -> None:
        self._subscribers = [cb for cb in self._subscribers if cb is not callback]

    def start(self) -> None:
        with self._lock:
            if not self._stopped:
                return
            self._stopped = False
        if self.store.path.exists():
            self._last = self.store.read()
        self._subscribe()

    def stop(self) -> None:
        """Release the subscription; pending timers never fire afterwards."""
        with self._lock:
            self._stopped = True
            for timer in (self._timer, self._retry_timer):
                if timer is not None:
                    timer.cancel()
            self._timer = None
            self._retry_timer = None
            observer, self._observer = self._observer, None
        if observer is None:
            return
        try:
            observer.stop()
            observer.join(timeout=_JOIN_TIMEOUT_SECONDS)
        except Exception as exc:
            logger.debug("Status observer shutdown error: %s", exc)

    def handle_fs_event(self) -> None:
        """Record one raw write and restart the debounce window."""
        with self._lock:
            if self._stopped:
                return
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce_ms / 1000, self._flush)
            self._timer.daemon = True
            self._timer.start()

    def _flush(self) -> None:
        with self._lock:
            if self._stopped:
                return
            self._timer = None
            previous = self._last
        current = self.store.read()
        delta = compute_delta(previous, current)
        if previous is not None and self.meaningful_only and not delta.meaningful:
            logger.debug("Suppressed cosmetic status write")
            return
        event = ChangeEvent(previous=previous, current=current, delta=delta)
        with self._lock:
            if self._stopped:
                return
            self._last = current
            self._emitted += 1
        for cb in list(self._subscribers):
            try:
                cb(event)
            except Exception as exc:
                logger.debug("ChangeWatcher subscriber error: %s", exc)

    def _subscribe(self) -> None:
        with self._lock:
            self._retry_timer = None
            if self._stopped or self._observer is not None:
                return
            directory = self.store.path.parent
            if not directory.is_dir():
                logger.debug("Status directory %s missing; retrying", directory)
                self._schedule_retry()
                return
            handler = _StatusFileHandler(self.store.path.name, self.handle_fs_event)
            observer = self._observer_factory()
            try:
                observer.schedule(handler, str(directory), recursive=False)
                observer.start()
            except Exception as exc:
                logger.warning("Could not watch %s: %s; retrying", directory, exc)
                self._schedule_retry()
                return
            self._observer = observer

    def _schedule_retry(self) -> None:
        # Caller holds the lock.
        self._retry_timer = threading.Timer(max(self.debounce_ms, 100) / 1000, self._subscribe)
        self._retry_timer.daemon = True
        self._retry_timer.start()
