"""Plain-text run transcript (``logs/iterate-<timestamp>.log``)."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TextIO

from attoloop.coordinator.event_bus import LoopEvent
from attoloop.protocol.models import utc_now

logger = logging.getLogger(__name__)

_RULE = "=" * 80
_FLUSH_BYTES = 10240


def transcript_path(log_dir: Path) -> Path:
    stamp = utc_now().strftime("%Y-%m-%dT%H-%M-%S")
    return log_dir / f"iterate-{stamp}.log"


class RunTranscript:
    """Appends run metadata, prompts, agent output and errors to one file.

    A write failure disables the transcript for the rest of the run.
    """

    def __init__(self, path: Path, *, enabled: bool = True) -> None:
        self.path = path
        self.enabled = enabled
        self._handle: TextIO | None = None
        self._buffer: list[str] = []
        self._buffered = 0

    def _write(self, text: str) -> None:
        if not self.enabled:
            return
        try:
            if self._handle is None:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self._handle = self.path.open("a", encoding="utf-8")
                self._handle.write(f"{_RULE}\nATTOLOOP - EXECUTION LOG\nStarted: {utc_now().isoformat()}\n{_RULE}\n\n")
            self._handle.write(text)
            self._handle.flush()
        except OSError as exc:
            logger.warning("Transcript disabled: %s", exc)
            self.enabled = False

    def section(self, title: str, content: str) -> None:
        self.flush()
        self._write(f"{_RULE}\n{title}\n{_RULE}\n{content}\n\n")

    def run_start(self, *, workspace: str, mode: str, max_iterations: int) -> None:
        self.section(
            "RUN METADATA",
            f"Workspace: {workspace}\nMode: {mode}\nMax Iterations: {max_iterations}\n"
            f"Start Time: {utc_now().isoformat()}",
        )

    def append_output(self, stream_name: str, chunk: str) -> None:
        if not self.enabled:
            return
        self._buffer.append(chunk if stream_name == "stdout" else f"[stderr] {chunk}")
        self._buffered += len(chunk)
        if self._buffered > _FLUSH_BYTES:
            self.flush()

    def flush(self) -> None:
        if not self._buffer:
            return
        text = "".join(self._buffer)
        self._buffer.clear()
        self._buffered = 0
        self._write(text)

    def handle_event(self, event: LoopEvent) -> None:
        match event.event_type:
            case "iteration_start":
                self.flush()
                self._write(
                    f"{_RULE}\nITERATION {event.iteration}\nStarted: {utc_now().isoformat()}\n{_RULE}\n\nAGENT OUTPUT:\n"
                )
            case "iteration_complete":
                self.flush()
                stats = event.data.get("stats")
                remaining = ""
                if stats is not None and stats.tasks_total is not None and stats.tasks_completed is not None:
                    remaining = f" ({stats.tasks_total - stats.tasks_completed} remaining)"
                self._write(
                    f"\n--- iteration {event.iteration} finished in {event.data.get('duration_s', 0):.1f}s{remaining}\n\n"
                )
            case "agent_error" | "error":
                self.flush()
                self._write(f"\nERROR (iteration {event.iteration}): {event.message}\n\n")
            case "verification_result":
                self.section(
                    f"VERIFICATION (attempt {event.data.get('attempt')})",
                    f"Status: {event.data.get('status')}\nIssues: {event.data.get('issues')}\n{event.message}",
                )
            case "session_end":
                self.section("RUN END", event.message)

    def close(self) -> None:
        self.flush()
        if self._handle is not None:
            try:
                self._handle.close()
            except OSError as exc:
                logger.debug("Transcript close failed: %s", exc)
            self._handle = None
