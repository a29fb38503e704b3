"""Tests for the plain-text run transcript."""

from __future__ import annotations

from pathlib import Path

from attoloop.coordinator.event_bus import LoopEvent
from attoloop.transcript import RunTranscript, transcript_path


def test_path_naming(tmp_path: Path) -> None:
    path = transcript_path(tmp_path / "logs")
    assert path.parent == tmp_path / "logs"
    assert path.name.startswith("iterate-")
    assert path.suffix == ".log"


def test_records_run(tmp_path: Path) -> None:
    path = tmp_path / "logs" / "run.log"
    transcript = RunTranscript(path)
    transcript.run_start(workspace="/w", mode="incremental", max_iterations=5)
    transcript.handle_event(LoopEvent(event_type="iteration_start", iteration=1))
    transcript.append_output("stdout", "agent says hi\n")
    transcript.append_output("stderr", "oops\n")
    transcript.handle_event(LoopEvent(event_type="iteration_complete", iteration=1, data={"duration_s": 2.5}))
    transcript.handle_event(LoopEvent(event_type="agent_error", iteration=2, message="exit 1"))
    transcript.handle_event(LoopEvent(event_type="session_end", message="completed"))
    transcript.close()

    text = path.read_text()
    assert "ATTOLOOP - EXECUTION LOG" in text
    assert "Max Iterations: 5" in text
    assert "ITERATION 1" in text
    assert "agent says hi" in text
    assert "[stderr] oops" in text
    assert "finished in 2.5s" in text
    assert "ERROR (iteration 2): exit 1" in text
    assert text.index("agent says hi") < text.index("RUN END")


def test_disabled_writes_nothing(tmp_path: Path) -> None:
    path = tmp_path / "logs" / "run.log"
    transcript = RunTranscript(path, enabled=False)
    transcript.section("X", "y")
    transcript.append_output("stdout", "z")
    transcript.close()
    assert not path.exists()


def test_write_failure_disables(tmp_path: Path) -> None:
    blocker = tmp_path / "logs"
    blocker.write_text("not a directory")
    transcript = RunTranscript(blocker / "run.log")
    transcript.section("X", "y")
    assert not transcript.enabled
    transcript.close()
