"""Record types for sessions, status snapshots and agent processes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Literal

VerificationStatus = Literal["pass", "fail", "needs_review"]
Confidence = Literal["high", "medium", "low"]


def utc_now() -> datetime:
    return datetime.now(UTC)


class ExecutionMode(StrEnum):
    INCREMENTAL = "incremental"
    AUTONOMOUS = "autonomous"

    @property
    def default_max_iterations(self) -> int:
        return 50 if self is ExecutionMode.INCREMENTAL else 20


class TerminalState(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    STOPPED = "stopped"
    ERRORED = "errored"


class SessionPhase(StrEnum):
    STARTING = "starting"
    RUNNING = "running"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    STOPPED = "stopped"
    ERRORED = "errored"


class StopReason(StrEnum):
    COMPLETED = "completed"
    MAX_ITERATIONS = "iteration budget exhausted"
    STAGNATION = "stagnation"
    STOP_KEYBOARD = "stop requested (keyboard)"
    STOP_FILE = "stop requested (file)"
    SPAWN_FAILED = "agent could not be spawned"
    INTERRUPTED = "interrupted"


class StopSource(StrEnum):
    KEYBOARD = "keyboard"
    FILE = "file"
    NONE = "none"


class ProcessState(StrEnum):
    NONE = "none"
    SPAWNING = "spawning"
    RUNNING = "running"
    TERMINATING = "terminating"
    EXITED = "exited"


@dataclass(slots=True)
class Progress:
    completed: int = 0
    total: int = 0

    @property
    def remaining(self) -> int:
        return self.total - self.completed

    @property
    def percentage(self) -> int:
        if self.total <= 0:
            return 0
        return round(self.completed / self.total * 100)


@dataclass(slots=True, kw_only=True)
class _StatusCommon:
    complete: bool = False
    summary: str | None = None
    last_updated: datetime | None = None
    phase: str | None = None
    blockers: list[str] = field(default_factory=list)
    notes: str | None = None


@dataclass(slots=True, kw_only=True)
class IncrementalStatus(_StatusCommon):
    """Status reported by an agent tracking explicit completed/total counts."""

    progress: Progress | None = None


@dataclass(slots=True, kw_only=True)
class AutonomousStatus(_StatusCommon):
    """Status reported by an agent that only flags whether work happened."""

    worked: bool | None = None


StatusSnapshot = IncrementalStatus | AutonomousStatus


def default_snapshot(mode: ExecutionMode) -> StatusSnapshot:
    match mode:
        case ExecutionMode.INCREMENTAL:
            return IncrementalStatus(complete=False, progress=Progress(0, 0))
        case ExecutionMode.AUTONOMOUS:
            return AutonomousStatus(complete=False)


@dataclass(slots=True)
class StatusDelta:
    progress_changed: bool = False
    completed_delta: int = 0
    total_delta: int = 0
    completion_status_changed: bool = False
    summary_changed: bool = False

    @property
    def meaningful(self) -> bool:
        return self.progress_changed or self.completion_status_changed or self.summary_changed


@dataclass(slots=True)
class ChangeEvent:
    previous: StatusSnapshot | None
    current: StatusSnapshot
    delta: StatusDelta
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(slots=True)
class StopState:
    requested: bool = False
    source: StopSource = StopSource.NONE


@dataclass(slots=True)
class ChildProcessRecord:
    pid: int | None = None
    state: ProcessState = ProcessState.NONE
    exit_code: int | None = None
    signal: int | None = None


@dataclass(slots=True)
class AgentResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_s: float = 0.0


@dataclass(slots=True)
class VerificationResult:
    status: VerificationStatus
    summary: str
    full_report: str = ""
    report_path: str = ""
    issue_count: int = 0
    issues: list[str] = field(default_factory=list)
    confidence: Confidence = "medium"
    recommended_action: str = "Manual review"


@dataclass(slots=True)
class ExecutionSession:
    """Mutable state of one scheduler run. Written only by the scheduler."""

    mode: ExecutionMode
    max_iterations: int
    inter_iteration_delay_seconds: float = 0
    stagnation_threshold: int = 0
    iteration_index: int = 0
    iterations_run: int = 0
    stagnation_count: int = 0
    terminal_state: TerminalState = TerminalState.RUNNING
    phase: SessionPhase = SessionPhase.STARTING
    reason: StopReason | None = None
    verification_attempts: int = 0
    needs_manual_review: bool = False
    status_reads: int = 0
    started_at: datetime = field(default_factory=utc_now)
    durations: list[float] = field(default_factory=list)
    last_error: str | None = None
    last_output: str = ""

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if self.inter_iteration_delay_seconds < 0:
            raise ValueError("inter_iteration_delay_seconds must be >= 0")
        if self.stagnation_threshold < 0:
            raise ValueError("stagnation_threshold must be >= 0")


@dataclass(slots=True)
class SessionOutcome:
    terminal_state: TerminalState
    reason: StopReason | None
    iterations: int
    verification: VerificationResult | None = None
    needs_manual_review: bool = False
    error: str | None = None
    last_output: str = ""

    @property
    def exit_code(self) -> int:
        if self.terminal_state is TerminalState.ERRORED:
            return 1
        if self.reason is StopReason.INTERRUPTED:
            return 130
        if self.verification is not None and self.verification.status == "fail":
            return 1
        return 0
