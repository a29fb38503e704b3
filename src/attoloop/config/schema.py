"""Configuration schema for attoloop YAML files."""

from __future__ import annotations

from dataclasses import dataclass, field

DEFAULT_NOTIFY_EVENTS = ["iteration", "completion", "error", "status_update"]


@dataclass(slots=True)
class RunConfig:
    mode: str = "incremental"
    max_iterations: int | None = None  # None = mode default
    delay_seconds: float = 2
    stagnation_threshold: int = 2  # 0 disables; autonomous mode only


@dataclass(slots=True)
class AgentConfig:
    command: str = "claude"
    args: list[str] = field(default_factory=list)
    grace_period_ms: int = 5000
    skip_permissions: bool = False


@dataclass(slots=True)
class VerificationConfig:
    auto_verify: bool = True
    resume_on_fail: bool = True
    max_attempts: int = 2
    report_filename: str = "verification-report.md"
    depth: str = "standard"
    notify: bool = True


@dataclass(slots=True)
class StatusWatchConfig:
    enabled: bool = True
    debounce_ms: int = 2000
    meaningful_only: bool = True


@dataclass(slots=True)
class NotificationConfig:
    url: str | None = None
    events: list[str] = field(default_factory=lambda: list(DEFAULT_NOTIFY_EVENTS))
    timeout_seconds: float = 10.0


@dataclass(slots=True)
class OutputConfig:
    level: str = "progress"
    transcript: bool = True


@dataclass(slots=True)
class StopConfig:
    key: str = "s"
    filename: str = ".stop"


@dataclass(slots=True)
class LoopConfig:
    run: RunConfig = field(default_factory=RunConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    status_watch: StatusWatchConfig = field(default_factory=StatusWatchConfig)
    notification: NotificationConfig = field(default_factory=NotificationConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    stop: StopConfig = field(default_factory=StopConfig)
    debug: bool = False
