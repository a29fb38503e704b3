"""Derived run statistics (elapsed, rolling average, ETA)."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from attoloop.protocol.models import ExecutionMode, StopSource, utc_now

ROLLING_WINDOW = 5


@dataclass(slots=True)
class IterationStats:
    current_iteration: int
    max_iterations: int
    tasks_completed: int | None
    tasks_total: int | None
    mode: ExecutionMode
    elapsed_seconds: int
    avg_iteration_seconds: int
    eta_seconds: int | None  # None until ROLLING_WINDOW samples exist
    stagnation_count: int = 0
    stop_requested: bool = False
    stop_source: StopSource = StopSource.NONE


def calculate_stats(
    *,
    current_iteration: int,
    max_iterations: int,
    durations: list[float],
    started_at: datetime,
    mode: ExecutionMode,
    tasks_completed: int | None = None,
    tasks_total: int | None = None,
    stagnation_count: int = 0,
    stop_requested: bool = False,
    stop_source: StopSource = StopSource.NONE,
    now: datetime | None = None,
) -> IterationStats:
    elapsed = ((now or utc_now()) - started_at).total_seconds()
    recent = durations[-ROLLING_WINDOW:]
    avg = int(sum(recent) / len(recent)) if recent else 0
    remaining = max_iterations - current_iteration
    eta = remaining * avg if avg > 0 and len(recent) >= ROLLING_WINDOW else None
    return IterationStats(
        current_iteration=current_iteration,
        max_iterations=max_iterations,
        tasks_completed=tasks_completed,
        tasks_total=tasks_total,
        mode=mode,
        elapsed_seconds=int(elapsed),
        avg_iteration_seconds=avg,
        eta_seconds=eta,
        stagnation_count=stagnation_count,
        stop_requested=stop_requested,
        stop_source=stop_source,
    )


def format_duration(seconds: int | float) -> str:
    """Format as ``45s``, ``2m 30s`` or ``1h 1m``."""
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        minutes, secs = divmod(seconds, 60)
        return f"{minutes}m {secs}s" if secs else f"{minutes}m"
    hours, rest = divmod(seconds, 3600)
    return f"{hours}h {rest // 60}m"


def format_relative_time(moment: datetime, now: datetime | None = None) -> str:
    seconds = int(((now or utc_now()) - moment).total_seconds())
    if seconds < 5:
        return "just now"
    if seconds < 60:
        return f"{seconds}s ago"
    return f"{seconds // 60}m ago"
