"""Terminal progress output for a running loop."""

from __future__ import annotations

from typing import Literal

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from attoloop.coordinator.event_bus import LoopEvent
from attoloop.coordinator.stats import format_duration
from attoloop.protocol.models import SessionOutcome, StopState, TerminalState, VerificationResult

OutputLevel = Literal["quiet", "progress", "verbose"]

_STATE_STYLE = {
    TerminalState.COMPLETED: "green",
    TerminalState.STOPPED: "yellow",
    TerminalState.ERRORED: "red",
    TerminalState.RUNNING: "cyan",
}


class ConsoleReporter:
    """Renders loop events at one of three verbosity levels.

    ``quiet`` prints only the final outcome, ``progress`` adds one line per
    iteration, ``verbose`` also streams agent output.
    """

    def __init__(self, level: OutputLevel = "progress", console: Console | None = None) -> None:
        self.level = level
        self.console = console or Console(highlight=False)

    @property
    def streams_output(self) -> bool:
        return self.level == "verbose"

    def status(self, message: str) -> None:
        if self.level != "quiet":
            self.console.print(message)

    def verbose(self, message: str) -> None:
        if self.level == "verbose":
            self.console.print(f"[dim]{escape(message)}[/dim]")

    def output(self, stream_name: str, chunk: str) -> None:
        if self.level != "verbose":
            return
        style = "dim red" if stream_name == "stderr" else None
        self.console.out(chunk, style=style, end="")

    def stop_changed(self, state: StopState) -> None:
        if state.requested:
            self.status(f"[yellow]Stop requested ({state.source}); finishing the current iteration[/yellow]")
        else:
            self.status("[yellow]Stop cancelled[/yellow]")

    def handle_event(self, event: LoopEvent) -> None:
        match event.event_type:
            case "session_start":
                self.status(f"[bold]Starting[/bold] {escape(event.message)}")
            case "iteration_start":
                self.verbose(event.message)
            case "iteration_complete":
                self._iteration_line(event)
            case "agent_error":
                self.status(f"[red]✗ Iteration {event.iteration}: {escape(event.message)}[/red]")
            case "error":
                self.console.print(f"[bold red]Error:[/bold red] {escape(event.message)}")
            case "verification_start":
                self.status(f"[cyan]Verifying completion (attempt {event.data.get('attempt')})...[/cyan]")
            case "verification_result":
                self.status(
                    f"Verification: [bold]{event.data.get('status')}[/bold] "
                    f"({event.data.get('issues', 0)} issue(s)) {escape(event.message)}"
                )

    def _iteration_line(self, event: LoopEvent) -> None:
        stats = event.data.get("stats")
        parts = [f"✓ Iteration {event.iteration} complete"]
        if stats is not None:
            if stats.tasks_total:
                parts.append(f"{stats.tasks_completed}/{stats.tasks_total} items")
            parts.append(f"elapsed {format_duration(stats.elapsed_seconds)}")
            if stats.eta_seconds is not None:
                parts.append(f"eta {format_duration(stats.eta_seconds)}")
            if stats.stagnation_count:
                parts.append(f"no-op streak {stats.stagnation_count}")
        self.status(" · ".join(parts))
        if event.message:
            self.verbose(f"   {event.message}")

    def outcome(self, outcome: SessionOutcome, *, transcript: str | None = None) -> None:
        style = _STATE_STYLE[outcome.terminal_state]
        lines = [
            f"State: [{style}]{outcome.terminal_state}[/{style}]",
            f"Reason: {outcome.reason or 'n/a'}",
            f"Iterations: {outcome.iterations}",
        ]
        if outcome.needs_manual_review:
            lines.append("[yellow]Flagged for manual review[/yellow]")
        if outcome.error:
            lines.append(f"[red]Error: {escape(outcome.error)}[/red]")
            if outcome.last_output:
                lines.append(f"Last output:\n{escape(outcome.last_output[-800:])}")
        if transcript:
            lines.append(f"Log file: {transcript}")
        self.console.print(Panel("\n".join(lines), title="attoloop", border_style=style))
        if outcome.verification is not None and self.level != "quiet":
            self.verification(outcome.verification)

    def verification(self, result: VerificationResult) -> None:
        table = Table(show_header=False, box=None)
        table.add_row("Status", result.status)
        table.add_row("Confidence", result.confidence)
        table.add_row("Summary", result.summary)
        table.add_row("Recommended", result.recommended_action)
        if result.report_path:
            table.add_row("Report", result.report_path)
        for i, issue in enumerate(result.issues, 1):
            table.add_row(f"Issue {i}", issue)
        self.console.print(table)
