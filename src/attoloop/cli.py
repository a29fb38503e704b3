"""CLI entrypoint for attoloop."""

from __future__ import annotations

import asyncio
import json
import os
import signal
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any

import click

from attoloop.config.loader import VALID_DEPTHS, VALID_MODES, VALID_OUTPUT_LEVELS, load_config
from attoloop.config.schema import LoopConfig
from attoloop.console import ConsoleReporter
from attoloop.control.stop_signal import StopSignal, request_file_stop
from attoloop.coordinator.event_bus import EventBus
from attoloop.coordinator.scheduler import IterationScheduler
from attoloop.coordinator.verification import Verifier
from attoloop.errors import ConfigError, LoopError, SpawnError
from attoloop.logging_setup import bind_session, get_logger, setup_logging
from attoloop.notify import Notifier
from attoloop.process.agent_process import AgentProcessHandle
from attoloop.prompts import PromptBuilder
from attoloop.protocol.models import ExecutionMode, ExecutionSession, SessionOutcome
from attoloop.status.store import StatusStore
from attoloop.status.watcher import ChangeWatcher
from attoloop.transcript import RunTranscript, transcript_path
from attoloop.workspace import WorkspacePaths

_WORKSPACE = click.Path(exists=True, file_okay=False, path_type=Path)


@click.group()
@click.version_option(package_name="attoloop")
def main() -> None:
    """Run an agent CLI in a loop until the task is complete."""


def _load(workspace: Path, cli_args: dict[str, Any] | None = None) -> LoopConfig:
    try:
        return load_config(workspace=workspace, cli_args=cli_args)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


def _paths(workspace: Path, cfg: LoopConfig) -> WorkspacePaths:
    return WorkspacePaths(
        workspace.resolve(),
        stop_filename=cfg.stop.filename,
        report_filename=cfg.verification.report_filename,
    )


def _agent(cfg: LoopConfig) -> AgentProcessHandle:
    args = list(cfg.agent.args)
    if cfg.agent.skip_permissions and "--dangerously-skip-permissions" not in args:
        args.append("--dangerously-skip-permissions")
    return AgentProcessHandle(cfg.agent.command, args, grace_period_ms=cfg.agent.grace_period_ms)


@main.command("run")
@click.argument("workspace", type=_WORKSPACE)
@click.option("--mode", type=click.Choice(VALID_MODES), default=None, help="Execution mode")
@click.option("-m", "--max-iterations", type=click.IntRange(min=1), default=None)
@click.option("--delay", type=click.FloatRange(min=0), default=None, help="Seconds between iterations")
@click.option("--no-delay", is_flag=True, help="Run iterations back to back")
@click.option(
    "--stagnation-threshold",
    type=click.IntRange(min=0),
    default=None,
    help="Stop after N consecutive no-op iterations (autonomous mode, 0 disables)",
)
@click.option("--output", "output_level", type=click.Choice(VALID_OUTPUT_LEVELS), default=None)
@click.option("-v", "--verbose", is_flag=True, help="Shorthand for --output verbose")
@click.option("-q", "--quiet", is_flag=True, help="Shorthand for --output quiet")
@click.option("--no-verify", is_flag=True, help="Accept claimed completion without verification")
@click.option("--dangerously-skip-permissions", "skip_permissions", is_flag=True, default=None)
@click.option("--agent-command", default=None, help="Agent binary (default: claude)")
@click.option("--dry-run", is_flag=True, help="Show configuration and first prompt, then exit")
@click.option("--debug", "debug_flag", is_flag=True, help="Enable debug logging")
@click.option("--json-logs", is_flag=True, help="Emit structured logs as JSON")
def run_cmd(
    workspace: Path,
    mode: str | None,
    max_iterations: int | None,
    delay: float | None,
    no_delay: bool,
    stagnation_threshold: int | None,
    output_level: str | None,
    verbose: bool,
    quiet: bool,
    no_verify: bool,
    skip_permissions: bool | None,
    agent_command: str | None,
    dry_run: bool,
    debug_flag: bool,
    json_logs: bool,
) -> None:
    """Iterate the agent over WORKSPACE/INSTRUCTIONS.md."""
    if verbose and quiet:
        raise click.UsageError("--verbose and --quiet are mutually exclusive")
    level = "verbose" if verbose else "quiet" if quiet else output_level
    cli_args: dict[str, Any] = {
        "run": {
            "mode": mode,
            "max_iterations": max_iterations,
            "delay_seconds": 0 if no_delay else delay,
            "stagnation_threshold": stagnation_threshold,
        },
        "agent": {"command": agent_command, "skip_permissions": skip_permissions or None},
        "verification": {"auto_verify": False if no_verify else None},
        "output": {"level": level},
        "debug": True if debug_flag else None,
    }
    cfg = _load(workspace, cli_args)
    setup_logging(debug=cfg.debug, json_output=json_logs, quiet=cfg.output.level == "quiet")
    paths = _paths(workspace, cfg)
    try:
        instructions = paths.read_instructions()
    except FileNotFoundError as exc:
        raise click.ClickException(str(exc)) from exc

    if dry_run:
        _dry_run(cfg, paths, instructions)
        raise SystemExit(0)

    code = asyncio.run(_run_session(cfg, paths, instructions))
    raise SystemExit(code)


def _dry_run(cfg: LoopConfig, paths: WorkspacePaths, instructions: str) -> None:
    mode = ExecutionMode(cfg.run.mode)
    prompts = PromptBuilder(paths.root, paths.status)
    agent = _agent(cfg)
    click.echo(json.dumps(asdict(cfg), indent=2))
    click.echo(f"\nCommand: {' '.join(agent.build_argv('<prompt>', '<system prompt>'))}")
    click.echo("\n--- system prompt ---\n" + prompts.system_prompt(mode))
    click.echo("--- iteration 1 prompt ---\n" + prompts.build_iteration_prompt(mode, 0, instructions))


async def _run_session(cfg: LoopConfig, paths: WorkspacePaths, instructions: str) -> int:
    mode = ExecutionMode(cfg.run.mode)
    bind_session(workspace=paths.root.name, mode=str(mode))
    slog = get_logger("attoloop.cli")
    session = ExecutionSession(
        mode=mode,
        max_iterations=cfg.run.max_iterations or mode.default_max_iterations,
        inter_iteration_delay_seconds=cfg.run.delay_seconds,
        stagnation_threshold=cfg.run.stagnation_threshold,
    )
    reporter = ConsoleReporter(cfg.output.level)  # type: ignore[arg-type]
    bus = EventBus()
    bus.subscribe(reporter.handle_event)
    transcript = RunTranscript(transcript_path(paths.log_dir), enabled=cfg.output.transcript)
    bus.subscribe(transcript.handle_event)

    store = StatusStore(paths.status, mode)
    if not paths.status.exists():
        store.initialize()
    prompts = PromptBuilder(paths.root, paths.status)
    agent = _agent(cfg)
    stop_signal = StopSignal(paths.stop_file, key=cfg.stop.key, on_change=reporter.stop_changed)
    watcher = None
    if cfg.status_watch.enabled:
        watcher = ChangeWatcher(
            store,
            debounce_ms=cfg.status_watch.debounce_ms,
            meaningful_only=cfg.status_watch.meaningful_only,
        )
    notifier = None
    if cfg.notification.url:
        notifier = Notifier(
            cfg.notification.url,
            workspace_name=paths.root.name,
            events=cfg.notification.events,
            timeout=cfg.notification.timeout_seconds,
        )
        bus.subscribe(notifier.handle_event)
        if watcher is not None:
            watcher.subscribe(notifier.handle_status_change)

    def on_output(stream_name: str, chunk: str) -> None:
        transcript.append_output(stream_name, chunk)
        reporter.output(stream_name, chunk)

    transcript.run_start(workspace=str(paths.root), mode=str(mode), max_iterations=session.max_iterations)
    transcript.section("INSTRUCTIONS", instructions)
    transcript.section("SYSTEM PROMPT", prompts.system_prompt(mode))

    scheduler = IterationScheduler(
        session,
        agent=agent,
        store=store,
        stop_signal=stop_signal,
        prompts=prompts,
        instructions=instructions,
        verifier=Verifier(agent, prompts, paths.verification_report, depth=cfg.verification.depth),
        verification=cfg.verification,
        watcher=watcher,
        bus=bus,
        on_output=on_output,
    )
    if sys.stdin.isatty():
        reporter.status(f"[dim]Press '{cfg.stop.key}' to stop after the current iteration, Ctrl+C to abort[/dim]")
    slog.info("session_start", mode=str(mode), max_iterations=session.max_iterations)

    task = asyncio.create_task(scheduler.run())
    loop = asyncio.get_running_loop()
    interrupts = 0

    def _on_interrupt() -> None:
        nonlocal interrupts
        interrupts += 1
        if interrupts == 1:
            reporter.status("[red]Interrupted; terminating agent (Ctrl+C again to force exit)[/red]")
            task.cancel()
            return
        # The first interrupt may still be inside terminate()'s grace wait.
        agent.kill()
        stop_signal.cleanup(delete_file=False)
        os._exit(130)

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _on_interrupt)
    try:
        outcome: SessionOutcome = await task
    except asyncio.CancelledError:
        outcome = scheduler.outcome()
    except LoopError as exc:
        slog.error("session_failed", error=repr(exc))
        outcome = scheduler.outcome()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        transcript.close()
        if notifier is not None:
            notifier.close()

    slog.info(
        "session_end",
        terminal_state=str(outcome.terminal_state),
        reason=str(outcome.reason),
        iterations=outcome.iterations,
    )
    reporter.outcome(outcome, transcript=str(transcript.path) if transcript.enabled else None)
    return outcome.exit_code


@main.command("stop")
@click.argument("workspace", type=_WORKSPACE)
def stop_cmd(workspace: Path) -> None:
    """Ask a running loop to stop after its current iteration."""
    cfg = _load(workspace)
    path = request_file_stop(_paths(workspace, cfg).stop_file)
    click.echo(f"Stop requested: {path}")
    click.echo("The loop stops after the current iteration. Delete the file to cancel.")


@main.command("status")
@click.argument("workspace", type=_WORKSPACE)
@click.option("--json", "as_json", is_flag=True, help="Print machine-readable status")
def status_cmd(workspace: Path, as_json: bool) -> None:
    """Show the agent-reported status of WORKSPACE."""
    cfg = _load(workspace)
    paths = _paths(workspace, cfg)
    store = StatusStore(paths.status, ExecutionMode(cfg.run.mode))
    snapshot = store.read()
    completed, total, pct = store.progress()
    warnings = store.validate().warnings
    data = {
        "mode": cfg.run.mode,
        "complete": snapshot.complete,
        "completed": completed,
        "total": total,
        "percentage": pct,
        "remaining": store.compute_remaining(),
        "summary": snapshot.summary,
        "stop_requested": paths.stop_file.exists(),
        "warnings": warnings,
    }
    if as_json:
        click.echo(json.dumps(data, indent=2))
        return
    click.echo(f"complete={snapshot.complete} progress={completed}/{total} ({pct}%)")
    if snapshot.summary:
        click.echo(f"summary: {snapshot.summary}")
    if data["stop_requested"]:
        click.echo("stop requested")
    for warning in warnings:
        click.echo(f"warning: {warning}")


@main.command("verify")
@click.argument("workspace", type=_WORKSPACE)
@click.option("--depth", type=click.Choice(VALID_DEPTHS), default=None)
@click.option("--json", "as_json", is_flag=True, help="Print machine-readable result")
@click.option("--dangerously-skip-permissions", "skip_permissions", is_flag=True, default=None)
@click.option("--debug", "debug_flag", is_flag=True, help="Enable debug logging")
def verify_cmd(
    workspace: Path,
    depth: str | None,
    as_json: bool,
    skip_permissions: bool | None,
    debug_flag: bool,
) -> None:
    """Run a one-off verification of WORKSPACE. Exit 0 pass, 1 fail, 2 needs review."""
    cfg = _load(
        workspace,
        {
            "verification": {"depth": depth},
            "agent": {"skip_permissions": skip_permissions or None},
            "debug": True if debug_flag else None,
        },
    )
    setup_logging(debug=cfg.debug, quiet=as_json)
    paths = _paths(workspace, cfg)
    agent = _agent(cfg)
    verifier = Verifier(agent, PromptBuilder(paths.root, paths.status), paths.verification_report, depth=cfg.verification.depth)

    async def _verify() -> Any:
        async with agent:
            if not await agent.is_available():
                raise click.ClickException(f"Agent CLI not available: {agent.command}")
            return await verifier.verify(ExecutionMode(cfg.run.mode))

    try:
        result = asyncio.run(_verify())
    except SpawnError as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        payload = asdict(result)
        payload.pop("full_report", None)
        click.echo(json.dumps(payload, indent=2))
    else:
        ConsoleReporter().verification(result)
    raise SystemExit({"pass": 0, "fail": 1}.get(result.status, 2))


if __name__ == "__main__":
    main()
